"""KeeShepherd metadata repository -- inspection entry point.

Usage::

    python -m keeshepherd_metadata [--config PATH] machines
    python -m keeshepherd_metadata [--config PATH] folders MACHINE
    python -m keeshepherd_metadata [--config PATH] secrets [PATH] [--exact] [--machine NAME]
    python -m keeshepherd_metadata [--config PATH] find NAME

Builds the repository selected in the configuration, runs one read-only
query and prints the result as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from keeshepherd_metadata.config import Settings, load_settings
from keeshepherd_metadata.errors import MetadataRepoError
from keeshepherd_metadata.repo import create_metadata_repo

logger = logging.getLogger("keeshepherd_metadata")


def load_config(config_path: str | None) -> Settings:
    path = Path(config_path) if config_path else None
    return load_settings(config_path=path)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="keeshepherd-metadata",
        description="Inspect the KeeShepherd secret metadata repository.",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("machines", help="List machines with recorded secrets")

    folders = commands.add_parser("folders", help="List folders of a machine")
    folders.add_argument("machine")

    secrets = commands.add_parser("secrets", help="List secrets under a path")
    secrets.add_argument("path", nargs="?", default="")
    secrets.add_argument("--exact", action="store_true", help="Only secrets of exactly PATH")
    secrets.add_argument("--machine", default=None)

    find = commands.add_parser("find", help="Find secrets by name on every machine")
    find.add_argument("name")

    return parser.parse_args(argv)


async def run_command(args: argparse.Namespace, settings: Settings) -> Any:
    repo = await create_metadata_repo(settings)
    try:
        if args.command == "machines":
            return await repo.get_machine_names()
        if args.command == "folders":
            return await repo.get_folders(args.machine)
        if args.command == "secrets":
            secrets = await repo.get_secrets(args.path, args.exact, args.machine)
        else:
            secrets = await repo.find_by_secret_name(args.name)
        return [secret.model_dump(mode="json", by_alias=True) for secret in secrets]
    finally:
        await repo.close()


def main(argv: list[str] | None = None) -> None:
    """Parse CLI args, run one query and print the result."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = load_config(args.config)
    try:
        result = asyncio.run(run_command(args, settings))
    except MetadataRepoError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)

    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
