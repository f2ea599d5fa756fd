"""Metadata repository kept as JSON files on the local disk.

Layout under the storage root::

    <encode(machine)>/<encode(file path)>/<encode(secret name)>.json
    <encode(|KeeShepherdSecretShortcuts|)>/<encode(folder)>/<encode(secret name)>.json

A folder name that would make the record path longer than 250 characters is
replaced by its weak hash; the record itself carries the real file path, so
folder names never need decoding. Secrets without a folder live in a
directory called ``%``, which no encoded segment can produce.

Every record is loaded into memory once, in :meth:`LocalMetadataRepo.create`.
Reads are served from memory. Writes hit the disk first and only then the
in-memory arena, so a failed write leaves both unchanged.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import pathlib
import shutil
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from keeshepherd_metadata.codec import (
    decode_segment,
    encode_segment,
    full_path_that_fits,
    matches_path,
)
from keeshepherd_metadata.errors import FolderNotEmptyError, SecretNameConflictError
from keeshepherd_metadata.models import (
    DEFAULT_MIN_SECRET_LENGTH,
    LEGACY_ENV_VARIABLES_PATH,
    SHORTCUTS_MACHINE_NAME,
    ControlledSecret,
    RepoType,
)
from keeshepherd_metadata.repo.base import MetadataRepo, with_local_machine
from keeshepherd_metadata.salt import SaltManager

logger = logging.getLogger(__name__)

_ROOT_FOLDER = "%"

T = TypeVar("T")


@dataclass(frozen=True)
class _Entry:
    """One loaded record and the file it lives in."""

    machine: str
    secret: ControlledSecret
    path: pathlib.Path

    @property
    def key(self) -> tuple[str, str, str]:
        return self.machine, self.secret.file_path, self.secret.name


def _read_record(path: pathlib.Path) -> ControlledSecret:
    return ControlledSecret.model_validate_json(path.read_text(encoding="utf-8"))


def _write_record(path: pathlib.Path, secret: ControlledSecret) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(secret.to_json(), encoding="utf-8")
    os.replace(tmp, path)


def _list_shortcut_folders(shortcuts_dir: pathlib.Path) -> list[str]:
    if not shortcuts_dir.is_dir():
        return []
    return sorted(
        decode_segment(child.name)
        for child in shortcuts_dir.iterdir()
        if child.is_dir() and child.name != _ROOT_FOLDER
    )


async def _run_all(
    func: Callable[[T], Awaitable[Any]], items: Iterable[T],
) -> tuple[list[T], BaseException | None]:
    """Run *func* over *items* concurrently.

    Returns the items that succeeded and the first error, if any.
    """
    items = list(items)
    results = await asyncio.gather(*(func(item) for item in items), return_exceptions=True)
    done = [item for item, result in zip(items, results) if not isinstance(result, BaseException)]
    errors = [result for result in results if isinstance(result, BaseException)]
    return done, (errors[0] if errors else None)


class LocalMetadataRepo(MetadataRepo):
    """Stores secret metadata in per-secret JSON files.

    Use :meth:`create` rather than the constructor; it migrates older layouts,
    loads the records and resolves the salt.
    """

    def __init__(
        self,
        storage_dir: pathlib.Path,
        machine_name: str,
        salt: str,
        entries: list[_Entry],
        min_secret_length: int = DEFAULT_MIN_SECRET_LENGTH,
    ) -> None:
        super().__init__(machine_name, salt, min_secret_length)
        self._root = storage_dir
        self._entries: list[_Entry] = []
        self._index: dict[tuple[str, str, str], _Entry] = {}
        self._write_lock = asyncio.Lock()
        self._set_entries(entries)

    @classmethod
    async def create(
        cls,
        storage_dir: pathlib.Path,
        machine_name: str,
        salt_manager: SaltManager,
        min_secret_length: int = DEFAULT_MIN_SECRET_LENGTH,
    ) -> LocalMetadataRepo:
        storage_dir.mkdir(parents=True, exist_ok=True)

        _migrate_env_variables_dir(storage_dir)
        _migrate_flat_layout(storage_dir, machine_name)

        entries = await _load_entries(storage_dir)
        salt = await salt_manager.get_salt()

        logger.info("Loaded %d secret records from %s", len(entries), storage_dir)
        return cls(storage_dir, machine_name, salt, entries, min_secret_length)

    @property
    def repo_type(self) -> RepoType:
        return RepoType.LOCAL_FILES

    # ------------------------------------------------------------------
    # In-memory arena
    # ------------------------------------------------------------------

    def _set_entries(self, entries: list[_Entry]) -> None:
        self._entries = entries
        self._index = {entry.key: entry for entry in entries}

    def _select(self, predicate: Callable[[_Entry], bool]) -> list[ControlledSecret]:
        return [entry.secret.model_copy(deep=True) for entry in self._entries if predicate(entry)]

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _machine_dir(self, machine: str) -> pathlib.Path:
        return self._root / encode_segment(machine)

    def _record_path(self, machine: str, file_path: str, name: str) -> pathlib.Path:
        existing = self._index.get((machine, file_path, name))
        if existing is not None:
            return existing.path

        folder = encode_segment(file_path) if file_path else _ROOT_FOLDER
        file_name = f"{encode_segment(name)}.json"
        if machine == SHORTCUTS_MACHINE_NAME:
            return self._machine_dir(machine) / folder / file_name
        return pathlib.Path(full_path_that_fits(self._machine_dir(machine), folder, file_name))

    def _prune(self, folders: Iterable[pathlib.Path], machine: str) -> None:
        """Remove now-empty record folders, then the machine folder."""
        for folder in set(folders):
            with contextlib.suppress(OSError):
                folder.rmdir()
        with contextlib.suppress(OSError):
            self._machine_dir(machine).rmdir()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_machine_names(self) -> list[str]:
        machines = {entry.machine for entry in self._entries}
        machines.discard(SHORTCUTS_MACHINE_NAME)
        return with_local_machine(machines, self._machine_name)

    async def get_folders(self, machine_name: str) -> list[str]:
        if machine_name == SHORTCUTS_MACHINE_NAME:
            return await asyncio.to_thread(
                _list_shortcut_folders, self._machine_dir(SHORTCUTS_MACHINE_NAME),
            )

        return sorted({
            os.path.dirname(entry.secret.file_path)
            for entry in self._entries
            if entry.machine == machine_name and not entry.secret.is_shortcut
        })

    async def get_secrets(
        self, path: str, exact_match: bool, machine_name: str | None = None,
    ) -> list[ControlledSecret]:
        machine = machine_name or self._machine_name
        shortcuts = machine == SHORTCUTS_MACHINE_NAME
        return self._select(
            lambda entry: entry.machine == machine
            and entry.secret.is_shortcut == shortcuts
            and matches_path(path, entry.secret.file_path, exact_match)
        )

    async def find_by_secret_name(self, name: str) -> list[ControlledSecret]:
        return self._select(lambda entry: entry.secret.name == name)

    async def get_all_cached_secrets(self) -> list[ControlledSecret]:
        return self._select(lambda entry: entry.machine != SHORTCUTS_MACHINE_NAME)

    def refresh_cache(self) -> None:
        # Every record is resident in memory, the snapshot is never stale
        pass

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_secret(self, secret: ControlledSecret) -> None:
        self._validate(secret)

        machine = self._scope_of(secret)
        # The check and the write must not interleave with another add or update
        async with self._write_lock:
            existing = self._index.get((machine, secret.file_path, secret.name))
            if existing is not None:
                if existing.secret.hash != secret.hash:
                    raise SecretNameConflictError(secret.name, secret.file_path)
                return

            path = self._record_path(machine, secret.file_path, secret.name)
            stored = secret.model_copy(deep=True)
            await asyncio.to_thread(_write_record, path, stored)

            self._set_entries(self._entries + [_Entry(machine, stored, path)])

    async def remove_secrets(
        self, file_path: str, names: list[str], machine_name: str | None = None,
    ) -> None:
        machine = machine_name or self._machine_name
        paths = {name: self._record_path(machine, file_path, name) for name in names}

        removed, error = await _run_all(
            lambda name: asyncio.to_thread(paths[name].unlink, missing_ok=True), names,
        )

        if machine != SHORTCUTS_MACHINE_NAME:
            self._prune((paths[name].parent for name in removed), machine)

        gone = {(machine, file_path, name) for name in removed}
        self._set_entries([entry for entry in self._entries if entry.key not in gone])

        if error is not None:
            raise error

    async def remove_all_secrets(self, machine_name: str | None = None) -> None:
        machine = machine_name or self._machine_name
        machine_dir = self._machine_dir(machine)
        if machine_dir.exists():
            await asyncio.to_thread(shutil.rmtree, machine_dir)

        self._set_entries([entry for entry in self._entries if entry.machine != machine])

    async def update_hash_and_length(self, old_hash: str, new_hash: str, new_length: int) -> None:
        async with self._write_lock:
            await self._update_hash_and_length(old_hash, new_hash, new_length)

    async def _update_hash_and_length(self, old_hash: str, new_hash: str, new_length: int) -> None:
        targets = [entry for entry in self._entries if entry.secret.hash == old_hash]
        if not targets:
            return

        updated = {
            entry.key: _Entry(
                entry.machine,
                entry.secret.model_copy(update={"hash": new_hash, "length": new_length}),
                entry.path,
            )
            for entry in targets
        }

        written, error = await _run_all(
            lambda entry: asyncio.to_thread(_write_record, entry.path, entry.secret),
            updated.values(),
        )

        written_keys = {entry.key for entry in written}
        self._set_entries([
            updated[entry.key] if entry.key in written_keys else entry
            for entry in self._entries
        ])

        if error is not None:
            raise error

    async def create_folder(self, name: str) -> None:
        folder = self._machine_dir(SHORTCUTS_MACHINE_NAME) / encode_segment(name)
        await asyncio.to_thread(folder.mkdir, parents=True, exist_ok=True)

    async def remove_folder(self, name: str) -> None:
        if any(
            entry.machine == SHORTCUTS_MACHINE_NAME and entry.secret.file_path == name
            for entry in self._entries
        ):
            raise FolderNotEmptyError(name)

        folder = self._machine_dir(SHORTCUTS_MACHINE_NAME) / encode_segment(name)
        with contextlib.suppress(FileNotFoundError):
            await asyncio.to_thread(folder.rmdir)


# ---------------------------------------------------------------------------
# Loading and layout migrations
# ---------------------------------------------------------------------------

async def _load_entries(root: pathlib.Path) -> list[_Entry]:
    paths = sorted(root.glob("*/*/*.json"))
    secrets = await asyncio.gather(*(asyncio.to_thread(_read_record, path) for path in paths))
    return [
        _Entry(decode_segment(path.parent.parent.name), secret, path)
        for path, secret in zip(paths, secrets)
    ]


def _migrate_env_variables_dir(root: pathlib.Path) -> None:
    """Rename the old env variables folder to the shortcuts namespace."""
    legacy = root / encode_segment(LEGACY_ENV_VARIABLES_PATH)
    if not legacy.is_dir():
        return
    target = root / encode_segment(SHORTCUTS_MACHINE_NAME)
    try:
        legacy.rename(target)
        logger.info("Migrated %s to %s", legacy, target)
    except OSError:
        logger.warning("Failed to migrate env variables folder %s", legacy, exc_info=True)


def _migrate_flat_layout(root: pathlib.Path, machine_name: str) -> None:
    """Move file folders from the root (pre-machine layout) under the local machine."""
    machine_dir = root / encode_segment(machine_name)
    shortcuts_dir = root / encode_segment(SHORTCUTS_MACHINE_NAME)

    for folder in list(root.iterdir()):
        if not folder.is_dir() or folder == shortcuts_dir or not any(folder.glob("*.json")):
            continue
        target = machine_dir / folder.name
        try:
            machine_dir.mkdir(exist_ok=True)
            if target.exists():
                for record in folder.glob("*.json"):
                    record.replace(target / record.name)
                folder.rmdir()
            else:
                folder.rename(target)
            logger.info("Moved legacy folder %s under %s", folder.name, machine_dir)
        except OSError:
            logger.warning("Failed to move legacy folder %s", folder, exc_info=True)
