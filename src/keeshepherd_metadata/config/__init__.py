"""Configuration loader for the KeeShepherd metadata repository.

Loads settings from a YAML file with built-in defaults. Supports environment
variable overrides using the KEESHEPHERD_ prefix with double-underscore
nesting (e.g., KEESHEPHERD_STORAGE__TYPE=table).
"""

from __future__ import annotations

import os
import pathlib
import socket
from enum import Enum
from typing import Any

import yaml
from pydantic import BaseModel, Field


class StorageType(str, Enum):
    LOCAL = "local"
    TABLE = "table"


class SecretStoreBackend(str, Enum):
    ENCRYPTED_FILE = "encrypted_file"
    KEYCHAIN = "keychain"


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class StorageConfig(BaseModel):
    type: StorageType = StorageType.LOCAL
    data_dir: str = "./data"
    machine_name: str | None = None
    min_secret_length: int = 5

    def resolved_machine_name(self) -> str:
        return self.machine_name or socket.gethostname()


class LocalStorageConfig(BaseModel):
    folder: str | None = None
    lock_timeout_seconds: float = 30.0
    lock_poll_interval_seconds: float = 0.2
    stale_lock_seconds: float = 120.0


class TableStorageConfig(BaseModel):
    account_name: str = ""
    table_name: str = "KeeShepherdMetadata"
    endpoint: str | None = None
    connection_string: str | None = None
    account_key: str | None = None

    def resolved_endpoint(self) -> str:
        return self.endpoint or f"https://{self.account_name}.table.core.windows.net"


class SecretStoreConfig(BaseModel):
    backend: SecretStoreBackend = SecretStoreBackend.ENCRYPTED_FILE
    service_name: str = "com.keeshepherd.metadata"
    file_name: str = "secrets.enc"
    passphrase: str = "keeshepherd-default"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    local: LocalStorageConfig = Field(default_factory=LocalStorageConfig)
    table: TableStorageConfig = Field(default_factory=TableStorageConfig)
    secret_store: SecretStoreConfig = Field(default_factory=SecretStoreConfig)

    @property
    def data_dir(self) -> pathlib.Path:
        return pathlib.Path(self.storage.data_dir).expanduser()

    @property
    def local_folder(self) -> pathlib.Path:
        """Root of the local metadata tree."""
        if self.local.folder:
            return pathlib.Path(self.local.folder).expanduser()
        return self.data_dir / "metadata"


# ---------------------------------------------------------------------------
# Deep merge helper
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "KEESHEPHERD_"


def _collect_env_overrides() -> dict[str, Any]:
    """Collect KEESHEPHERD_* env vars and build a nested dict.

    Double-underscore separates nesting levels.
    Example: KEESHEPHERD_STORAGE__MIN_SECRET_LENGTH=8
    becomes  {"storage": {"min_secret_length": "8"}}

    Values are left as strings; the settings models convert them to the
    declared field types.
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "defaults.yaml"


def load_settings(
    config_path: pathlib.Path | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None``, the built-in defaults file is
        used when present; a missing file falls back to the model defaults.
    """
    base: dict[str, Any] = {}

    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            file_data = yaml.safe_load(fh)
        if isinstance(file_data, dict):
            base = _deep_merge(base, file_data)

    env_overrides = _collect_env_overrides()
    if env_overrides:
        base = _deep_merge(base, env_overrides)

    return Settings(**base)
