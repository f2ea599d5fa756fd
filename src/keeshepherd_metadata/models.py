"""Pydantic domain models for the metadata repository.

A :class:`ControlledSecret` describes where a secret lives and how to
recognise its value (salted hash plus length). The plaintext value is never
part of the model. Field names serialize in camelCase so that records written
by earlier versions of the tooling load unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# Machine namespace holding EnvVariable-class secrets ("shortcuts")
SHORTCUTS_MACHINE_NAME = "|KeeShepherdSecretShortcuts|"

# Older single-path namespace for env variables, migrated into shortcuts
LEGACY_ENV_VARIABLES_PATH = "|KeeShepherdEnvironmentVariables"

SALT_KEY = "|KeeShepherdSalt|"

DEFAULT_MIN_SECRET_LENGTH = 5


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SecretType(IntEnum):
    UNKNOWN = 0
    AZURE_KEY_VAULT = 1
    AZURE_STORAGE = 2
    RESOURCE_MANAGER_REST_API = 3
    AZURE_SERVICE_BUS = 4
    AZURE_EVENT_HUBS = 5
    AZURE_COSMOS_DB = 6
    AZURE_REDIS_CACHE = 7
    AZURE_APP_INSIGHTS = 8
    AZURE_EVENT_GRID = 9
    AZURE_MAPS = 10
    AZURE_COGNITIVE_SERVICES = 11
    AZURE_SEARCH = 12
    AZURE_SIGNALR = 13
    AZURE_DEVOPS_PAT = 14
    CODESPACES = 15
    VSCODE_SECRET_STORAGE = 16


class ControlType(IntEnum):
    SUPERVISED = 0
    MANAGED = 1
    ENV_VARIABLE = 2


class RepoType(str, Enum):
    LOCAL_FILES = "local_files"
    AZURE_TABLE = "azure_table"


# ---------------------------------------------------------------------------
# Domain models
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ControlledSecret(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: SecretType = SecretType.UNKNOWN
    control_type: ControlType = Field(default=ControlType.SUPERVISED, alias="controlType")
    file_path: str = Field(default="", alias="filePath")
    hash: str
    length: int
    timestamp: datetime = Field(default_factory=_utcnow)
    properties: dict[str, Any] | None = None

    @property
    def is_shortcut(self) -> bool:
        return self.control_type == ControlType.ENV_VARIABLE

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=3)
