"""Metadata repository kept in an Azure Storage table.

Keys:

* secrets: ``PartitionKey = encode(machine)`` (or the encoded shortcuts
  namespace for EnvVariable secrets), ``RowKey = encode(filePath)|encode(name)``;
* shortcut folders: ``PartitionKey = |KeeShepherdSecretShortcutsFolder|``,
  ``RowKey = encode(folder)``;
* salt: ``PartitionKey = RowKey = |KeeShepherdSalt|``.

The table has no prefix operator, so folder queries run over the half-open
row key range ``[prefix, prefix with its last character incremented)`` and
are narrowed to real folder boundaries afterwards. There is no resident
index; machine enumeration, name lookups and the full snapshot scan the
table with a server-side filter.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import UpdateMode

from keeshepherd_metadata.codec import (
    decode_segment,
    encode_segment,
    matches_path,
    prefix_range,
    row_key,
    ROW_KEY_SEPARATOR,
)
from keeshepherd_metadata.errors import FolderNotEmptyError, SecretNameConflictError
from keeshepherd_metadata.models import (
    DEFAULT_MIN_SECRET_LENGTH,
    SALT_KEY,
    SHORTCUTS_MACHINE_NAME,
    ControlledSecret,
    ControlType,
    RepoType,
)
from keeshepherd_metadata.repo.base import MetadataRepo, with_local_machine
from keeshepherd_metadata.salt import SaltManager
from keeshepherd_metadata.state import ENV_VARS_ALREADY_MIGRATED, StateStore

logger = logging.getLogger(__name__)

SHORTCUTS_FOLDER_PARTITION = "|KeeShepherdSecretShortcutsFolder|"

_SHORTCUTS_PARTITION = encode_segment(SHORTCUTS_MACHINE_NAME)

# Excludes salt, shortcut secrets and shortcut folder rows
_SECRET_ENTITY_FILTER = (
    "PartitionKey ne @salt and PartitionKey ne @shortcuts and PartitionKey ne @folders"
)
_SECRET_ENTITY_PARAMS = {
    "salt": SALT_KEY,
    "shortcuts": _SHORTCUTS_PARTITION,
    "folders": SHORTCUTS_FOLDER_PARTITION,
}


class StorageKeyResolver(ABC):
    """Looks up an access key for a storage account (e.g. via the management API)."""

    @abstractmethod
    async def get_account_key(self, account_name: str) -> str:
        """Return a key with full (or at least read) permissions."""


def _to_entity(secret: ControlledSecret, partition_key: str, row_key_: str) -> dict[str, Any]:
    entity: dict[str, Any] = {
        "PartitionKey": partition_key,
        "RowKey": row_key_,
        "name": secret.name,
        "type": int(secret.type),
        "controlType": int(secret.control_type),
        "filePath": secret.file_path,
        "hash": secret.hash,
        "length": secret.length,
        "createdAt": secret.timestamp,
    }
    if secret.properties:
        entity["properties"] = json.dumps(secret.properties)
    return entity


def _from_entity(entity: dict[str, Any]) -> ControlledSecret:
    metadata = getattr(entity, "metadata", None) or {}
    timestamp = entity.get("createdAt") or metadata.get("timestamp") or datetime.now(timezone.utc)
    properties = entity.get("properties")
    return ControlledSecret(
        name=entity.get("name") or "",
        type=entity.get("type") or 0,
        control_type=entity.get("controlType") or 0,
        file_path=entity.get("filePath") or "",
        hash=entity.get("hash") or "",
        length=entity.get("length") or 0,
        timestamp=timestamp,
        properties=json.loads(properties) if properties else None,
    )


class TableMetadataRepo(MetadataRepo):
    """Stores secret metadata as table entities.

    Use :meth:`create`; it resolves the salt and runs the one-time
    env-variable migration.

    Parameters
    ----------
    table_client:
        An ``azure.data.tables.aio.TableClient`` for an existing table.
    """

    def __init__(
        self,
        table_client: Any,
        machine_name: str,
        salt: str,
        min_secret_length: int = DEFAULT_MIN_SECRET_LENGTH,
    ) -> None:
        super().__init__(machine_name, salt, min_secret_length)
        self._table = table_client
        self._cache: asyncio.Task[list[ControlledSecret]] | None = None

    @classmethod
    async def create(
        cls,
        table_client: Any,
        machine_name: str,
        salt_manager: SaltManager,
        state: StateStore | None = None,
        min_secret_length: int = DEFAULT_MIN_SECRET_LENGTH,
    ) -> TableMetadataRepo:
        salt = await salt_manager.get_salt()
        repo = cls(table_client, machine_name, salt, min_secret_length)

        if state is not None and not await state.get(ENV_VARS_ALREADY_MIGRATED):
            try:
                await repo.migrate_env_variables()
            except Exception:
                logger.exception("Failed to migrate env variables")
            await state.set(ENV_VARS_ALREADY_MIGRATED, True)

        return repo

    @property
    def repo_type(self) -> RepoType:
        return RepoType.AZURE_TABLE

    async def close(self) -> None:
        await self._table.close()

    # ------------------------------------------------------------------
    # Table helpers
    # ------------------------------------------------------------------

    async def _query(
        self, query_filter: str, parameters: dict[str, Any] | None = None, **kwargs: Any,
    ) -> list[dict[str, Any]]:
        return [
            entity
            async for entity in self._table.query_entities(
                query_filter, parameters=parameters, **kwargs
            )
        ]

    async def _delete(self, partition_key: str, row_key_: str) -> None:
        with contextlib.suppress(ResourceNotFoundError):
            await self._table.delete_entity(partition_key=partition_key, row_key=row_key_)

    async def _get(self, partition_key: str, row_key_: str) -> dict[str, Any] | None:
        try:
            return await self._table.get_entity(partition_key=partition_key, row_key=row_key_)
        except ResourceNotFoundError:
            return None

    def _invalidate(self) -> None:
        self._cache = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_machine_names(self) -> list[str]:
        entities = await self._query(
            _SECRET_ENTITY_FILTER, _SECRET_ENTITY_PARAMS, select=["PartitionKey"],
        )
        machines = {decode_segment(entity["PartitionKey"]) for entity in entities}
        return with_local_machine(machines, self._machine_name)

    async def get_folders(self, machine_name: str) -> list[str]:
        if machine_name == SHORTCUTS_MACHINE_NAME:
            entities = await self._query(
                "PartitionKey eq @pk", {"pk": SHORTCUTS_FOLDER_PARTITION}, select=["RowKey"],
            )
            return sorted(decode_segment(entity["RowKey"]) for entity in entities)

        entities = await self._query("PartitionKey eq @pk", {"pk": encode_segment(machine_name)})
        secrets = (_from_entity(entity) for entity in entities)
        return sorted({
            os.path.dirname(secret.file_path) for secret in secrets if not secret.is_shortcut
        })

    async def get_secrets(
        self, path: str, exact_match: bool, machine_name: str | None = None,
    ) -> list[ControlledSecret]:
        machine = machine_name or self._machine_name
        shortcuts = machine == SHORTCUTS_MACHINE_NAME
        parameters: dict[str, Any] = {"pk": encode_segment(machine)}

        if exact_match:
            prefix = encode_segment(path or "") + ROW_KEY_SEPARATOR
        else:
            prefix = encode_segment(path or "")

        if prefix:
            parameters["lo"], parameters["hi"] = prefix_range(prefix)
            query_filter = "PartitionKey eq @pk and RowKey ge @lo and RowKey lt @hi"
        else:
            query_filter = "PartitionKey eq @pk"

        entities = await self._query(query_filter, parameters)
        return [
            secret
            for secret in map(_from_entity, entities)
            if secret.is_shortcut == shortcuts and matches_path(path, secret.file_path, exact_match)
        ]

    async def find_by_secret_name(self, name: str) -> list[ControlledSecret]:
        # No index on names, this is a full scan
        entities = await self._query(
            "PartitionKey ne @salt and PartitionKey ne @folders and name eq @name",
            {"salt": SALT_KEY, "folders": SHORTCUTS_FOLDER_PARTITION, "name": name},
        )
        return [_from_entity(entity) for entity in entities]

    async def get_all_cached_secrets(self) -> list[ControlledSecret]:
        task = self._cache
        if task is None:
            task = self._cache = asyncio.create_task(self._load_all_secrets())
        try:
            secrets = await task
        except Exception:
            if self._cache is task:
                self._cache = None
            raise
        return [secret.model_copy(deep=True) for secret in secrets]

    def refresh_cache(self) -> None:
        self._invalidate()

    async def _load_all_secrets(self) -> list[ControlledSecret]:
        entities = await self._query(_SECRET_ENTITY_FILTER, _SECRET_ENTITY_PARAMS)
        return [_from_entity(entity) for entity in entities]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_secret(self, secret: ControlledSecret) -> None:
        self._validate(secret)

        partition_key = encode_segment(self._scope_of(secret))
        key = row_key(secret.file_path, secret.name)

        existing = await self._get(partition_key, key)
        if existing is None:
            try:
                await self._table.create_entity(entity=_to_entity(secret, partition_key, key))
            except ResourceExistsError:
                # Lost a race with another writer, check what it stored
                existing = await self._get(partition_key, key)
            else:
                self._invalidate()
                return

        if existing is not None and existing.get("hash") != secret.hash:
            raise SecretNameConflictError(secret.name, secret.file_path)

    async def remove_secrets(
        self, file_path: str, names: list[str], machine_name: str | None = None,
    ) -> None:
        partition_key = encode_segment(machine_name or self._machine_name)
        try:
            await asyncio.gather(
                *(self._delete(partition_key, row_key(file_path, name)) for name in names)
            )
        finally:
            self._invalidate()

    async def remove_all_secrets(self, machine_name: str | None = None) -> None:
        machine = machine_name or self._machine_name
        partition_keys = [encode_segment(machine)]
        if machine == SHORTCUTS_MACHINE_NAME:
            partition_keys.append(SHORTCUTS_FOLDER_PARTITION)

        try:
            for partition_key in partition_keys:
                entities = await self._query(
                    "PartitionKey eq @pk", {"pk": partition_key}, select=["PartitionKey", "RowKey"],
                )
                await asyncio.gather(
                    *(self._delete(entity["PartitionKey"], entity["RowKey"]) for entity in entities)
                )
        finally:
            self._invalidate()

    async def update_hash_and_length(self, old_hash: str, new_hash: str, new_length: int) -> None:
        entities = await self._query("hash eq @hash", {"hash": old_hash})

        async def _rewrite(entity: dict[str, Any]) -> None:
            secret = _from_entity(entity).model_copy(update={"hash": new_hash, "length": new_length})
            await self._table.update_entity(
                entity=_to_entity(secret, entity["PartitionKey"], entity["RowKey"]),
                mode=UpdateMode.REPLACE,
            )

        try:
            await asyncio.gather(*(_rewrite(entity) for entity in entities))
        finally:
            self._invalidate()

    async def create_folder(self, name: str) -> None:
        await self._table.upsert_entity(
            entity={"PartitionKey": SHORTCUTS_FOLDER_PARTITION, "RowKey": encode_segment(name)},
            mode=UpdateMode.MERGE,
        )

    async def remove_folder(self, name: str) -> None:
        if await self.get_secrets(name, True, SHORTCUTS_MACHINE_NAME):
            raise FolderNotEmptyError(name)
        await self._delete(SHORTCUTS_FOLDER_PARTITION, encode_segment(name))

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def migrate_env_variables(self) -> int:
        """Move machine-scoped EnvVariable secrets into the shortcuts namespace.

        Each machine's env variables land in a folder called
        ``Env Variables from <machine>``. Returns the number of moved secrets.
        """
        entities = await self._query(
            f"{_SECRET_ENTITY_FILTER} and controlType eq @control_type",
            {**_SECRET_ENTITY_PARAMS, "control_type": int(ControlType.ENV_VARIABLE)},
        )

        async def _move(entity: dict[str, Any]) -> None:
            machine = decode_segment(entity["PartitionKey"])
            secret = _from_entity(entity).model_copy(
                update={"file_path": f"Env Variables from {machine}"}
            )
            await self.create_folder(secret.file_path)
            await self._table.upsert_entity(
                entity=_to_entity(secret, _SHORTCUTS_PARTITION, row_key(secret.file_path, secret.name)),
                mode=UpdateMode.REPLACE,
            )
            await self._delete(entity["PartitionKey"], entity["RowKey"])

        try:
            await asyncio.gather(*(_move(entity) for entity in entities))
        finally:
            self._invalidate()

        if entities:
            logger.info("Migrated %d env variables to shortcuts", len(entities))
        return len(entities)
