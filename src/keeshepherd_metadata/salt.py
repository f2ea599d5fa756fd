"""Salt lifecycle for the metadata repository.

Every stored hash is ``sha256(value + salt)``, so the salt has to be created
exactly once per installation and never change afterwards. Two variants share
the same contract:

* :class:`LocalSaltManager` keeps the salt in a durable :class:`SecretStore`.
  A legacy plaintext ``salt.dat`` is moved into that store on first sight.
  First-run creation is serialized across processes by exclusively creating
  ``lock.dat`` next to the metadata tree.
* :class:`TableSaltManager` keeps the salt in a reserved table entity, or in
  an external secret store the entity points to. Creation relies on the
  table's atomic create-if-absent.

Both raise :class:`SaltInitializationError` rather than risk two different
salts.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import pathlib
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import UpdateMode

from keeshepherd_metadata.errors import SaltInitializationError
from keeshepherd_metadata.models import SALT_KEY
from keeshepherd_metadata.secrets.store import SecretStore

logger = logging.getLogger(__name__)

LEGACY_SALT_FILE_NAME = "salt.dat"
LOCK_FILE_NAME = "lock.dat"

_SALT_BYTES = 128


def generate_salt() -> str:
    """Return a fresh hex-encoded salt of 128 random bytes."""
    return secrets.token_hex(_SALT_BYTES)


@dataclass(frozen=True)
class SaltLocation:
    """An external secret store and the secret name to keep the salt under."""

    store_name: str
    secret_name: str


class SaltMigrationPrompt(ABC):
    """Asks the user, once, whether the salt should move to an external store."""

    @abstractmethod
    async def ask_destination(self) -> SaltLocation | None:
        """Return where to move the salt, or None if the user declines."""


class SecretStoreResolver(ABC):
    """Opens an external secret store (e.g. a key vault) by name."""

    @abstractmethod
    async def get_store(self, store_name: str) -> SecretStore:
        """Return a store for *store_name*."""


class SaltManager(ABC):
    """Owns the installation salt: resolves it once, then serves it read-only."""

    def __init__(self) -> None:
        self._salt: str | None = None
        self._lock = asyncio.Lock()

    @property
    def salt(self) -> str:
        if self._salt is None:
            raise SaltInitializationError("Salt has not been initialized")
        return self._salt

    async def get_salt(self) -> str:
        async with self._lock:
            if self._salt is None:
                salt = await self._resolve()
                if not salt:
                    raise SaltInitializationError("Failed to initialize salt")
                self._salt = salt
        return self._salt

    @abstractmethod
    async def _resolve(self) -> str:
        """Locate or create the salt."""


# ---------------------------------------------------------------------------
# Local variant
# ---------------------------------------------------------------------------

class LocalSaltManager(SaltManager):
    """Salt kept in a durable secret store, created under a file lock.

    Parameters
    ----------
    store:
        Durable store the salt lives in.
    storage_dir:
        Root of the local metadata tree; ``salt.dat`` and ``lock.dat`` are
        looked for here.
    lock_timeout:
        Seconds to wait for another process holding ``lock.dat``.
    poll_interval:
        Seconds between checks while waiting.
    stale_lock_after:
        A ``lock.dat`` older than this is considered abandoned and removed.
    """

    def __init__(
        self,
        store: SecretStore,
        storage_dir: pathlib.Path,
        lock_timeout: float = 30.0,
        poll_interval: float = 0.2,
        stale_lock_after: float = 120.0,
    ) -> None:
        super().__init__()
        self._store = store
        self._legacy_path = storage_dir / LEGACY_SALT_FILE_NAME
        self._lock_path = storage_dir / LOCK_FILE_NAME
        self._lock_timeout = lock_timeout
        self._poll_interval = poll_interval
        self._stale_lock_after = stale_lock_after

    async def _resolve(self) -> str:
        salt = await self._store.get(SALT_KEY)
        if salt:
            return salt

        if self._legacy_path.exists():
            return await self._migrate_legacy_file()

        return await self._create()

    async def _migrate_legacy_file(self) -> str:
        salt = self._legacy_path.read_text(encoding="utf-8")
        try:
            await self._store.set(SALT_KEY, salt)
        except Exception:
            logger.warning(
                "Failed to move %s into the secret store, keeping the file", self._legacy_path,
                exc_info=True,
            )
            return salt
        self._legacy_path.unlink(missing_ok=True)
        logger.info("Moved legacy salt file into the secret store")
        return salt

    async def _create(self) -> str:
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                self._remove_stale_lock()
                if time.monotonic() >= deadline:
                    raise SaltInitializationError(
                        f"Timed out waiting for {self._lock_path} to be released"
                    ) from None
                await asyncio.sleep(self._poll_interval)
                salt = await self._store.get(SALT_KEY)
                if salt:
                    return salt
                continue
            except OSError as exc:
                raise SaltInitializationError("Failed to initialize salt") from exc

            try:
                os.write(fd, b" ")
                os.close(fd)

                # Another process may have finished between our first read and the lock
                salt = await self._store.get(SALT_KEY)
                if salt:
                    return salt

                salt = generate_salt()
                await self._store.set(SALT_KEY, salt)
                logger.info("Generated a new salt")
                return salt
            except Exception as exc:
                raise SaltInitializationError("Failed to initialize salt") from exc
            finally:
                with contextlib.suppress(FileNotFoundError):
                    self._lock_path.unlink()

    def _remove_stale_lock(self) -> None:
        try:
            age = time.time() - self._lock_path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self._stale_lock_after:
            logger.warning("Removing stale lock %s (%.0fs old)", self._lock_path, age)
            with contextlib.suppress(FileNotFoundError):
                self._lock_path.unlink()


# ---------------------------------------------------------------------------
# Table variant
# ---------------------------------------------------------------------------

class TableSaltManager(SaltManager):
    """Salt kept in the reserved ``|KeeShepherdSalt|`` table entity.

    The entity either holds the value inline or points at an external store
    (``keyVaultName`` + ``keyVaultSecretName``). Until the user has been asked
    whether to move the salt out of the table, the first resolution asks via
    *prompt*; declining is remembered in the entity (``alreadyAsked``).
    """

    def __init__(
        self,
        table_client: Any,
        prompt: SaltMigrationPrompt | None = None,
        store_resolver: SecretStoreResolver | None = None,
    ) -> None:
        super().__init__()
        self._table = table_client
        self._prompt = prompt
        self._resolver = store_resolver

    async def _read_entity(self) -> dict[str, Any] | None:
        try:
            return await self._table.get_entity(partition_key=SALT_KEY, row_key=SALT_KEY)
        except ResourceNotFoundError:
            return None

    async def _resolve(self) -> str:
        entity = await self._read_entity()

        if entity and entity.get("keyVaultSecretName"):
            return await self._read_external(entity)

        if entity and entity.get("alreadyAsked"):
            return entity.get("value") or ""

        destination = await self._prompt.ask_destination() if self._prompt else None
        if destination is None:
            return await self._keep_in_table(entity)
        return await self._move_to_external(entity, destination)

    async def _read_external(self, entity: dict[str, Any]) -> str:
        if self._resolver is None:
            raise SaltInitializationError(
                f"Salt is stored in {entity.get('keyVaultName')!r} but no secret store resolver is configured"
            )
        store = await self._resolver.get_store(entity["keyVaultName"])
        salt = await store.get(entity["keyVaultSecretName"])
        if not salt:
            raise SaltInitializationError(
                f"Salt secret {entity['keyVaultSecretName']!r} not found in {entity['keyVaultName']!r}"
            )
        return salt

    async def _keep_in_table(self, entity: dict[str, Any] | None) -> str:
        if entity is None:
            entity = {
                "PartitionKey": SALT_KEY,
                "RowKey": SALT_KEY,
                "value": generate_salt(),
                "alreadyAsked": True,
            }
            try:
                await self._table.create_entity(entity=entity)
            except ResourceExistsError:
                logger.info("Salt was created concurrently, adopting it")
                return await self._adopt_existing()
            return entity["value"]

        entity = dict(entity)
        entity["alreadyAsked"] = True
        await self._table.update_entity(entity=entity, mode=UpdateMode.MERGE)
        return entity.get("value") or ""

    async def _move_to_external(self, entity: dict[str, Any] | None, destination: SaltLocation) -> str:
        if self._resolver is None:
            raise SaltInitializationError("No secret store resolver configured to move the salt to")

        if entity is None:
            # Agree on one value through the table before anything is written elsewhere
            entity = {"PartitionKey": SALT_KEY, "RowKey": SALT_KEY, "value": generate_salt()}
            try:
                await self._table.create_entity(entity=entity)
            except ResourceExistsError:
                logger.info("Salt was created concurrently, adopting it")
                entity = await self._read_entity()
                if entity is None:
                    raise SaltInitializationError("Salt entity disappeared during initialization") from None
                if entity.get("keyVaultSecretName"):
                    return await self._read_external(entity)

        salt = entity.get("value") or ""
        if not salt:
            raise SaltInitializationError("Salt entity holds no value to move")

        store = await self._resolver.get_store(destination.store_name)
        await store.set(destination.secret_name, salt)

        pointer = {
            "PartitionKey": SALT_KEY,
            "RowKey": SALT_KEY,
            "value": "",
            "keyVaultName": destination.store_name,
            "keyVaultSecretName": destination.secret_name,
        }
        await self._table.update_entity(entity=pointer, mode=UpdateMode.REPLACE)

        logger.info(
            "Salt is now stored in %s as %s", destination.store_name, destination.secret_name
        )
        return salt

    async def _adopt_existing(self) -> str:
        entity = await self._read_entity()
        if entity is None:
            raise SaltInitializationError("Salt entity disappeared during initialization")
        if entity.get("keyVaultSecretName"):
            return await self._read_external(entity)
        return entity.get("value") or ""
