"""Metadata repository backends and the factory that picks one per session."""

from __future__ import annotations

import logging
from typing import Any

from azure.core.credentials import AzureNamedKeyCredential
from azure.data.tables.aio import TableClient, TableServiceClient

from keeshepherd_metadata.config import SecretStoreBackend, Settings, StorageType
from keeshepherd_metadata.repo.base import MetadataRepo
from keeshepherd_metadata.repo.local import LocalMetadataRepo
from keeshepherd_metadata.repo.table import StorageKeyResolver, TableMetadataRepo
from keeshepherd_metadata.salt import (
    LocalSaltManager,
    SaltMigrationPrompt,
    SecretStoreResolver,
    TableSaltManager,
)
from keeshepherd_metadata.secrets.store import SecretStore
from keeshepherd_metadata.state import StateStore

logger = logging.getLogger(__name__)

__all__ = [
    "LocalMetadataRepo",
    "MetadataRepo",
    "TableMetadataRepo",
    "create_metadata_repo",
    "create_secret_store",
    "create_table_client",
]


def create_secret_store(settings: Settings) -> SecretStore:
    """Create the durable store the local backend keeps its salt in."""
    cfg = settings.secret_store
    if cfg.backend == SecretStoreBackend.KEYCHAIN:
        from keeshepherd_metadata.secrets.keychain import KeychainStore

        return KeychainStore(service_name=cfg.service_name)

    from keeshepherd_metadata.secrets.encrypted_file import EncryptedFileStore

    return EncryptedFileStore(
        file_path=settings.data_dir / cfg.file_name,
        passphrase=cfg.passphrase,
    )


async def create_table_client(
    settings: Settings,
    key_resolver: StorageKeyResolver | None = None,
) -> TableClient:
    """Make sure the configured table exists and return a client for it.

    Credentials come from ``table.connection_string``, else
    ``table.account_key``, else *key_resolver*.
    """
    cfg = settings.table
    if cfg.connection_string:
        async with TableServiceClient.from_connection_string(cfg.connection_string) as service:
            await service.create_table_if_not_exists(table_name=cfg.table_name)
        return TableClient.from_connection_string(cfg.connection_string, table_name=cfg.table_name)

    account_key = cfg.account_key
    if not account_key and key_resolver is not None:
        account_key = await key_resolver.get_account_key(cfg.account_name)
    if not cfg.account_name or not account_key:
        raise ValueError("Table storage needs a connection string or an account name and key")

    credential = AzureNamedKeyCredential(cfg.account_name, account_key)
    endpoint = cfg.resolved_endpoint()
    async with TableServiceClient(endpoint=endpoint, credential=credential) as service:
        await service.create_table_if_not_exists(table_name=cfg.table_name)
    return TableClient(endpoint=endpoint, table_name=cfg.table_name, credential=credential)


async def create_metadata_repo(
    settings: Settings,
    *,
    secret_store: SecretStore | None = None,
    salt_prompt: SaltMigrationPrompt | None = None,
    store_resolver: SecretStoreResolver | None = None,
    key_resolver: StorageKeyResolver | None = None,
    table_client: Any = None,
) -> MetadataRepo:
    """Build the repository selected by ``storage.type``.

    Raises :class:`SaltInitializationError` if the salt cannot be established;
    no repository is returned in that case.
    """
    machine_name = settings.storage.resolved_machine_name()
    min_length = settings.storage.min_secret_length

    if settings.storage.type == StorageType.LOCAL:
        folder = settings.local_folder
        salt_manager = LocalSaltManager(
            secret_store or create_secret_store(settings),
            folder,
            lock_timeout=settings.local.lock_timeout_seconds,
            poll_interval=settings.local.lock_poll_interval_seconds,
            stale_lock_after=settings.local.stale_lock_seconds,
        )
        logger.info("Using local metadata storage at %s", folder)
        return await LocalMetadataRepo.create(folder, machine_name, salt_manager, min_length)

    if table_client is None:
        table_client = await create_table_client(settings, key_resolver)
    logger.info("Using table metadata storage %s", settings.table.table_name)

    try:
        return await TableMetadataRepo.create(
            table_client,
            machine_name,
            TableSaltManager(table_client, salt_prompt, store_resolver),
            state=StateStore(settings.data_dir / "state.json"),
            min_secret_length=min_length,
        )
    except Exception:
        await table_client.close()
        raise
