"""Shared test fixtures for the metadata repository tests."""

from __future__ import annotations

import asyncio
import operator
import pathlib
import re
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import UpdateMode

from keeshepherd_metadata.models import ControlledSecret, ControlType, SecretType
from keeshepherd_metadata.repo.local import LocalMetadataRepo
from keeshepherd_metadata.repo.table import TableMetadataRepo
from keeshepherd_metadata.salt import LocalSaltManager, TableSaltManager
from keeshepherd_metadata.secrets.store import SecretStore
from keeshepherd_metadata.state import StateStore

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]

LOCAL_MACHINE = "dev-box"


class MemorySecretStore(SecretStore):
    """In-memory store that yields to the loop on every call, like real I/O."""

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(data or {})
        self.set_calls = 0

    async def get(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        self.set_calls += 1
        self.data[key] = value

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        self.data.pop(key, None)


_CLAUSE_RE = re.compile(r"^(\w+) (eq|ne|ge|gt|le|lt) @(\w+)$")
_OPERATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "ge": operator.ge,
    "gt": operator.gt,
    "le": operator.le,
    "lt": operator.lt,
}


class FakeTableClient:
    """Dict-backed stand-in for ``azure.data.tables.aio.TableClient``.

    Understands filters made of ``<property> <op> @<param>`` clauses joined by
    ``and``. As on the real service, a comparison against a property the
    entity does not have is false.
    """

    def __init__(self) -> None:
        self.entities: dict[tuple[str, str], dict[str, Any]] = {}
        self.queries: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def put(self, entity: dict[str, Any]) -> None:
        self.entities[(entity["PartitionKey"], entity["RowKey"])] = dict(entity)

    @staticmethod
    def _key(entity: dict[str, Any]) -> tuple[str, str]:
        return entity["PartitionKey"], entity["RowKey"]

    async def get_entity(self, partition_key: str, row_key: str, **kwargs: Any) -> dict[str, Any]:
        await asyncio.sleep(0)
        try:
            return dict(self.entities[(partition_key, row_key)])
        except KeyError:
            raise ResourceNotFoundError("The specified resource does not exist.") from None

    async def create_entity(self, entity: dict[str, Any], **kwargs: Any) -> None:
        await asyncio.sleep(0)
        key = self._key(entity)
        if key in self.entities:
            raise ResourceExistsError("The specified entity already exists.")
        self.entities[key] = dict(entity)

    async def upsert_entity(
        self, entity: dict[str, Any], mode: UpdateMode = UpdateMode.MERGE, **kwargs: Any,
    ) -> None:
        await asyncio.sleep(0)
        key = self._key(entity)
        if mode == UpdateMode.MERGE and key in self.entities:
            self.entities[key].update(entity)
        else:
            self.entities[key] = dict(entity)

    async def update_entity(
        self, entity: dict[str, Any], mode: UpdateMode = UpdateMode.MERGE, **kwargs: Any,
    ) -> None:
        await asyncio.sleep(0)
        key = self._key(entity)
        if key not in self.entities:
            raise ResourceNotFoundError("The specified resource does not exist.")
        if mode == UpdateMode.MERGE:
            self.entities[key].update(entity)
        else:
            self.entities[key] = dict(entity)

    async def delete_entity(self, partition_key: str, row_key: str, **kwargs: Any) -> None:
        await asyncio.sleep(0)
        self.entities.pop((partition_key, row_key), None)

    def query_entities(
        self, query_filter: str, *, parameters: dict[str, Any] | None = None, **kwargs: Any,
    ) -> AsyncIterator[dict[str, Any]]:
        parameters = parameters or {}
        self.queries.append((query_filter, dict(parameters)))
        return self._iterate(query_filter, parameters)

    async def _iterate(
        self, query_filter: str, parameters: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        clauses = []
        for clause in query_filter.split(" and "):
            match = _CLAUSE_RE.match(clause.strip())
            assert match, f"unsupported filter clause: {clause!r}"
            clauses.append(match.groups())

        for key in sorted(self.entities):
            entity = self.entities[key]
            if all(
                prop in entity and _OPERATORS[op](entity[prop], parameters[param])
                for prop, op, param in clauses
            ):
                await asyncio.sleep(0)
                yield dict(entity)

    async def close(self) -> None:
        self.closed = True


def make_secret(
    name: str = "db-pass",
    file_path: str = "proj/config",
    hash: str = "hash-1",
    length: int = 12,
    control_type: ControlType = ControlType.MANAGED,
    **kwargs: Any,
) -> ControlledSecret:
    return ControlledSecret(
        name=name,
        type=kwargs.pop("type", SecretType.AZURE_KEY_VAULT),
        control_type=control_type,
        file_path=file_path,
        hash=hash,
        length=length,
        **kwargs,
    )


@pytest.fixture
def repo_root() -> pathlib.Path:
    return REPO_ROOT


@pytest.fixture
def secret_store() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def table_client() -> FakeTableClient:
    return FakeTableClient()


async def build_local_repo(
    storage_dir: pathlib.Path,
    store: MemorySecretStore | None = None,
    machine_name: str = LOCAL_MACHINE,
) -> LocalMetadataRepo:
    salt_manager = LocalSaltManager(store or MemorySecretStore(), storage_dir, poll_interval=0.01)
    return await LocalMetadataRepo.create(storage_dir, machine_name, salt_manager)


async def build_table_repo(
    table: FakeTableClient,
    state: StateStore | None = None,
    machine_name: str = LOCAL_MACHINE,
) -> TableMetadataRepo:
    return await TableMetadataRepo.create(table, machine_name, TableSaltManager(table), state=state)


@pytest_asyncio.fixture
async def local_repo(tmp_path: pathlib.Path) -> LocalMetadataRepo:
    return await build_local_repo(tmp_path / "metadata")


@pytest_asyncio.fixture
async def table_repo(table_client: FakeTableClient) -> TableMetadataRepo:
    return await build_table_repo(table_client)


@pytest_asyncio.fixture(params=["local", "table"])
async def repo(request, tmp_path: pathlib.Path, table_client: FakeTableClient):
    """Each backend in turn; both must behave the same."""
    if request.param == "local":
        yield await build_local_repo(tmp_path / "metadata")
    else:
        repo = await build_table_repo(table_client)
        yield repo
        await repo.close()


@pytest.fixture(params=["local", "table"])
def open_repo(request, tmp_path: pathlib.Path, table_client: FakeTableClient):
    """Opener for repositories of either backend sharing one storage location."""
    store = MemorySecretStore()

    async def _open(machine_name: str = LOCAL_MACHINE):
        if request.param == "local":
            return await build_local_repo(tmp_path / "metadata", store, machine_name)
        return await build_table_repo(table_client, machine_name=machine_name)

    return _open
