"""Metadata repository contract.

Callers (tree views, editor commands, the CLI) only ever talk to a
:class:`MetadataRepo`. Two implementations exist, one keeping records as JSON
files and one keeping them in an Azure table; both must behave the same for
every operation below.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from keeshepherd_metadata.codec import calculate_hash
from keeshepherd_metadata.errors import SecretTooShortError
from keeshepherd_metadata.models import (
    DEFAULT_MIN_SECRET_LENGTH,
    ControlledSecret,
    RepoType,
    SHORTCUTS_MACHINE_NAME,
)


def with_local_machine(machines: Iterable[str], local_machine: str) -> list[str]:
    """Sorted machine names, plus *local_machine* unless present in any letter case."""
    names = set(machines)
    if not any(name.lower() == local_machine.lower() for name in names):
        names.add(local_machine)
    return sorted(names)


class MetadataRepo(ABC):
    """Stores :class:`ControlledSecret` records, never secret values.

    Parameters
    ----------
    machine_name:
        Name of the local machine. Regular secrets are recorded under it and
        it is the default scope for reads and deletes.
    salt:
        Installation salt mixed into every hash.
    min_secret_length:
        Secrets shorter than this are rejected by :meth:`add_secret`.
    """

    def __init__(
        self,
        machine_name: str,
        salt: str,
        min_secret_length: int = DEFAULT_MIN_SECRET_LENGTH,
    ) -> None:
        self._machine_name = machine_name
        self._salt = salt
        self._min_secret_length = min_secret_length

    @property
    def machine_name(self) -> str:
        return self._machine_name

    @property
    @abstractmethod
    def repo_type(self) -> RepoType:
        """Which backend this is."""

    def calculate_hash(self, value: str) -> str:
        return calculate_hash(value, self._salt)

    def _scope_of(self, secret: ControlledSecret) -> str:
        """Machine namespace a new secret is recorded under."""
        return SHORTCUTS_MACHINE_NAME if secret.is_shortcut else self._machine_name

    def _validate(self, secret: ControlledSecret) -> None:
        if secret.length < self._min_secret_length:
            raise SecretTooShortError(self._min_secret_length)

    @abstractmethod
    async def get_machine_names(self) -> list[str]:
        """All machines with recorded secrets, always including the local one."""

    @abstractmethod
    async def get_folders(self, machine_name: str) -> list[str]:
        """Shortcut folders for the shortcuts namespace, else distinct file folders."""

    @abstractmethod
    async def get_secrets(
        self, path: str, exact_match: bool, machine_name: str | None = None,
    ) -> list[ControlledSecret]:
        """Secrets whose file path equals *path*, or lies under it when not *exact_match*."""

    @abstractmethod
    async def get_all_cached_secrets(self) -> list[ControlledSecret]:
        """Snapshot of every secret across machines, possibly stale."""

    @abstractmethod
    def refresh_cache(self) -> None:
        """Make the next :meth:`get_all_cached_secrets` rebuild its snapshot."""

    @abstractmethod
    async def add_secret(self, secret: ControlledSecret) -> None:
        """Record *secret*.

        Raises :class:`SecretTooShortError` or :class:`SecretNameConflictError`.
        Adding an identical name and hash again changes nothing.
        """

    @abstractmethod
    async def remove_secrets(
        self, file_path: str, names: list[str], machine_name: str | None = None,
    ) -> None:
        """Forget the named secrets of *file_path*. Missing records are ignored."""

    @abstractmethod
    async def remove_all_secrets(self, machine_name: str | None = None) -> None:
        """Forget every secret recorded for a machine."""

    @abstractmethod
    async def find_by_secret_name(self, name: str) -> list[ControlledSecret]:
        """Every secret called *name*, on any machine."""

    @abstractmethod
    async def update_hash_and_length(self, old_hash: str, new_hash: str, new_length: int) -> None:
        """Retag every record whose hash is *old_hash*."""

    @abstractmethod
    async def create_folder(self, name: str) -> None:
        """Register a shortcuts folder."""

    @abstractmethod
    async def remove_folder(self, name: str) -> None:
        """Remove an empty shortcuts folder. Raises :class:`FolderNotEmptyError`."""

    async def close(self) -> None:
        """Release backend resources."""
