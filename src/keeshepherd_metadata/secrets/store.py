"""Where the installation salt is kept outside the metadata itself."""

from __future__ import annotations

from abc import ABC, abstractmethod


class SecretStore(ABC):
    """Named string values that outlive the process.

    The local backend keeps ``|KeeShepherdSalt|`` here. The table backend
    reaches an external vault through the same interface once the user has
    moved the salt out of the table.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Value stored under *key*, or None."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Forget *key*. A missing key is not an error."""
