"""Exception types raised by the metadata repository.

Storage faults (``OSError`` from the local backend, ``HttpResponseError``
from the table backend) are not wrapped and reach the caller unchanged.
"""

from __future__ import annotations


class MetadataRepoError(Exception):
    """Base class for repository errors."""


class SecretTooShortError(MetadataRepoError, ValueError):
    """A secret's value is shorter than the configured minimum."""

    def __init__(self, min_length: int) -> None:
        super().__init__(f"Secret should be at least {min_length} symbols long")
        self.min_length = min_length


class SecretNameConflictError(MetadataRepoError):
    """A secret with the same name but a different hash already exists in scope."""

    def __init__(self, name: str, file_path: str) -> None:
        super().__init__(
            f"A secret named {name!r} with a different hash already exists in {file_path!r}"
        )
        self.name = name
        self.file_path = file_path


class FolderNotEmptyError(MetadataRepoError):
    """A shortcuts folder still holds secrets and cannot be removed."""

    def __init__(self, folder: str) -> None:
        super().__init__(f"Folder {folder!r} is not empty")
        self.folder = folder


class SaltInitializationError(MetadataRepoError):
    """The salt could not be established. The repository must not be used."""
