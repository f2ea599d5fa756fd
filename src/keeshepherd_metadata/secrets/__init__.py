"""Durable key/value secret stores used to keep the installation salt."""

from keeshepherd_metadata.secrets.store import SecretStore

__all__ = ["SecretStore"]
