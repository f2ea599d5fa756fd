"""Fernet-encrypted JSON file secret store.

Used where no OS keychain is available. The Fernet key is derived from a
passphrase with PBKDF2-HMAC-SHA256 over a random per-file KDF salt, which is
kept in the clear in front of the ciphertext::

    <16 bytes kdf salt><fernet token>

Writes go to a temporary file that replaces the target atomically.
"""

from __future__ import annotations

import base64
import json
import os
import pathlib
import secrets

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from keeshepherd_metadata.secrets.store import SecretStore

_KDF_SALT_LEN = 16
_ITERATIONS = 480_000


def _derive_key(passphrase: str, kdf_salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=kdf_salt,
        iterations=_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class EncryptedFileStore(SecretStore):
    """Stores secrets as one Fernet-encrypted JSON object on disk.

    Parameters
    ----------
    file_path:
        Path to the encrypted file. Created on first write.
    passphrase:
        Passphrase the encryption key is derived from.
    """

    def __init__(self, file_path: pathlib.Path, passphrase: str) -> None:
        self._path = file_path
        self._passphrase = passphrase
        self._fernet: Fernet | None = None
        self._kdf_salt: bytes | None = None

    def _cipher(self, kdf_salt: bytes) -> Fernet:
        if self._fernet is None or self._kdf_salt != kdf_salt:
            self._fernet = Fernet(_derive_key(self._passphrase, kdf_salt))
            self._kdf_salt = kdf_salt
        return self._fernet

    def _read_store(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        blob = self._path.read_bytes()
        kdf_salt, token = blob[:_KDF_SALT_LEN], blob[_KDF_SALT_LEN:]
        return json.loads(self._cipher(kdf_salt).decrypt(token))

    def _write_store(self, data: dict[str, str]) -> None:
        kdf_salt = self._kdf_salt or secrets.token_bytes(_KDF_SALT_LEN)
        token = self._cipher(kdf_salt).encrypt(json.dumps(data, sort_keys=True).encode("utf-8"))

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "wb") as fh:
            fh.write(kdf_salt + token)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self._path)

    async def get(self, key: str) -> str | None:
        return self._read_store().get(key)

    async def set(self, key: str, value: str) -> None:
        store = self._read_store()
        store[key] = value
        self._write_store(store)

    async def delete(self, key: str) -> None:
        store = self._read_store()
        if store.pop(key, None) is not None:
            self._write_store(store)
