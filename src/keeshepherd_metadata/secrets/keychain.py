"""macOS Keychain secret store.

Wraps the ``security`` CLI and keeps each key as a generic password under a
single service name.
"""

from __future__ import annotations

import asyncio
import logging
import re

from keeshepherd_metadata.secrets.store import SecretStore

logger = logging.getLogger(__name__)

_ERR_DUPLICATE_ITEM = 45
_ERR_ITEM_NOT_FOUND = 44

_PASSWORD_RE = re.compile(r'password:\s*"(.*)"')


class KeychainStore(SecretStore):
    """Stores secrets in the login keychain via ``security``.

    Parameters
    ----------
    service_name:
        Keychain service that namespaces every key written by this store.
    """

    def __init__(self, service_name: str = "com.keeshepherd.metadata") -> None:
        self._service = service_name

    async def _run(self, *args: str) -> tuple[int, bytes, bytes]:
        proc = await asyncio.create_subprocess_exec(
            "security",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return proc.returncode or 0, stdout, stderr

    async def get(self, key: str) -> str | None:
        returncode, _stdout, stderr = await self._run(
            "find-generic-password", "-s", self._service, "-a", key, "-g",
        )
        if returncode == _ERR_ITEM_NOT_FOUND:
            return None
        if returncode != 0:
            raise OSError(f"security find-generic-password exited with {returncode}")

        # Printed to stderr as: password: "thevalue"
        match = _PASSWORD_RE.search(stderr.decode("utf-8", errors="replace"))
        return match.group(1) if match else None

    async def set(self, key: str, value: str) -> None:
        returncode, _, _ = await self._run(
            "add-generic-password", "-s", self._service, "-a", key, "-w", value, "-U",
        )
        if returncode == _ERR_DUPLICATE_ITEM:
            logger.debug("Keychain item %s exists, replacing", key)
            await self.delete(key)
            returncode, _, _ = await self._run(
                "add-generic-password", "-s", self._service, "-a", key, "-w", value,
            )
        if returncode != 0:
            raise OSError(f"security add-generic-password exited with {returncode}")

    async def delete(self, key: str) -> None:
        # errSecItemNotFound is fine here
        await self._run("delete-generic-password", "-s", self._service, "-a", key)
