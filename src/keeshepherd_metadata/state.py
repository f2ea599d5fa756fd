"""Persisted per-installation flags.

A small JSON document next to the rest of the data directory. It records
one-shot upgrades that already ran (for example the env-variable migration of
the table backend) so they are not attempted again.
"""

from __future__ import annotations

import asyncio
import json
import os
import pathlib
from typing import Any

ENV_VARS_ALREADY_MIGRATED = "env_vars_already_migrated"


class StateStore:
    """JSON-file backed key/value state.

    Parameters
    ----------
    file_path:
        Location of the state document. Created on first write.
    """

    def __init__(self, file_path: pathlib.Path) -> None:
        self._path = file_path
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        with open(self._path, encoding="utf-8") as fh:
            data = json.load(fh)
        return data if isinstance(data, dict) else {}

    def _write(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp, self._path)

    async def get(self, key: str, default: Any = None) -> Any:
        data = await asyncio.to_thread(self._read)
        return data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, key, value)
