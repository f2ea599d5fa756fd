"""Tests for the durable secret stores."""

from __future__ import annotations

import pathlib
from unittest.mock import AsyncMock, patch

import pytest

from keeshepherd_metadata.secrets.encrypted_file import EncryptedFileStore
from keeshepherd_metadata.secrets.keychain import KeychainStore
from keeshepherd_metadata.secrets.store import SecretStore


class TestSecretStoreABC:

    def test_cannot_instantiate_abstract(self) -> None:
        with pytest.raises(TypeError):
            SecretStore()  # type: ignore[abstract]

    def test_has_required_methods(self) -> None:
        for method in ("get", "set", "delete"):
            assert hasattr(SecretStore, method), f"SecretStore must define {method}"


# ---------------------------------------------------------------------------
# EncryptedFileStore
# ---------------------------------------------------------------------------

class TestEncryptedFileStore:

    @pytest.fixture
    def store(self, tmp_path: pathlib.Path) -> EncryptedFileStore:
        return EncryptedFileStore(file_path=tmp_path / "secrets.enc", passphrase="test-passphrase")

    @pytest.mark.asyncio
    async def test_set_and_get(self, store: EncryptedFileStore) -> None:
        await store.set("|KeeShepherdSalt|", "ab" * 128)
        assert await store.get("|KeeShepherdSalt|") == "ab" * 128

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store: EncryptedFileStore) -> None:
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_delete(self, store: EncryptedFileStore) -> None:
        await store.set("key", "value")
        await store.delete("key")
        assert await store.get("key") is None

    @pytest.mark.asyncio
    async def test_delete_missing_does_not_raise(self, store: EncryptedFileStore) -> None:
        await store.delete("missing")

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "secrets.enc"
        await EncryptedFileStore(path, "pw").set("key", "value")
        assert await EncryptedFileStore(path, "pw").get("key") == "value"

    @pytest.mark.asyncio
    async def test_wrong_passphrase_raises(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "secrets.enc"
        await EncryptedFileStore(path, "correct").set("key", "value")
        with pytest.raises(Exception):
            await EncryptedFileStore(path, "wrong").get("key")

    @pytest.mark.asyncio
    async def test_file_is_not_plaintext(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "secrets.enc"
        await EncryptedFileStore(path, "pw").set("salt", "super-secret-salt")
        raw = path.read_bytes()
        assert b"super-secret-salt" not in raw

    @pytest.mark.asyncio
    async def test_kdf_salt_differs_per_file(self, tmp_path: pathlib.Path) -> None:
        first, second = tmp_path / "a.enc", tmp_path / "b.enc"
        await EncryptedFileStore(first, "pw").set("k", "v")
        await EncryptedFileStore(second, "pw").set("k", "v")
        assert first.read_bytes()[:16] != second.read_bytes()[:16]

    @pytest.mark.asyncio
    async def test_no_temp_file_left_behind(self, tmp_path: pathlib.Path) -> None:
        await EncryptedFileStore(tmp_path / "secrets.enc", "pw").set("k", "v")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["secrets.enc"]


# ---------------------------------------------------------------------------
# KeychainStore (mocked macOS security CLI)
# ---------------------------------------------------------------------------

def _proc(returncode: int = 0, stderr: bytes = b"") -> AsyncMock:
    proc = AsyncMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(b"", stderr))
    return proc


class TestKeychainStore:

    @pytest.fixture
    def store(self) -> KeychainStore:
        return KeychainStore(service_name="com.keeshepherd.test")

    @pytest.mark.asyncio
    async def test_set_calls_security_add(self, store: KeychainStore) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=_proc()) as mock_exec:
            await store.set("salt", "abc123")

        call_args = mock_exec.call_args[0]
        assert call_args[0] == "security"
        assert "add-generic-password" in call_args
        assert "com.keeshepherd.test" in call_args
        assert "salt" in call_args
        assert "abc123" in call_args

    @pytest.mark.asyncio
    async def test_set_replaces_duplicate(self, store: KeychainStore) -> None:
        calls: list[tuple[object, ...]] = []

        async def fake_exec(*args: object, **kwargs: object) -> AsyncMock:
            calls.append(args)
            return _proc(45 if len(calls) == 1 else 0)

        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec):
            await store.set("salt", "new")

        assert [c[1] for c in calls] == [
            "add-generic-password", "delete-generic-password", "add-generic-password",
        ]

    @pytest.mark.asyncio
    async def test_set_failure_raises(self, store: KeychainStore) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=_proc(51)):
            with pytest.raises(OSError):
                await store.set("salt", "value")

    @pytest.mark.asyncio
    async def test_get_parses_password(self, store: KeychainStore) -> None:
        with patch(
            "asyncio.create_subprocess_exec",
            return_value=_proc(0, b'password: "abc123"\n'),
        ):
            assert await store.get("salt") == "abc123"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store: KeychainStore) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=_proc(44)):
            assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_failure_raises(self, store: KeychainStore) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=_proc(36)):
            with pytest.raises(OSError):
                await store.get("salt")

    @pytest.mark.asyncio
    async def test_delete_missing_does_not_raise(self, store: KeychainStore) -> None:
        with patch("asyncio.create_subprocess_exec", return_value=_proc(44)):
            await store.delete("missing")
