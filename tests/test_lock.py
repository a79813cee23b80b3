"""
Tests for the passphrase/padlock lock protocol.
"""

from __future__ import annotations

import pytest

import kvlite
from kvlite import (
    BadPadlockError,
    BadPassError,
    LockProtocolError,
    NotLockedError,
    NotUnlockedError,
    ValidationError,
)


@pytest.fixture
def locked_path(db_path: str) -> str:
    """A datastore locked with passphrase 'pass' and padlock b'padlock'."""
    kvlite.lock(db_path, "pass", b"padlock")
    return db_path


class TestOpenLocked:
    """Opening a locked datastore needs the padlock."""

    def test_wrong_padlock(self, locked_path: str) -> None:
        """Test the wrong padlock is rejected."""
        with pytest.raises(BadPadlockError):
            kvlite.open(locked_path, b"not the padlock")

    def test_missing_padlock(self, locked_path: str) -> None:
        """Test a locked datastore cannot be opened without a padlock."""
        with pytest.raises(BadPadlockError):
            kvlite.open(locked_path)

    def test_correct_padlock_recovers_key(self, locked_path: str) -> None:
        """Test values encrypted in one session decrypt in the next."""
        with kvlite.open(locked_path, b"padlock") as s:
            s.crypt_set("vault", "card", {"number": "4111", "cvv": 123})
        with kvlite.open(locked_path, b"pad", b"lock") as s:
            assert s.get("vault", "card", dict) == (True, {"number": "4111", "cvv": 123})

    def test_default_key_is_the_padlock(self, locked_path: str) -> None:
        """Test locking without a key seals the padlock-derived key."""
        with kvlite.open(locked_path, b"padlock") as s:
            s.crypt_set("vault", "k", b"data")
        assert kvlite.unlock(locked_path, "pass") == b"padlock"
        with kvlite.open(locked_path, b"padlock") as s:
            assert s.get("vault", "k", bytes) == (True, b"data")

    def test_reserved_table_case_variants(self, locked_path: str) -> None:
        """Test the lock table cannot be dropped or overwritten under another spelling."""
        with kvlite.open(locked_path, b"padlock") as s:
            for name in ("kvlite", "KVLITE", "kvLite"):
                with pytest.raises(ValidationError):
                    s.truncate(name)
                with pytest.raises(ValidationError):
                    s.set(name, "padlock", b"forged")
                with pytest.raises(ValidationError):
                    s.unset(name, "padlock")
        with pytest.raises(BadPadlockError):
            kvlite.open(locked_path)

    def test_lock_error_hierarchy(self, locked_path: str) -> None:
        """Test lock failures share one base class."""
        with pytest.raises(LockProtocolError):
            kvlite.open(locked_path, b"nope")


class TestLock:
    """Locking rules."""

    def test_double_lock_rejected(self, locked_path: str) -> None:
        """Test a lock cannot be stacked on another."""
        with pytest.raises(NotUnlockedError):
            kvlite.lock(locked_path, "pass2", b"padlock2")
        with kvlite.open(locked_path, b"padlock"):
            pass

    def test_lock_keeps_data_written_before(self, db_path: str) -> None:
        """Test records encrypted under the padlock survive locking with it."""
        with kvlite.open(db_path, b"P") as s:
            s.crypt_set("t", "k", "secret")
        kvlite.lock(db_path, "pass", b"P")
        with kvlite.open(db_path, b"P") as s:
            assert s.get("t", "k") == (True, "secret")
            assert s.get("t", "k", str) == (True, "secret")

    def test_lock_existing_key(self, db_path: str) -> None:
        """Test locking can protect the key already in use."""
        with kvlite.open(db_path, b"old-key") as s:
            s.crypt_set("t", "k", "v")
        kvlite.lock(db_path, "pass", b"padlock", key=b"old-key")
        with kvlite.open(db_path, b"padlock") as s:
            assert s.get("t", "k", str) == (True, "v")

    def test_empty_secrets_rejected(self, db_path: str) -> None:
        """Test passphrase and padlock are both required."""
        with pytest.raises(ValidationError):
            kvlite.lock(db_path, "", b"padlock")
        with pytest.raises(ValidationError):
            kvlite.lock(db_path, "pass", b"")
        with pytest.raises(ValidationError):
            kvlite.lock("", "pass", b"padlock")

    def test_bad_iteration_setting(self, db_path: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a malformed KDF iteration override is reported."""
        monkeypatch.setenv("KVLITE_KDF_ITERATIONS", "many")
        with pytest.raises(ValidationError):
            kvlite.lock(db_path, "pass", b"padlock")

    def test_record_keeps_iterations(self, locked_path: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a changed iteration setting does not break existing locks."""
        monkeypatch.setenv("KVLITE_KDF_ITERATIONS", "2000")
        with kvlite.open(locked_path, b"padlock"):
            pass
        kvlite.unlock(locked_path, "pass")


class TestUnlock:
    """Unlocking rules."""

    def test_wrong_passphrase_keeps_lock(self, locked_path: str) -> None:
        """Test a bad passphrase fails and leaves the lock in place."""
        with pytest.raises(BadPassError):
            kvlite.unlock(locked_path, "wrongpass")
        with pytest.raises(BadPadlockError):
            kvlite.open(locked_path)
        with kvlite.open(locked_path, b"padlock"):
            pass

    def test_unlock_then_open_without_padlock(self, locked_path: str) -> None:
        """Test an unlocked datastore opens with no padlock."""
        kvlite.unlock(locked_path, "pass")
        with kvlite.open(locked_path) as s:
            assert s.list_tables() == []

    def test_unlock_returns_key(self, locked_path: str) -> None:
        """Test the returned key still reads data written while locked."""
        with kvlite.open(locked_path, b"padlock") as s:
            s.crypt_set("t", "k", [1, 2, 3])
        key = kvlite.unlock(locked_path, "pass")
        with kvlite.open(locked_path, key) as s:
            assert s.get("t", "k", list) == (True, [1, 2, 3])

    def test_relock_after_unlock(self, locked_path: str) -> None:
        """Test the full lock, unlock, lock cycle."""
        key = kvlite.unlock(locked_path, "pass")
        kvlite.lock(locked_path, "new pass", b"new padlock", key=key)
        with pytest.raises(BadPadlockError):
            kvlite.open(locked_path, b"padlock")
        with kvlite.open(locked_path, b"new padlock"):
            pass

    def test_unlock_when_not_locked(self, db_path: str) -> None:
        """Test unlocking an unlocked datastore."""
        with pytest.raises(NotLockedError):
            kvlite.unlock(db_path, "pass")
