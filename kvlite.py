from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
import os
import io
import json
import base64
import hashlib
import logging
import secrets
import sqlite3
import threading
from contextlib import contextmanager

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.exceptions import InvalidTag

logger = logging.getLogger(__name__)

# ---------------------------
# Defaults & constants
# ---------------------------
RESERVED_TABLE = "KVLite"
DEFAULT_BACKEND = "sqlite"
_LOCK_RECORD_KEY = "padlock"
_LOCK_VERSION = 1
_BAD_TABLE_CHARS = frozenset(";\"'&(")
_DEFAULT_KDF_ITERATIONS = 390000
_KDF_ITERATIONS_ENV = "KVLITE_KDF_ITERATIONS"
_SALT_SIZE = 16
_NONCE_SIZE = 12
_CTR_LABEL = b"kvlite-ctr"

Secret = Union[bytes, bytearray, str]

# ---------------------------
# Errors
# ---------------------------
class KVLiteError(Exception):
    pass

class ValidationError(KVLiteError):
    pass

class CodecError(KVLiteError):
    pass

class CryptoError(KVLiteError):
    pass

class BackendError(KVLiteError):
    pass

class MissingTableError(BackendError):
    pass

class MissingKeyError(BackendError):
    pass

class StoreClosedError(BackendError):
    pass

class LockProtocolError(KVLiteError):
    pass

class BadPadlockError(LockProtocolError):
    pass

class BadPassError(LockProtocolError):
    pass

class NotUnlockedError(LockProtocolError):
    pass

class NotLockedError(LockProtocolError):
    pass

def _as_bytes(value: Optional[Secret]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"expected bytes or str, got {type(value).__name__}")

# ---------------------------
# Table name checks
# ---------------------------
def check_table(table: str, reserved: bool = False) -> None:
    """Raise ValidationError for unsafe names, or the reserved name unless allowed."""
    if not isinstance(table, str) or not table:
        raise ValidationError("table name must be a non-empty string")
    for ch in table:
        if ch in _BAD_TABLE_CHARS:
            raise ValidationError(f"Invalid characters in table name: {table!r}")
    if not reserved and table.casefold() == RESERVED_TABLE.casefold():
        raise ValidationError(f"Sorry, {table} is a reserved name.")

def _ident(table: str) -> str:
    # only place a table name is spliced into statement text
    check_table(table, reserved=True)
    return f'"{table}"'

# ---------------------------
# Value codec
# ---------------------------
_RECORD_TYPES: Dict[str, type] = {}
_RECORD_NAMES: Dict[type, str] = {}
_records_lock = threading.RLock()

_TAG_TYPES: Dict[str, type] = {
    "none": type(None),
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "bytes": bytes,
    "list": list,
    "tuple": tuple,
    "set": set,
    "dict": dict,
}

def register_record(cls: Optional[type] = None, name: Optional[str] = None) -> Any:
    """Allow instances of ``cls`` to be stored as structured records.

    Works as ``register_record(Point)`` or as a decorator, with or without a
    ``name``. The name is written into every encoded record, so it must stay
    stable across releases of the calling code.
    """
    def _register(c: type) -> type:
        rec_name = name or f"{c.__module__}.{c.__qualname__}"
        with _records_lock:
            existing = _RECORD_TYPES.get(rec_name)
            if existing is not None and existing is not c:
                raise CodecError(f"record name {rec_name!r} already registered for {existing!r}")
            _RECORD_TYPES[rec_name] = c
            _RECORD_NAMES[c] = rec_name
        return c
    if cls is None:
        return _register
    return _register(cls)

def _tag(value: Any) -> Dict[str, Any]:
    rec_name = _RECORD_NAMES.get(type(value))
    if rec_name is not None:
        try:
            attrs = vars(value)
        except TypeError:
            raise CodecError(f"record {rec_name!r} has no instance __dict__") from None
        fields = {k: _tag(v) for k, v in attrs.items()}
        return {"t": "record", "n": rec_name, "v": fields}
    if value is None:
        return {"t": "none"}
    if isinstance(value, bool):
        return {"t": "bool", "v": value}
    if isinstance(value, int):
        return {"t": "int", "v": int(value)}
    if isinstance(value, float):
        return {"t": "float", "v": value}
    if isinstance(value, str):
        return {"t": "str", "v": value}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"t": "bytes", "v": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list):
        return {"t": "list", "v": [_tag(x) for x in value]}
    if isinstance(value, tuple):
        return {"t": "tuple", "v": [_tag(x) for x in value]}
    if isinstance(value, (set, frozenset)):
        return {"t": "set", "v": [_tag(x) for x in value]}
    if isinstance(value, dict):
        return {"t": "dict", "v": [[_tag(k), _tag(v)] for k, v in value.items()]}
    raise CodecError(f"cannot encode value of type {type(value).__name__}; use register_record()")

def _untag(node: Any) -> Any:
    if not isinstance(node, dict) or "t" not in node:
        raise CodecError("malformed value document")
    tag = node["t"]
    v = node.get("v")
    try:
        if tag == "none":
            return None
        if tag in ("bool", "int", "float", "str"):
            if not isinstance(v, _TAG_TYPES[tag]) and not (tag == "float" and isinstance(v, int)):
                raise CodecError(f"bad {tag} payload")
            return _TAG_TYPES[tag](v)
        if tag == "bytes":
            return base64.b64decode(v.encode("ascii"), validate=True)
        if tag == "list":
            return [_untag(x) for x in v]
        if tag == "tuple":
            return tuple(_untag(x) for x in v)
        if tag == "set":
            return {_untag(x) for x in v}
        if tag == "dict":
            return {_untag(k): _untag(x) for k, x in v}
        if tag == "record":
            cls = _RECORD_TYPES.get(node.get("n"))
            if cls is None:
                raise CodecError(f"unknown record type {node.get('n')!r}")
            obj = cls.__new__(cls)
            obj.__dict__.update({k: _untag(x) for k, x in v.items()})
            return obj
    except CodecError:
        raise
    except (AttributeError, TypeError, ValueError) as e:
        raise CodecError(f"malformed {tag} payload: {e}") from e
    raise CodecError(f"unknown value tag {tag!r}")

class Codec:
    """Tagged-variant value codec.

    Byte sequences are stored verbatim. Everything else becomes a small JSON
    document where every node carries its shape, so it can be rebuilt into a
    destination of the same type.
    """

    def __init__(self) -> None:
        self._buffer = io.BytesIO()

    def encode(self, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        doc = _tag(value)
        self._buffer.seek(0)
        self._buffer.truncate()
        self._buffer.write(json.dumps(doc, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
        return self._buffer.getvalue()

    def decode(self, data: bytes, into: Optional[type] = None) -> Any:
        if into is bytes or into is bytearray:
            return into(data)
        try:
            doc = json.loads(bytes(data).decode("utf-8"))
            if not isinstance(doc, dict) or "t" not in doc:
                raise CodecError("not a kvlite value document")
        except (UnicodeDecodeError, ValueError, CodecError) as e:
            if into is None:
                # raw bytes, or ciphertext read under the wrong key
                return bytes(data)
            raise CodecError(f"cannot decode stored value into {into.__name__}: {e}") from e
        if into is None:
            try:
                return _untag(doc)
            except CodecError:
                return bytes(data)
        if into is not object:
            tag = doc["t"]
            if tag == "record":
                expected = _RECORD_TYPES.get(doc.get("n"))
            else:
                expected = _TAG_TYPES.get(tag)
            if expected is not into:
                raise CodecError(f"stored {tag} value does not match destination {into.__name__}")
        return _untag(doc)

# ---------------------------
# Encryption helpers
# ---------------------------
def _ctr_cipher(key: bytes) -> Cipher:
    aes_key = hashlib.sha256(key).digest()
    counter = hashlib.sha256(_CTR_LABEL + key).digest()[:16]
    return Cipher(algorithms.AES(aes_key), modes.CTR(counter))

def encrypt(data: bytes, key: bytes) -> bytes:
    enc = _ctr_cipher(bytes(key)).encryptor()
    return enc.update(bytes(data)) + enc.finalize()

def decrypt(data: bytes, key: bytes) -> bytes:
    dec = _ctr_cipher(bytes(key)).decryptor()
    return dec.update(bytes(data)) + dec.finalize()

def _kdf_iterations() -> int:
    raw = os.environ.get(_KDF_ITERATIONS_ENV, "").strip()
    if not raw:
        return _DEFAULT_KDF_ITERATIONS
    try:
        n = int(raw)
    except ValueError:
        raise ValidationError(f"{_KDF_ITERATIONS_ENV} must be an integer, got {raw!r}") from None
    if n < 1:
        raise ValidationError(f"{_KDF_ITERATIONS_ENV} must be positive")
    return n

def _derive_key(secret: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(secret)

def _seal(secret: bytes, key_material: bytes) -> bytes:
    nonce = secrets.token_bytes(_NONCE_SIZE)
    return nonce + AESGCM(key_material).encrypt(nonce, secret, None)

def _unseal(payload: bytes, key_material: bytes) -> Optional[bytes]:
    if len(payload) < _NONCE_SIZE + 16:
        return None
    try:
        return AESGCM(key_material).decrypt(payload[:_NONCE_SIZE], payload[_NONCE_SIZE:], None)
    except InvalidTag:
        return None

# ---------------------------
# Reader/writer lock
# ---------------------------
class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writers_waiting = 0
        self._writer_active = False

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer_active or self._writers_waiting > 0:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._readers > 0 or self._writer_active:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer_active = True
        try:
            yield
        finally:
            with self._cond:
                self._writer_active = False
                self._cond.notify_all()

# ---------------------------
# Backends
# ---------------------------
def _translate(exc: sqlite3.Error) -> BackendError:
    msg = str(exc)
    if "no such table" in msg:
        return MissingTableError(msg)
    return BackendError(msg)

class SQLiteBackend:
    def __init__(self, path: str) -> None:
        self.path = path
        try:
            self._conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        except sqlite3.Error as e:
            raise BackendError(f"{path}: {e}") from e

    def ping(self) -> None:
        self.query_row("SELECT 1")

    def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        try:
            return self._conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise _translate(e) from e

    def query_row(self, sql: str, params: Tuple[Any, ...] = ()) -> Tuple[Any, ...]:
        try:
            row = self._conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise _translate(e) from e
        if row is None:
            raise MissingKeyError("no rows in result set")
        return tuple(row)

    def query_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Tuple[Any, ...]]:
        try:
            return [tuple(r) for r in self._conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise _translate(e) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self.execute("BEGIN")
        try:
            yield
            self.execute("COMMIT")
        except BaseException:
            self._rollback()
            raise

    def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.debug("rollback failed on %s: %s", self.path, e)

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as e:
            raise _translate(e) from e

_BACKENDS: Dict[str, Callable[[str], Any]] = {}
_backends_lock = threading.Lock()

def register_backend(name: str = DEFAULT_BACKEND, factory: Callable[[str], Any] = SQLiteBackend) -> None:
    """Bind a backend name to a connection factory. Re-registering the same pair is a no-op."""
    with _backends_lock:
        existing = _BACKENDS.get(name)
        if existing is factory:
            return
        if existing is not None:
            raise ValidationError(f"backend {name!r} is already registered")
        _BACKENDS[name] = factory
    logger.debug("registered backend %s", name)

def _connect(path: str, backend: str) -> Any:
    with _backends_lock:
        if backend == DEFAULT_BACKEND and DEFAULT_BACKEND not in _BACKENDS:
            _BACKENDS[DEFAULT_BACKEND] = SQLiteBackend
        factory = _BACKENDS.get(backend)
    if factory is None:
        raise ValidationError(f"unknown backend {backend!r}")
    return factory(path)

# ---------------------------
# Store
# ---------------------------
class Store:
    def __init__(self, backend: Any, path: str) -> None:
        self.path: str = path
        self._backend = backend
        self._key: bytes = b""
        self._codec = Codec()
        self._rwlock = ReadWriteLock()
        self._closed = False

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _live(self) -> Any:
        if self._closed:
            raise StoreClosedError(f"{self.path}: store is closed")
        return self._backend

    # ----- writes -----
    def set(self, table: str, key: str, value: Any) -> None:
        self._set(table, key, value)

    def crypt_set(self, table: str, key: str, value: Any) -> None:
        """Like set(), but the encoded value is encrypted with the store key."""
        self._set(table, key, value, encrypted=True)

    def _set(self, table: str, key: str, value: Any, encrypted: bool = False, reserved: bool = False) -> None:
        if not isinstance(key, str):
            raise TypeError("key must be a string")
        with self._rwlock.write_lock():
            backend = self._live()
            check_table(table, reserved=reserved)
            data = self._codec.encode(value)
            flag = 0
            if encrypted:
                if not self._key:
                    raise CryptoError("no encryption key set; open with a padlock or call crypt_key()")
                data = encrypt(data, self._key)
                flag = 1
            name = _ident(table)
            backend.execute(f"CREATE TABLE IF NOT EXISTS {name} (key TEXT PRIMARY KEY COLLATE NOCASE, value BLOB, e INTEGER)")
            with backend.transaction():
                backend.execute(f"DELETE FROM {name} WHERE key = ? COLLATE NOCASE", (key,))
                backend.execute(f"INSERT INTO {name} (key, value, e) VALUES (?, ?, ?)", (key, data, flag))

    def unset(self, table: str, key: str) -> None:
        self._unset(table, key)

    def _unset(self, table: str, key: str, reserved: bool = False) -> None:
        with self._rwlock.write_lock():
            backend = self._live()
            check_table(table, reserved=reserved)
            try:
                backend.execute(f"DELETE FROM {_ident(table)} WHERE key = ? COLLATE NOCASE", (key,))
            except MissingTableError:
                return

    def truncate(self, table: str) -> None:
        """Drop the whole table. Unlike unset(), a missing table is an error."""
        with self._rwlock.write_lock():
            backend = self._live()
            check_table(table)
            backend.execute(f"DROP TABLE {_ident(table)}")
            logger.debug("dropped table %s in %s", table, self.path)

    def crypt_key(self, key: Secret) -> None:
        """Manually override the encryption key used by crypt_set() and get()."""
        with self._rwlock.write_lock():
            self._key = _as_bytes(key)

    # ----- reads -----
    def get(self, table: str, key: str, into: Optional[type] = None) -> Tuple[bool, Any]:
        """Return ``(found, value)`` for ``key`` in ``table``.

        A table that was never written returns ``(False, None)``. A key missing
        from an existing table raises MissingKeyError. ``into`` is the expected
        type of the value; ``bytes`` returns the stored bytes verbatim and
        ``None`` accepts whatever was stored.
        """
        with self._rwlock.read_lock():
            backend = self._live()
            check_table(table, reserved=True)
            try:
                data, flag = backend.query_row(f"SELECT value, e FROM {_ident(table)} WHERE key = ? COLLATE NOCASE", (key,))
            except MissingTableError:
                return False, None
            data = bytes(data or b"")
            if flag:
                data = decrypt(data, self._key)
            return True, self._codec.decode(data, into)

    def list_tables(self, pattern: str = "") -> List[str]:
        with self._rwlock.read_lock():
            backend = self._live()
            sql = "SELECT name FROM sqlite_master WHERE type = 'table'"
            params: Tuple[Any, ...] = ()
            if pattern:
                sql += " AND name LIKE ?"
                params = (pattern,)
            rows = backend.query_all(sql + " ORDER BY name COLLATE NOCASE", params)
            return [r[0] for r in rows if r[0].casefold() != RESERVED_TABLE.casefold()]

    def list_keys(self, table: str, pattern: str = "") -> List[str]:
        with self._rwlock.read_lock():
            backend = self._live()
            check_table(table, reserved=True)
            sql = f"SELECT key FROM {_ident(table)}"
            params: Tuple[Any, ...] = ()
            if pattern:
                sql += " WHERE key LIKE ?"
                params = (pattern,)
            try:
                rows = backend.query_all(sql + " ORDER BY key COLLATE NOCASE", params)
            except MissingTableError:
                return []
            return [r[0] for r in rows]

    def count_keys(self, table: str, pattern: str = "") -> int:
        with self._rwlock.read_lock():
            backend = self._live()
            check_table(table, reserved=True)
            sql = f"SELECT COUNT(key) FROM {_ident(table)}"
            params: Tuple[Any, ...] = ()
            if pattern:
                sql += " WHERE key LIKE ?"
                params = (pattern,)
            try:
                (count,) = backend.query_row(sql, params)
            except MissingTableError:
                return 0
            return int(count)

    def close(self) -> None:
        with self._rwlock.write_lock():
            if self._closed:
                return
            self._closed = True
            self._key = b""
            self._backend.close()
        logger.debug("closed %s", self.path)

# ---------------------------
# Lock record
# ---------------------------
def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")

def _read_lock_record(store: Store) -> Optional[Dict[str, Any]]:
    try:
        found, raw = store.get(RESERVED_TABLE, _LOCK_RECORD_KEY, bytes)
    except MissingKeyError:
        return None
    if not found:
        return None
    try:
        doc = json.loads(raw.decode("utf-8"))
        return {
            "iterations": int(doc["iterations"]),
            "pad_salt": base64.b64decode(doc["pad_salt"]),
            "pad_key": base64.b64decode(doc["pad_key"]),
            "pass_salt": base64.b64decode(doc["pass_salt"]),
            "pass_key": base64.b64decode(doc["pass_key"]),
        }
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise LockProtocolError(f"{store.path}: corrupt lock record: {e}") from e

def _resolve_key(store: Store, padlock: bytes) -> bytes:
    record = _read_lock_record(store)
    if record is None:
        return padlock
    if not padlock:
        logger.warning("%s is locked and no padlock was given", store.path)
        raise BadPadlockError(f"{store.path}: datastore is locked, padlock required")
    km = _derive_key(padlock, record["pad_salt"], record["iterations"])
    key = _unseal(record["pad_key"], km)
    if key is None:
        logger.warning("rejected padlock for %s", store.path)
        raise BadPadlockError(f"{store.path}: bad padlock")
    return key

# ---------------------------
# Open / lock / unlock
# ---------------------------
def open(path: str, *padlock: Secret, backend: str = DEFAULT_BACKEND) -> Store:
    """Open or create a datastore.

    Padlock fragments are concatenated into one token. On an unlocked
    datastore the token is used as the encryption key; on a locked one it must
    unseal the stored key or BadPadlockError is raised.
    """
    if not path:
        raise ValidationError("kvlite: missing filename parameter")
    token = b"".join(_as_bytes(p) for p in padlock)
    return _open(path, token, backend=backend)

def _open(path: str, padlock: bytes, backend: str = DEFAULT_BACKEND, resolve_lock: bool = True) -> Store:
    conn = _connect(path, backend)
    store = Store(conn, path)
    try:
        conn.ping()
        conn.execute("PRAGMA case_sensitive_like=OFF")
        if resolve_lock:
            store._key = _resolve_key(store, padlock)
    except Exception:
        store.close()
        raise
    logger.debug("opened %s", path)
    return store

def lock(path: str, passphrase: Secret, padlock: Secret, key: Optional[Secret] = None) -> None:
    """Seal the encryption key so the datastore only opens with ``padlock``.

    ``key`` is the key to protect. When omitted it is the padlock itself,
    which is the key an unlocked open(path, padlock) already writes with.
    """
    if not path:
        raise ValidationError("kvlite: missing filename parameter")
    pass_bytes = _as_bytes(passphrase)
    pad_bytes = _as_bytes(padlock)
    if not pass_bytes:
        raise ValidationError("passphrase must not be empty")
    if not pad_bytes:
        raise ValidationError("padlock must not be empty")
    master = _as_bytes(key) or pad_bytes
    iterations = _kdf_iterations()

    with _open(path, b"", resolve_lock=False) as store:
        if _read_lock_record(store) is not None:
            raise NotUnlockedError(f"{path}: datastore is already locked, unlock it first")
        pad_salt = secrets.token_bytes(_SALT_SIZE)
        pass_salt = secrets.token_bytes(_SALT_SIZE)
        record = {
            "version": _LOCK_VERSION,
            "iterations": iterations,
            "pad_salt": _b64(pad_salt),
            "pad_key": _b64(_seal(master, _derive_key(pad_bytes, pad_salt, iterations))),
            "pass_salt": _b64(pass_salt),
            "pass_key": _b64(_seal(master, _derive_key(pass_bytes, pass_salt, iterations))),
        }
        payload = json.dumps(record, separators=(",", ":")).encode("utf-8")
        store._set(RESERVED_TABLE, _LOCK_RECORD_KEY, payload, reserved=True)
    logger.info("locked %s", path)

def unlock(path: str, passphrase: Secret) -> bytes:
    """Remove the lock record and return the key it protected."""
    if not path:
        raise ValidationError("kvlite: missing filename parameter")
    with _open(path, b"", resolve_lock=False) as store:
        record = _read_lock_record(store)
        if record is None:
            raise NotLockedError(f"{path}: datastore is not locked")
        km = _derive_key(_as_bytes(passphrase), record["pass_salt"], record["iterations"])
        master = _unseal(record["pass_key"], km)
        if master is None:
            logger.warning("rejected passphrase for %s", path)
            raise BadPassError(f"{path}: bad passphrase")
        store._unset(RESERVED_TABLE, _LOCK_RECORD_KEY, reserved=True)
    logger.info("unlocked %s", path)
    return master

# ---------------------------
# Module exports
# ---------------------------
__all__ = [
    "open", "lock", "unlock", "Store", "Codec", "ReadWriteLock", "SQLiteBackend",
    "register_backend", "register_record", "check_table", "encrypt", "decrypt",
    "RESERVED_TABLE", "DEFAULT_BACKEND",
    "KVLiteError", "ValidationError", "CodecError", "CryptoError", "BackendError",
    "MissingTableError", "MissingKeyError", "StoreClosedError", "LockProtocolError",
    "BadPadlockError", "BadPassError", "NotUnlockedError", "NotLockedError",
]
