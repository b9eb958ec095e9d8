"""
Key-value persistence for subscription state

Usage counters, the last reset stamp, usage history and the cached
subscription status all live in a flat key-value store. Three backends:

- InMemoryKeyValueStore: tests and ephemeral sessions
- JsonFileKeyValueStore: one JSON document on disk, written atomically
- EncryptedJsonFileKeyValueStore: the same document, Fernet-encrypted
"""

import os
import json
import stat
import base64
import asyncio
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from utils.logger import logger


class KeyValueStore(ABC):
    """
    Async key-value store contract.

    Backends implement the four primitives; typed accessors are shared.
    Typed getters return None when the key is missing or holds a value of
    another type.
    """

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Raw value for key, or None"""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-compatible value"""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key; missing keys are ignored"""

    @abstractmethod
    async def keys(self) -> List[str]:
        """All stored keys"""

    async def contains_key(self, key: str) -> bool:
        return key in await self.keys()

    async def clear(self) -> None:
        for key in await self.keys():
            await self.remove(key)

    async def get_string(self, key: str) -> Optional[str]:
        value = await self.get(key)
        return value if isinstance(value, str) else None

    async def set_string(self, key: str, value: str) -> None:
        await self.set(key, str(value))

    async def get_int(self, key: str) -> Optional[int]:
        value = await self.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    async def set_int(self, key: str, value: int) -> None:
        await self.set(key, int(value))

    async def get_string_list(self, key: str) -> Optional[List[str]]:
        value = await self.get(key)
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return list(value)
        return None

    async def set_string_list(self, key: str, value: List[str]) -> None:
        await self.set(key, [str(item) for item in value])

    async def get_json(self, key: str) -> Any:
        """Decode a JSON blob stored under key; raises ValueError if malformed"""
        raw = await self.get_string(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any) -> None:
        await self.set_string(key, json.dumps(value))


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self._data.keys())

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the raw contents (for inspection)"""
        return dict(self._data)


class JsonFileKeyValueStore(KeyValueStore):
    """
    Whole-store JSON document on disk.

    The document is loaded on first access and rewritten in full after every
    change through a temporary file and an atomic replace, so a crash never
    leaves a half-written store behind.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._data: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    def _serialize(self, data: Dict[str, Any]) -> str:
        return json.dumps(data, indent=2)

    def _deserialize(self, text: str) -> Dict[str, Any]:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("store document is not a JSON object")
        return data

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            self._data = {}
            if self.path.exists():
                try:
                    self._data = self._deserialize(self.path.read_text(encoding="utf-8"))
                except (OSError, ValueError) as e:
                    logger.warning(f"Could not load key-value store {self.path}: {e}")
        return self._data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = self._serialize(self._data or {})
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        self._after_flush()

    def _after_flush(self) -> None:
        pass

    async def get(self, key: str) -> Any:
        async with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._load()[key] = value
            self._flush()

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._flush()

    async def keys(self) -> List[str]:
        async with self._lock:
            return list(self._load().keys())

    async def reload(self) -> None:
        """Drop the in-memory copy so the next access re-reads the file"""
        async with self._lock:
            self._data = None


class EncryptedJsonFileKeyValueStore(JsonFileKeyValueStore):
    """
    JSON file store encrypted at rest.

    Uses Fernet (AES-128-CBC + HMAC-SHA256) with a key derived from the
    configured secret through PBKDF2-SHA256. The file body is prefixed with
    a format version. A document that cannot be decrypted (wrong secret,
    tampering, legacy format) is treated as empty.
    """

    # OWASP 2023 recommendation for PBKDF2-SHA256
    PBKDF2_ITERATIONS = 480000
    FORMAT_PREFIX = "v2:"

    def __init__(self, path: Union[str, Path], secret: str, salt: Union[str, bytes],
                 iterations: Optional[int] = None):
        super().__init__(path)
        if not secret:
            raise ValueError("An encryption secret is required for the encrypted store")
        if isinstance(salt, str):
            salt = salt.encode("utf-8")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations or self.PBKDF2_ITERATIONS,
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8"))))

    def _serialize(self, data: Dict[str, Any]) -> str:
        encrypted = self._fernet.encrypt(json.dumps(data).encode("utf-8"))
        return self.FORMAT_PREFIX + base64.b64encode(encrypted).decode()

    def _deserialize(self, text: str) -> Dict[str, Any]:
        if not text.startswith(self.FORMAT_PREFIX):
            raise ValueError("unsupported store format")
        try:
            decrypted = self._fernet.decrypt(base64.b64decode(text[len(self.FORMAT_PREFIX):]))
        except (InvalidToken, ValueError) as e:
            raise ValueError(f"store decryption failed: {e!r}") from e
        return super()._deserialize(decrypted.decode("utf-8"))

    def _after_flush(self) -> None:
        # Owner read/write only
        if os.name != "nt":
            try:
                os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                logger.warning(f"Could not restrict permissions on {self.path}: {e}")
