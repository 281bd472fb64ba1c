"""
Durable text-blob storage keyed by logical name.

Every collection is persisted as one blob that is replaced wholesale on each
write (last write wins). Readers get ``None`` for a blob that was never
written and :class:`StorageReadFailure` for one that exists but cannot be
read back.
"""
from pathlib import Path
from threading import RLock
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag

from .config import Settings
from .crypto import _CRYPTO_LOCK, aes_decrypt, aes_encrypt, atomic_write_bytes, get_or_create_key
from .errors import StorageReadFailure, StorageWriteFailure
from .logs import logger


class DurableStore:
    def read(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def write(self, name: str, text: str) -> None:
        raise NotImplementedError

    def path_for(self, name: str) -> str:
        raise NotImplementedError


class InMemoryStore(DurableStore):
    """Keeps blobs in a dict; nothing survives the process."""

    def __init__(self, blobs: Optional[Dict[str, str]] = None):
        self._blobs = dict(blobs or {})
        self._lock = RLock()

    def read(self, name: str) -> Optional[str]:
        with self._lock:
            return self._blobs.get(name)

    def write(self, name: str, text: str) -> None:
        with self._lock:
            self._blobs[name] = text

    def path_for(self, name: str) -> str:
        return f"memory://{name}"


class FileStore(DurableStore):
    suffix = ".json"

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()

    def _path(self, name: str) -> Path:
        return self.base_dir / f"{name}{self.suffix}"

    def path_for(self, name: str) -> str:
        return str(self._path(name))

    def _decode(self, raw: bytes) -> str:
        return raw.decode("utf-8")

    def _encode(self, text: str) -> bytes:
        return text.encode("utf-8")

    def read(self, name: str) -> Optional[str]:
        path = self._path(name)
        with self._lock:
            if not path.exists():
                return None
            try:
                raw = path.read_bytes()
            except OSError as e:
                raise StorageReadFailure(f"cannot read {path}: {e}") from e
        try:
            return self._decode(raw)
        except UnicodeDecodeError as e:
            raise StorageReadFailure(f"cannot decode {path}: {e}") from e

    def write(self, name: str, text: str) -> None:
        path = self._path(name)
        data = self._encode(text)
        try:
            with self._lock:
                atomic_write_bytes(path, data)
        except OSError as e:
            raise StorageWriteFailure(f"cannot write {path}: {e}") from e


class EncryptedFileStore(FileStore):
    """FileStore whose blobs are AES-GCM encrypted at rest."""

    suffix = ".json.aes"

    def __init__(self, base_dir: Path, key: bytes):
        super().__init__(base_dir)
        self.key = key

    def _decode(self, raw: bytes) -> str:
        try:
            with _CRYPTO_LOCK:
                pt = aes_decrypt(raw, self.key)
        except InvalidTag as e:
            raise StorageReadFailure("blob failed authentication") from e
        return super()._decode(pt)

    def _encode(self, text: str) -> bytes:
        with _CRYPTO_LOCK:
            return aes_encrypt(super()._encode(text), self.key)


def open_store(settings: Settings) -> DurableStore:
    if settings.encrypt:
        key = get_or_create_key(settings.key_path)
        logger.info(f"store: encrypted files in {settings.base_dir}")
        return EncryptedFileStore(settings.base_dir, key)
    logger.info(f"store: json files in {settings.base_dir}")
    return FileStore(settings.base_dir)
