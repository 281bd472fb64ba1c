import os, uuid
from pathlib import Path
from threading import RLock

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from .logs import logger

_CRYPTO_LOCK = RLock()
NONCE_SIZE = 12

# -------------------------
# Crypto utilities
# -------------------------
def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    try:
        tmp.write_bytes(data)
        tmp.replace(path)
    finally:
        tmp.unlink(missing_ok=True)

def aes_encrypt(data: bytes, key: bytes) -> bytes:
    """AES-GCM seal; the random nonce is stored in front of the ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    return b"".join((nonce, AESGCM(key).encrypt(nonce, data, None)))

def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if len(data or b"") <= NONCE_SIZE:
        raise InvalidTag("ciphertext too short")
    return AESGCM(key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)

def load_key(key_path: Path):
    if not key_path.exists():
        return None
    d = key_path.read_bytes()
    return d[:32] if len(d) >= 32 else None

def get_or_create_key(key_path: Path) -> bytes:
    with _CRYPTO_LOCK:
        k = load_key(key_path)
        if k:
            return k
        key = AESGCM.generate_key(bit_length=256)
        atomic_write_bytes(key_path, key)
        logger.info(f"key stored: {key_path}")
        return key
