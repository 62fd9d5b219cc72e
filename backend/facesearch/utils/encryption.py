import base64
import binascii
import os
import re
import secrets
from typing import List, Optional, Sequence

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from facesearch.core.logging import get_logger

logger = get_logger(__name__)

# Associated data binds every ciphertext to its purpose
EMBEDDING_AAD = b"face_embedding"
NONCE_BYTES = 12
KEY_BYTES = 32

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


class EmbeddingDecryptionError(Exception):
    """Raised when a stored embedding cannot be authenticated or decoded."""


def load_key(configured_key: Optional[str]) -> bytes:
    """
    Decodes the configured base64 AES-256 key.

    When no key is configured a random one is generated, which means
    sessions do not survive a restart (they are in memory anyway).
    """
    if not configured_key:
        logger.warning("ENCRYPTION_KEY not set, generating a random per-process key.")
        return AESGCM.generate_key(bit_length=256)

    try:
        key = base64.b64decode(configured_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("ENCRYPTION_KEY must be base64 encoded") from e

    if len(key) != KEY_BYTES:
        raise ValueError(f"ENCRYPTION_KEY must decode to {KEY_BYTES} bytes, got {len(key)}")

    return key


class EmbeddingCipher:
    """AES-256-GCM wrapper for session embeddings. Layout: nonce || ciphertext+tag."""

    def __init__(self, key: bytes):
        self._aesgcm = AESGCM(key)

    def encrypt(self, embedding: Sequence[float]) -> bytes:
        plaintext = np.asarray(embedding, dtype=np.float64).tobytes()
        nonce = os.urandom(NONCE_BYTES)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, EMBEDDING_AAD)

    def decrypt(self, blob: bytes) -> List[float]:
        if len(blob) <= NONCE_BYTES:
            raise EmbeddingDecryptionError("ciphertext too short")

        nonce, ciphertext = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, EMBEDDING_AAD)
        except InvalidTag as e:
            raise EmbeddingDecryptionError("authentication tag mismatch") from e

        if len(plaintext) % 8:
            raise EmbeddingDecryptionError("plaintext is not a float64 array")

        return np.frombuffer(plaintext, dtype=np.float64).tolist()


def generate_session_id() -> str:
    """43 URL-safe characters drawn from 32 random bytes."""
    return secrets.token_urlsafe(32)


def is_valid_session_id(session_id: str) -> bool:
    return bool(session_id) and SESSION_ID_PATTERN.fullmatch(session_id) is not None
