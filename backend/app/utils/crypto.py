"""Encryption of shop credentials at rest.

Offline access tokens issued by Shopify never expire on their own, so a
leaked database dump would otherwise hand out working credentials for every
installed shop. Values are sealed with AES-GCM under a key derived from the
application secret and stored as::

    ENC:v1:<base64(nonce || ciphertext || tag)>

:func:`decrypt` passes through values without the prefix unchanged, which
keeps rows written before encryption was enabled readable.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.config import settings
from app.utils.logger import logger


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key


def _get_key() -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"shopify-credential-encryption",
    )
    return hkdf.derive(settings.secret_key.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Seal ``plaintext``; ``None`` stays ``None``."""

    if plaintext is None:
        return None

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, str(plaintext).encode("utf-8"), associated_data=None)
    return _PREFIX + base64.b64encode(nonce + ct).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Open a value produced by :func:`encrypt`.

    Returns ``None`` when the blob is malformed or was sealed under another
    key; a credential that cannot be opened is as good as absent.
    """

    if value is None:
        return None
    if not is_encrypted(value):
        return value

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
        if len(raw) <= _NONCE_SIZE:
            raise ValueError("ciphertext too short")
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        logger.error("Credential decryption failed: %s", type(exc).__name__)
        return None
