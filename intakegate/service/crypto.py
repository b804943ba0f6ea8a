from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from typing import Any, Dict, Iterable, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from intakegate.logging import get_logger

logger = get_logger(__name__)

_VERSION_PREFIX = "v1."
_NONCE_BYTES = 12


class DecryptionError(Exception):
    """Ciphertext was tampered with, truncated, or bound to other associated data."""


class FieldCipher:
    """AES-256-GCM encryption for individual PHI-classified attributes.

    Each value is encrypted with a fresh 96-bit nonce. The associated data
    binds a ciphertext to its owning record and field name, so a value copied
    into another row or column fails authentication instead of decrypting.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("field encryption key must be 32 bytes")
        self._aead = AESGCM(key)
        # Separate sub-key for blind indexes so digests reveal nothing about ciphertexts
        self._digest_key = hmac.new(key, b"intakegate-lookup-digest", hashlib.sha256).digest()

    @staticmethod
    def is_ciphertext(value: Any) -> bool:
        return isinstance(value, str) and value.startswith(_VERSION_PREFIX)

    def encrypt(self, value: Any, aad: str) -> str:
        plaintext = json.dumps(value, separators=(",", ":")).encode()
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext, aad.encode())
        return _VERSION_PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode().rstrip("=")

    def decrypt(self, token: str, aad: str) -> Any:
        if not self.is_ciphertext(token):
            raise DecryptionError("value is not field ciphertext")
        body = token[len(_VERSION_PREFIX):]
        padding = "=" * ((4 - len(body) % 4) % 4)
        try:
            raw = base64.urlsafe_b64decode(body + padding)
        except (ValueError, TypeError) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(raw) <= _NONCE_BYTES:
            raise DecryptionError("ciphertext truncated")
        try:
            plaintext = self._aead.decrypt(raw[:_NONCE_BYTES], raw[_NONCE_BYTES:], aad.encode())
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
        return json.loads(plaintext)

    def digest(self, value: str) -> str:
        """Keyed blind index for equality lookups on an encrypted value."""
        normalized = value.strip().lower().encode()
        return hmac.new(self._digest_key, normalized, hashlib.sha256).hexdigest()

    def encrypt_fields(
        self, fields: Mapping[str, Any], sensitive: Iterable[str], *, scope: str
    ) -> Dict[str, Any]:
        sensitive_set = set(sensitive)
        sealed: Dict[str, Any] = {}
        for name, value in fields.items():
            if name in sensitive_set and value is not None:
                sealed[name] = self.encrypt(value, f"{scope}:{name}")
            else:
                sealed[name] = value
        return sealed

    def decrypt_fields(
        self, fields: Mapping[str, Any], sensitive: Iterable[str], *, scope: str
    ) -> Dict[str, Any]:
        sensitive_set = set(sensitive)
        opened: Dict[str, Any] = {}
        for name, value in fields.items():
            if name in sensitive_set and self.is_ciphertext(value):
                opened[name] = self.decrypt(value, f"{scope}:{name}")
            else:
                opened[name] = value
        return opened
