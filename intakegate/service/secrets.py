"""Key-management provider for signing and field-encryption keys.

The token service and field cipher only see the ``KeyProvider`` protocol.
``LocalKeyProvider`` resolves keys from settings first and otherwise from
files under ``SHARED_FS_ROOT/keys``, generating them on first use. A managed
secret store can be slotted in by implementing the same three methods.
"""

from __future__ import annotations

import base64
import os
import secrets
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Optional, Protocol, TypeVar

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from intakegate.logging import get_logger
from intakegate.service.errors import UpstreamTimeoutError

logger = get_logger(__name__)

_T = TypeVar("_T")

ENCRYPTION_KEY_BYTES = 32


class KeyProvider(Protocol):
    def get_signing_key(self) -> Ed25519PrivateKey: ...

    def get_verification_key(self) -> Ed25519PublicKey: ...

    def get_encryption_key(self) -> bytes: ...


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, data)
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(path))
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class LocalKeyProvider:
    """Resolve keys from configuration or a private directory on the shared volume."""

    def __init__(
        self,
        fs_root: str,
        *,
        signing_private_key: Optional[str] = None,
        field_encryption_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.key_dir = Path(fs_root) / "keys"
        self._signing_pem = signing_private_key
        self._encryption_b64 = field_encryption_key
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._signing_key: Optional[Ed25519PrivateKey] = None
        self._encryption_key: Optional[bytes] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="key-provider")

    def _bounded(self, label: str, loader: Callable[[], _T]) -> _T:
        future = self._executor.submit(loader)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            logger.error("key_load_timeout", key=label, timeout=self.timeout_seconds)
            raise UpstreamTimeoutError("key material unavailable") from exc

    def _ensure_dir(self) -> None:
        self.key_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.key_dir, 0o700)
        except PermissionError:
            # Mounted volumes may not allow chmod
            pass

    def _load_signing_key(self) -> Ed25519PrivateKey:
        if self._signing_pem:
            key = serialization.load_pem_private_key(self._signing_pem.encode(), password=None)
            if not isinstance(key, Ed25519PrivateKey):
                raise RuntimeError("SIGNING_PRIVATE_KEY must be an Ed25519 key")
            return key
        self._ensure_dir()
        path = self.key_dir / "signing_ed25519.pem"
        if path.exists() and not path.is_symlink():
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
            if isinstance(key, Ed25519PrivateKey):
                return key
            logger.warning("signing_key_wrong_type", path=str(path))
        generated = Ed25519PrivateKey.generate()
        pem = generated.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        _atomic_write(path, pem)
        logger.info("signing_key_generated", path=str(path))
        return generated

    def _load_encryption_key(self) -> bytes:
        if self._encryption_b64:
            key = base64.urlsafe_b64decode(self._encryption_b64.encode())
            if len(key) != ENCRYPTION_KEY_BYTES:
                raise RuntimeError("FIELD_ENCRYPTION_KEY must decode to 32 bytes")
            return key
        self._ensure_dir()
        path = self.key_dir / "field_encryption.key"
        if path.exists() and not path.is_symlink():
            key = base64.urlsafe_b64decode(path.read_bytes().strip())
            if len(key) == ENCRYPTION_KEY_BYTES:
                return key
            logger.warning("encryption_key_wrong_length", path=str(path))
        generated = secrets.token_bytes(ENCRYPTION_KEY_BYTES)
        _atomic_write(path, base64.urlsafe_b64encode(generated))
        logger.info("encryption_key_generated", path=str(path))
        return generated

    def get_signing_key(self) -> Ed25519PrivateKey:
        with self._lock:
            if self._signing_key is None:
                self._signing_key = self._bounded("signing", self._load_signing_key)
            return self._signing_key

    def get_verification_key(self) -> Ed25519PublicKey:
        return self.get_signing_key().public_key()

    def get_encryption_key(self) -> bytes:
        with self._lock:
            if self._encryption_key is None:
                self._encryption_key = self._bounded("encryption", self._load_encryption_key)
            return self._encryption_key

    def public_key_pem(self) -> str:
        return (
            self.get_verification_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode()
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
