"""Content-addressed snapshot blob storage.

Blobs are gzip-compressed and named by the sha256 of their stored bytes, so
identical states share one file and a blob's name is its own integrity check.

With an encryption key the compressed payload is Fernet-encrypted before it
is stored. Fernet tokens are salted, so encrypted blobs of identical states
are stored separately. Set BACKUP_ENCRYPTION_KEY to a Fernet key, generated
with ``Fernet.generate_key()``.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from config import BACKUP_ENCRYPTION_KEY
from errors import BackupError

logger = logging.getLogger(__name__)

PLAIN_SUFFIX = ".json.gz"
ENCRYPTED_SUFFIX = ".json.gz.enc"


@dataclass(frozen=True)
class StoredBlob:
    location: str
    sha256: str
    md5: str
    size_bytes: int
    encrypted: bool = False


def digests(data: bytes) -> tuple[str, str]:
    """Return (sha256, md5) hex digests of ``data``."""
    return hashlib.sha256(data).hexdigest(), hashlib.md5(data).hexdigest()


class BlobStorage:
    """Stores snapshot payloads under a root directory.

    Attributes:
        root: Directory holding the blobs
        encryption_key: Fernet key, or None to store blobs unencrypted
    """

    def __init__(self, root: str | Path, encryption_key: str | None = BACKUP_ENCRYPTION_KEY) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.encryption_key = encryption_key or None
        self._fernet: Fernet | None = None
        if self.encryption_key:
            try:
                self._fernet = Fernet(self.encryption_key.encode())
            except ValueError as e:
                raise BackupError(f"Invalid snapshot encryption key: {e}") from e

    @property
    def encryption_enabled(self) -> bool:
        return self._fernet is not None

    def free_bytes(self) -> int:
        return shutil.disk_usage(self.root).free

    def write(self, payload: bytes) -> StoredBlob:
        """Compress (and encrypt, when keyed) and store a payload.

        Raises:
            BackupError: If the blob cannot be written
        """
        stored = gzip.compress(payload, mtime=0)
        suffix = PLAIN_SUFFIX
        if self._fernet is not None:
            stored = self._fernet.encrypt(stored)
            suffix = ENCRYPTED_SUFFIX
        sha256, md5 = digests(stored)
        path = self.root / sha256[:2] / f"{sha256}{suffix}"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
                with os.fdopen(fd, "wb") as f:
                    f.write(stored)
                os.replace(tmp, path)
        except OSError as e:
            raise BackupError(f"Failed to write snapshot blob: {e}") from e
        return StoredBlob(str(path), sha256, md5, len(stored), self._fernet is not None)

    def read(self, location: str) -> bytes:
        """Read the stored bytes of a blob, exactly as written.

        Raises:
            BackupError: If the blob is missing or unreadable
        """
        try:
            return Path(location).read_bytes()
        except OSError as e:
            raise BackupError(f"Snapshot blob unreadable: {location}: {e}") from e

    def decode(self, data: bytes, location: str) -> bytes:
        """Turn stored bytes back into the original payload.

        Whether the blob is encrypted is read from its name, so blobs written
        before a key was configured stay readable.

        Raises:
            BackupError: If the blob cannot be decrypted or decompressed
        """
        if location.endswith(ENCRYPTED_SUFFIX):
            if self._fernet is None:
                raise BackupError(
                    f"Snapshot blob {location} is encrypted and no encryption key is configured"
                )
            try:
                data = self._fernet.decrypt(data)
            except InvalidToken as e:
                raise BackupError(
                    f"Snapshot blob {location} could not be decrypted (wrong key or damaged blob)"
                ) from e
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise BackupError(f"Snapshot blob is not valid gzip: {e}") from e

    def delete(self, location: str) -> int:
        """Delete a blob, returning the bytes reclaimed."""
        path = Path(location)
        if not path.exists():
            return 0
        size = path.stat().st_size
        path.unlink()
        logger.debug(f"Deleted snapshot blob {location}")
        return size
