"""Enumerate the processed-site directory into deployable files."""

import os
import hashlib
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from ..errors import InventoryError
from ..utils.security import get_secure_logger

logger = get_secure_logger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# mimetypes falls back to the host's registry, which differs between platforms
_CONTENT_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".htm": "text/html; charset=utf-8",
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".mjs": "application/javascript; charset=utf-8",
    ".json": "application/json",
    ".xml": "application/xml",
    ".txt": "text/plain; charset=utf-8",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
}

ErrorCallback = Callable[[str, OSError], None]


def compute_fingerprint(path: Union[str, Path]) -> str:
    """SHA-256 hex digest of a file's full content, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def key_for_path(path: Path, root: Path) -> str:
    """KV key for a file: its path relative to the site root with forward slashes."""
    return path.relative_to(root).as_posix()


def guess_content_type(key: str) -> str:
    suffix = os.path.splitext(key)[1].lower()
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(key)
    return guessed or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class SiteFile:
    """A single deployable file. Content is read lazily from ``path``."""
    key: str
    fingerprint: str
    size_bytes: int
    path: Path = field(repr=False)
    content_type: str = DEFAULT_CONTENT_TYPE

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def metadata(self) -> dict:
        """KV metadata stored alongside the value."""
        return {
            "fingerprint": self.fingerprint,
            "contentType": self.content_type,
            "size": self.size_bytes,
        }


class SiteInventory:
    """Lazy, restartable enumeration of every regular file under a site root."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def check_root(self) -> None:
        """Raise InventoryError if the root cannot be enumerated."""
        if not self.root.exists():
            raise InventoryError(f"Site directory does not exist: {self.root}")
        if not self.root.is_dir():
            raise InventoryError(f"Site path is not a directory: {self.root}")
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise InventoryError(f"Site directory is not readable: {self.root}")

    def __iter__(self) -> Iterator[SiteFile]:
        return self.iter_files()

    def iter_files(self, on_error: Optional[ErrorCallback] = None) -> Iterator[SiteFile]:
        """
        Yield a SiteFile for every regular file, in sorted path order.

        Args:
            on_error: Called with (key, error) for a file that cannot be read.
                Without it the error is raised as InventoryError.

        Raises:
            InventoryError: if the root is missing or unreadable
        """
        self.check_root()
        root = self.root

        def walk_error(error: OSError) -> None:
            logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")

        for dirpath, dirnames, filenames in os.walk(root, onerror=walk_error):
            # Sorting in place keeps os.walk's descent order stable.
            dirnames.sort()
            current = Path(dirpath)
            for name in sorted(filenames):
                path = current / name
                if not path.is_file():
                    continue
                key = key_for_path(path, root)
                try:
                    size = path.stat().st_size
                    fingerprint = compute_fingerprint(path)
                except OSError as e:
                    if on_error is None:
                        raise InventoryError(f"Cannot read {key}: {e}") from e
                    on_error(key, e)
                    continue

                yield SiteFile(
                    key=key,
                    fingerprint=fingerprint,
                    size_bytes=size,
                    path=path,
                    content_type=guess_content_type(key),
                )
