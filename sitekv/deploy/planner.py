"""Group files that need uploading into request-sized batches."""

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from ..config.schema import KVLimits
from .catalog import RemoteCatalog
from .inventory import SiteFile


@dataclass(frozen=True)
class UploadBatch:
    """Files sent together in one write request.

    ``oversized`` marks a lone file larger than the bulk byte limit, which the
    executor always sends through the single-key endpoint.
    """
    sequence: int
    files: Tuple[SiteFile, ...]
    oversized: bool = False

    def __len__(self) -> int:
        return len(self.files)

    @property
    def size_bytes(self) -> int:
        return sum(f.size_bytes for f in self.files)

    @property
    def keys(self) -> List[str]:
        return [f.key for f in self.files]

    @property
    def is_single(self) -> bool:
        return len(self.files) == 1


class BatchPlanner:
    """Skips unchanged files and packs the rest greedily, in enumeration order."""

    def __init__(self,
                 limits: KVLimits,
                 use_bulk_upload: bool = True,
                 catalog: Optional[RemoteCatalog] = None):
        self.limits = limits
        self.use_bulk_upload = use_bulk_upload
        self.catalog = catalog

    def is_unchanged(self, site_file: SiteFile) -> bool:
        return self.catalog is not None and self.catalog.is_current(site_file.key, site_file.fingerprint)

    def plan(self,
             files: Iterable[SiteFile],
             on_skip: Optional[Callable[[SiteFile], None]] = None) -> Iterator[UploadBatch]:
        """
        Lazily yield UploadBatch values.

        Args:
            files: SiteFile sequence, consumed once
            on_skip: Called for every file whose remote copy is already current
        """
        max_items = self.limits.max_batch_items
        max_bytes = self.limits.max_batch_bytes
        sequence = 0
        pending: List[SiteFile] = []
        pending_bytes = 0

        for site_file in files:
            if self.is_unchanged(site_file):
                if on_skip is not None:
                    on_skip(site_file)
                continue

            if not self.use_bulk_upload:
                yield UploadBatch(sequence, (site_file,))
                sequence += 1
                continue

            if site_file.size_bytes > max_bytes:
                if pending:
                    yield UploadBatch(sequence, tuple(pending))
                    sequence += 1
                    pending, pending_bytes = [], 0
                yield UploadBatch(sequence, (site_file,), oversized=True)
                sequence += 1
                continue

            if pending and (len(pending) >= max_items or pending_bytes + site_file.size_bytes > max_bytes):
                yield UploadBatch(sequence, tuple(pending))
                sequence += 1
                pending, pending_bytes = [], 0

            pending.append(site_file)
            pending_bytes += site_file.size_bytes

        if pending:
            yield UploadBatch(sequence, tuple(pending))
