"""Snapshot of what the KV namespace already holds."""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional

from ..errors import (
    AuthError,
    CatalogFetchError,
    KVValidationError,
    RateLimitExhausted,
    TransientUploadError,
)
from ..http.kv_client import KVRestClient
from ..utils.security import get_secure_logger

logger = get_secure_logger(__name__)

# Listing answered with these means the endpoint is unavailable, not broken.
LISTING_UNSUPPORTED_STATUSES = {404, 405, 501}


@dataclass(frozen=True)
class RemoteRecord:
    """The store's last known state for a key."""
    key: str
    fingerprint: Optional[str] = None


class RemoteCatalog:
    """Read-only key -> RemoteRecord map, safe to share between workers."""

    def __init__(self, records: Optional[Mapping[str, RemoteRecord]] = None, available: bool = True):
        self._records = MappingProxyType(dict(records or {}))
        self.available = available

    @classmethod
    def unavailable(cls) -> "RemoteCatalog":
        """Empty catalog for the degraded mode where every file is uploaded."""
        return cls({}, available=False)

    @classmethod
    def fetch(cls, client: KVRestClient) -> "RemoteCatalog":
        """
        List the whole namespace.

        Raises:
            CatalogFetchError: with ``auth_failure`` set when the token was rejected,
                otherwise after retries for transient errors are exhausted
        """
        records: Dict[str, RemoteRecord] = {}
        try:
            for item in client.iter_keys():
                name = item.get("name")
                if name is None:
                    continue
                metadata = item.get("metadata") or {}
                fingerprint = metadata.get("fingerprint") if isinstance(metadata, dict) else None
                records[name] = RemoteRecord(key=name, fingerprint=fingerprint)
        except AuthError as e:
            raise CatalogFetchError(f"Authentication failed while listing keys: {e}", auth_failure=True) from e
        except (RateLimitExhausted, TransientUploadError) as e:
            raise CatalogFetchError(f"Listing keys failed after retries: {e}") from e
        except KVValidationError as e:
            if e.status_code in LISTING_UNSUPPORTED_STATUSES:
                logger.warning(f"Key listing is not available ({e}), deploying without a diff")
                return cls.unavailable()
            raise CatalogFetchError(f"Listing keys was rejected: {e}") from e

        logger.info(f"Remote catalog holds {len(records)} keys")
        return cls(records)

    def get(self, key: str) -> Optional[RemoteRecord]:
        return self._records.get(key)

    def is_current(self, key: str, fingerprint: str) -> bool:
        """True when the store already holds this exact content for the key."""
        record = self.get(key)
        return record is not None and record.fingerprint is not None and record.fingerprint == fingerprint

    def keys(self):
        return self._records.keys()

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
