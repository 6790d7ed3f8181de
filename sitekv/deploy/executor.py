"""Send planned batches to the KV store with bounded retry."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config.schema import RetryConfig
from ..errors import (
    BatchInterrupted,
    KVValidationError,
    RateLimitedError,
    RetryableError,
    TransientHTTPError,
)
from ..http.cloudflare_api import bulk_entry
from ..http.connection_manager import KVConnectionPool
from ..utils.security import SecureLogger, get_secure_logger
from .inventory import SiteFile
from .planner import UploadBatch
from .report import FailureReason, UploadOutcome

Sleep = Callable[[float], Awaitable[Any]]


def failure_reason_for(error: Exception) -> FailureReason:
    if isinstance(error, RateLimitedError):
        return FailureReason.RATE_LIMIT_EXHAUSTED
    if isinstance(error, KVValidationError):
        return FailureReason.VALIDATION_ERROR
    return FailureReason.TRANSIENT_UPLOAD_ERROR


class UploadExecutor:
    """
    Turns one UploadBatch into one outcome per file.

    Rate limits and transient failures are retried up to
    ``retry.max_attempts`` total attempts; validation errors are not retried.
    ``AuthError`` is never retried. It stops the batch and reaches the caller
    as the ``error`` of a BatchInterrupted that carries the outcomes already
    settled, so files the store wrote before the failure stay Uploaded.
    """

    def __init__(self,
                 pool: KVConnectionPool,
                 retry: RetryConfig,
                 logger: Optional[SecureLogger] = None,
                 sleep: Sleep = asyncio.sleep):
        self.pool = pool
        self.retry = retry
        self.logger = logger or get_secure_logger(__name__)
        self._sleep = sleep

    async def execute(self, batch: UploadBatch) -> List[UploadOutcome]:
        """
        Upload a batch and return an outcome for every file in it.

        Raises:
            BatchInterrupted: the batch stopped partway (authentication failure
                or an unexpected error); carries the outcomes settled so far
        """
        outcomes: List[UploadOutcome] = []
        try:
            loaded = await asyncio.to_thread(self._load, batch, outcomes)
            if not loaded:
                return outcomes

            if batch.is_single or batch.oversized or len(loaded) == 1:
                site_file, content = loaded[0]
                await self._put_single(batch, site_file, content, outcomes)
            else:
                entries = await asyncio.to_thread(self._bulk_entries, loaded)
                await self._put_bulk(batch, entries, outcomes)
        except Exception as e:
            raise BatchInterrupted(e, outcomes) from e
        return outcomes

    def _load(self, batch: UploadBatch, outcomes: List[UploadOutcome]) -> List[Tuple[SiteFile, bytes]]:
        """Read file contents. Files that vanished since inventory fail individually."""
        loaded = []
        for site_file in batch.files:
            try:
                loaded.append((site_file, site_file.read_bytes()))
            except OSError as e:
                self.logger.error(f"Cannot read {site_file.key} for upload: {e}")
                outcomes.append(UploadOutcome.failed(site_file.key, FailureReason.READ_ERROR, str(e)))
        return loaded

    @staticmethod
    def _bulk_entries(loaded: List[Tuple[SiteFile, bytes]]) -> Dict[str, Dict[str, Any]]:
        return {
            site_file.key: bulk_entry(site_file.key, content, site_file.metadata())
            for site_file, content in loaded
        }

    async def _put_single(self, batch: UploadBatch, site_file: SiteFile, content: bytes,
                          outcomes: List[UploadOutcome]) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                self.logger.debug(f"Batch {batch.sequence}: PUT {site_file.key} ({len(content)} bytes)")
                await self.pool.put_value(
                    site_file.key, content, site_file.metadata(), site_file.content_type
                )
                outcomes.append(UploadOutcome.uploaded(site_file.key))
                return
            except KVValidationError as e:
                self.logger.error(f"Batch {batch.sequence}: store rejected {site_file.key}: {e}")
                outcomes.append(UploadOutcome.failed(site_file.key, FailureReason.VALIDATION_ERROR, str(e)))
                return
            except RetryableError as e:
                if attempt >= self.retry.max_attempts:
                    outcomes.extend(self._exhausted(batch, [site_file.key], e, attempt))
                    return
                await self._backoff(batch, attempt, e)

    async def _put_bulk(self, batch: UploadBatch, entries: Dict[str, Dict[str, Any]],
                        outcomes: List[UploadOutcome]) -> None:
        """Write ``entries``, appending each settled key to ``outcomes`` as soon as it is known."""
        remaining = list(entries)
        attempt = 0

        while True:
            attempt += 1
            try:
                self.logger.debug(
                    f"Batch {batch.sequence}: bulk PUT {len(remaining)} keys (attempt {attempt})"
                )
                unsuccessful = await self.pool.put_bulk([entries[key] for key in remaining])
            except KVValidationError as e:
                self.logger.error(f"Batch {batch.sequence}: store rejected bulk write: {e}")
                outcomes.extend(
                    UploadOutcome.failed(key, FailureReason.VALIDATION_ERROR, str(e)) for key in remaining
                )
                return
            except RetryableError as e:
                error: RetryableError = e
            else:
                rejected = set(unsuccessful).intersection(remaining)
                outcomes.extend(UploadOutcome.uploaded(key) for key in remaining if key not in rejected)
                if not rejected:
                    return
                remaining = [key for key in remaining if key in rejected]
                error = TransientHTTPError(f"Store did not write {len(remaining)} keys")

            if attempt >= self.retry.max_attempts:
                outcomes.extend(self._exhausted(batch, remaining, error, attempt))
                return
            await self._backoff(batch, attempt, error)

    async def delete_keys(self, keys: List[str]) -> Tuple[List[str], List[str]]:
        """
        Delete keys with one bulk request, retried like uploads.

        Returns:
            (deleted keys, keys that could not be deleted)
        """
        remaining = list(keys)
        deleted: List[str] = []
        attempt = 0

        while True:
            attempt += 1
            try:
                unsuccessful = await self.pool.delete_bulk(remaining)
            except KVValidationError as e:
                self.logger.error(f"Store rejected deletion of {len(remaining)} keys: {e}")
                return deleted, remaining
            except RetryableError as e:
                error: RetryableError = e
            else:
                rejected = set(unsuccessful).intersection(remaining)
                deleted.extend(key for key in remaining if key not in rejected)
                if not rejected:
                    return deleted, []
                remaining = [key for key in remaining if key in rejected]
                error = TransientHTTPError(f"Store did not delete {len(remaining)} keys")

            if attempt >= self.retry.max_attempts:
                self.logger.error(f"Giving up deleting {len(remaining)} keys after {attempt} attempts: {error}")
                return deleted, remaining
            await self._backoff(None, attempt, error)

    async def _backoff(self, batch: Optional[UploadBatch], attempt: int, error: RetryableError) -> None:
        retry_after = error.retry_after if isinstance(error, RateLimitedError) else None
        delay = self.retry.delay_for(attempt, retry_after)
        label = f"Batch {batch.sequence}" if batch is not None else "Delete request"
        self.logger.warning(
            f"{label} failed (attempt {attempt}), retrying in {delay}s: {error}"
        )
        await self._sleep(delay)

    def _exhausted(self, batch: UploadBatch, keys: List[str], error: Exception, attempts: int) -> List[UploadOutcome]:
        reason = failure_reason_for(error)
        self.logger.error(
            f"Batch {batch.sequence}: giving up on {len(keys)} keys after {attempts} attempts "
            f"({reason.value}): {error}"
        )
        return [UploadOutcome.failed(key, reason, str(error)) for key in keys]
