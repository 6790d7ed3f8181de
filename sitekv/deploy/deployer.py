"""Deployment pipeline: inventory -> catalog -> planner -> worker pool -> report."""

import asyncio
import threading
from pathlib import Path
from typing import Iterator, List, NamedTuple, Optional, Set, Union

from ..config.schema import DeploymentConfig
from ..errors import AuthError, BatchInterrupted, CatalogFetchError, ConfigurationError, InventoryError
from ..http.connection_manager import KVConnectionPool
from ..http.kv_client import KVRestClient
from ..utils.security import SecureLogger, default_masker, ensure_secure_logger
from .catalog import RemoteCatalog
from .executor import Sleep, UploadExecutor
from .inventory import SiteFile, SiteInventory
from .planner import BatchPlanner, UploadBatch
from .report import DeploymentReport, FailureReason, UploadOutcome


class DeploymentPlan(NamedTuple):
    """What a deployment would do, computed without writing anything."""
    batches: List[UploadBatch]
    skipped_keys: List[str]
    stale_keys: List[str]
    catalog_used: bool


class Deployer:
    """
    Deploys a processed static site to a Workers KV namespace.

    The planner runs ahead of a bounded pool of upload workers, feeding it
    through a bounded queue so memory follows the number of in-flight batches
    rather than the size of the site. ``deploy`` always returns a
    DeploymentReport; configuration, inventory and authentication failures
    are reported as a FatalAbort instead of being raised.
    """

    def __init__(self,
                 config: DeploymentConfig,
                 logger=None,
                 rest_client: Optional[KVRestClient] = None,
                 pool: Optional[KVConnectionPool] = None,
                 sleep: Sleep = asyncio.sleep):
        """
        Initialize the deployer.

        Args:
            config: Validated deployment configuration
            logger: Logger for progress output (wrapped so secrets are masked)
            rest_client: Client used to list keys (created from config if None)
            pool: Connection pool used to write keys (created from config if None)
            sleep: Coroutine used to wait between retries
        """
        self.config = config
        self.logger: SecureLogger = ensure_secure_logger(logger, __name__)
        self._rest_client = rest_client
        self._pool = pool
        self._sleep = sleep
        self._cancel = threading.Event()
        self._cancel_reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """Stop submitting new batches for the current run. Safe to call from any thread."""
        if self._cancel_reason is None:
            self._cancel_reason = reason
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def deploy(self, site_path: Union[str, Path]) -> DeploymentReport:
        """Run a deployment to completion and return its report."""
        return asyncio.run(self.deploy_async(site_path))

    async def deploy_async(self, site_path: Union[str, Path]) -> DeploymentReport:
        # A stop requested during an earlier run does not carry over.
        self._cancel.clear()
        self._cancel_reason = None
        report = DeploymentReport()
        report.start()
        token = self.config.api_token.get_secret_value()
        default_masker.register_secret(token)

        try:
            self.logger.info(f"Deploying {site_path} to KV namespace {self.config.namespace_id}")
            await self._run(Path(site_path), report)
        except ConfigurationError as e:
            self.logger.error(f"Deployment did not start: {e}")
            report.abort(f"ConfigurationError: {e}")
        except InventoryError as e:
            self.logger.error(f"Deployment did not start: {e}")
            report.abort(f"InventoryError: {e}")
        except AuthError as e:
            self.logger.error(f"Authentication failed, aborting: {e}")
            report.abort(f"AuthError: {e}")
        finally:
            if self.cancelled and not report.aborted:
                report.abort(self._cancel_reason or "Cancelled")
            report.finish()
            default_masker.unregister_secret(token)

        self._log_summary(report)
        return report

    async def _run(self, site_path: Path, report: DeploymentReport) -> None:
        self.config.ensure_deployable()
        inventory = SiteInventory(site_path)
        inventory.check_root()

        catalog = await self._load_catalog()
        report.catalog_used = catalog.available and self.config.incremental
        planner = BatchPlanner(
            self.config.limits,
            use_bulk_upload=self.config.use_bulk_upload,
            catalog=catalog if report.catalog_used else None,
        )

        if self._pool is not None:
            await self._upload(self._pool, inventory, planner, catalog, report)
        else:
            async with KVConnectionPool(self.config) as pool:
                await self._upload(pool, inventory, planner, catalog, report)

    async def _upload(self,
                      pool: KVConnectionPool,
                      inventory: SiteInventory,
                      planner: BatchPlanner,
                      catalog: RemoteCatalog,
                      report: DeploymentReport) -> None:
        executor = UploadExecutor(pool, self.config.retry, self.logger, self._sleep)
        seen_keys: Set[str] = set()
        await self._pump(inventory, planner, executor, report, seen_keys)
        if self.cancelled:
            self._abort_unsent(report, seen_keys)

        if self.config.delete_stale:
            if not catalog.available:
                self.logger.warning("Remote catalog unavailable, not deleting stale keys")
            elif not report.aborted and not self.cancelled:
                await self._delete_stale(executor, catalog, seen_keys, report)

    async def _load_catalog(self) -> RemoteCatalog:
        """Fetch the remote catalog, or fall back to a full upload when it cannot be used."""
        if not self.config.incremental and not self.config.delete_stale:
            self.logger.info("Incremental mode disabled, uploading every file")
            return RemoteCatalog.unavailable()

        client = self._rest_client or KVRestClient(self.config)
        try:
            return await asyncio.to_thread(RemoteCatalog.fetch, client)
        except CatalogFetchError as e:
            if e.auth_failure:
                raise AuthError(str(e)) from e
            self.logger.warning(f"{e}; uploading every file")
            return RemoteCatalog.unavailable()
        finally:
            if self._rest_client is None:
                client.close()

    def _files(self, inventory: SiteInventory, report: DeploymentReport,
               seen_keys: Set[str]) -> Iterator[SiteFile]:
        def unreadable(key: str, error: OSError) -> None:
            self.logger.error(f"Cannot read {key}: {error}")
            report.file_considered()
            report.record(UploadOutcome.failed(key, FailureReason.READ_ERROR, str(error)))
            seen_keys.add(key)

        for site_file in inventory.iter_files(on_error=unreadable):
            report.file_considered()
            seen_keys.add(site_file.key)
            yield site_file

    async def _pump(self,
                    inventory: SiteInventory,
                    planner: BatchPlanner,
                    executor: UploadExecutor,
                    report: DeploymentReport,
                    seen_keys: Set[str]) -> None:
        """Feed planned batches to the worker pool until the plan runs out or the run is cancelled."""
        workers = self.config.workers
        queue: asyncio.Queue = asyncio.Queue(maxsize=workers * 2)
        batches = planner.plan(
            self._files(inventory, report, seen_keys),
            on_skip=lambda site_file: report.record(UploadOutcome.skipped(site_file.key)),
        )

        async def produce() -> None:
            try:
                while not self.cancelled:
                    # Hashing and directory walks block, keep them off the event loop.
                    batch = await asyncio.to_thread(next, batches, None)
                    if batch is None:
                        break
                    await queue.put(batch)
            finally:
                for _ in range(workers):
                    await queue.put(None)

        producer = asyncio.create_task(produce())
        worker_tasks = [
            asyncio.create_task(self._work(queue, executor, report))
            for _ in range(workers)
        ]
        tasks = [producer, *worker_tasks]
        try:
            await asyncio.wait(tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        # Surface producer failures (e.g. the site root vanished mid-walk).
        producer.result()
        for task in worker_tasks:
            task.result()

    async def _work(self, queue: asyncio.Queue, executor: UploadExecutor, report: DeploymentReport) -> None:
        while True:
            batch = await queue.get()
            try:
                if batch is None:
                    return

                if self.cancelled:
                    report.record_many(
                        UploadOutcome.failed(key, FailureReason.ABORTED, "Run cancelled before upload")
                        for key in batch.keys
                    )
                    continue

                try:
                    outcomes = await executor.execute(batch)
                except BatchInterrupted as e:
                    self._record_interrupted(batch, e, report)
                    continue
                report.record_many(outcomes)
            finally:
                queue.task_done()

    def _record_interrupted(self, batch: UploadBatch, interrupted: BatchInterrupted,
                            report: DeploymentReport) -> None:
        """Keep what the batch settled; only its unsettled files take the failure."""
        report.record_many(interrupted.outcomes)
        settled = {outcome.key for outcome in interrupted.outcomes}
        unsettled = [key for key in batch.keys if key not in settled]
        error = interrupted.error

        if isinstance(error, AuthError):
            self.logger.error(f"Batch {batch.sequence}: authentication failed: {error}")
            report.record_many(
                UploadOutcome.failed(key, FailureReason.AUTH_ERROR, str(error)) for key in unsettled
            )
            report.abort(f"AuthError: {error}")
            self.cancel(f"AuthError: {error}")
            return

        detail = f"{type(error).__name__}: {error}"
        self.logger.error(f"Batch {batch.sequence} failed unexpectedly: {detail}")
        report.record_many(
            UploadOutcome.failed(key, FailureReason.TRANSIENT_UPLOAD_ERROR, detail) for key in unsettled
        )

    def _abort_unsent(self, report: DeploymentReport, seen_keys: Set[str]) -> None:
        """Files the planner had already taken but never handed to a worker."""
        recorded = {outcome.key for outcome in report.outcomes}
        unsent = sorted(seen_keys - recorded)
        if unsent:
            self.logger.warning(f"{len(unsent)} files were not sent before the run stopped")
            report.record_many(
                UploadOutcome.failed(key, FailureReason.ABORTED, "Run cancelled before upload")
                for key in unsent
            )

    async def _delete_stale(self, executor: UploadExecutor, catalog: RemoteCatalog,
                            seen_keys: Set[str], report: DeploymentReport) -> None:
        stale = sorted(key for key in catalog.keys() if key not in seen_keys)
        if not stale:
            self.logger.info("No stale keys to delete")
            return

        self.logger.info(f"Deleting {len(stale)} stale keys")
        step = self.config.limits.max_batch_items
        for start in range(0, len(stale), step):
            chunk = stale[start:start + step]
            try:
                deleted, failed = await executor.delete_keys(chunk)
            except AuthError as e:
                report.record_deleted([], stale[start:])
                report.abort(f"AuthError: {e}")
                return
            report.record_deleted(deleted, failed)

    def plan(self, site_path: Union[str, Path]) -> DeploymentPlan:
        """
        Compute batches, skipped keys and stale keys without writing anything.

        Raises:
            ConfigurationError, InventoryError, AuthError
        """
        inventory = SiteInventory(site_path)
        inventory.check_root()

        catalog = RemoteCatalog.unavailable()
        if self.config.incremental or self.config.delete_stale:
            self.config.ensure_deployable()
            catalog = asyncio.run(self._load_catalog())

        catalog_used = catalog.available and self.config.incremental
        planner = BatchPlanner(
            self.config.limits,
            use_bulk_upload=self.config.use_bulk_upload,
            catalog=catalog if catalog_used else None,
        )

        skipped: List[str] = []
        seen: Set[str] = set()

        def files() -> Iterator[SiteFile]:
            for site_file in inventory.iter_files():
                seen.add(site_file.key)
                yield site_file

        batches = list(planner.plan(files(), on_skip=lambda site_file: skipped.append(site_file.key)))
        stale: List[str] = []
        if self.config.delete_stale and catalog.available:
            stale = sorted(key for key in catalog.keys() if key not in seen)
        return DeploymentPlan(batches, skipped, stale, catalog_used)

    def _log_summary(self, report: DeploymentReport) -> None:
        status = report.status
        counts = report.summary()
        line = (
            f"{status.state.value}: {counts['Uploaded']} uploaded, {counts['Skipped']} skipped, "
            f"{counts['Failed']} failed of {report.files_considered} files"
        )
        if report.deleted_keys or report.delete_failures:
            line += f"; {len(report.deleted_keys)} stale keys deleted, {len(report.delete_failures)} not deleted"
        if status.reason:
            line += f" ({status.reason})"

        if report.aborted:
            self.logger.error(line)
        elif status.failed_keys:
            self.logger.warning(line)
        else:
            self.logger.info(line)


def deploy_site(site_path: Union[str, Path], config: DeploymentConfig, logger=None) -> DeploymentReport:
    """Deploy a processed site directory with the given configuration."""
    return Deployer(config, logger=logger).deploy(site_path)
