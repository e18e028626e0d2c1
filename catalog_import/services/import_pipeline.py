"""Import pipeline: storage check → parse → persist, for one job.

Each run owns one transaction and one set of key maps. The job is
finalized as completed, failed or cancelled; nothing is committed unless
the run completes. Import transactions hold the catalog write lock shared,
so they never overlap a storage cleanup.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, Optional, Union

import structlog

from catalog_import.config import ImportSettings, import_settings
from catalog_import.db.base import async_session_maker
from catalog_import.db.repository import CatalogRepository, SqlCatalogRepository
from catalog_import.db.storage_backend import lock_catalog_writes
from catalog_import.errors.exceptions import (
    CatalogImportError,
    ImportCancelledError,
    JobStateError,
    StructuralParseError,
    TransactionFatalError,
)
from catalog_import.models.entities import EntityGraph
from catalog_import.models.import_stats import ErrorEntry, ErrorKind, ImportStats
from catalog_import.models.job import JobStatus
from catalog_import.models.storage import StorageCheckResult
from catalog_import.parsers import CatalogXmlParser, FeedParser
from catalog_import.services.job_manager import JobLifecycleManager
from catalog_import.services.persistence import BatchPersistenceEngine, PersistOptions
from catalog_import.services.storage_guard import StorageQuotaGuard
from catalog_import.services.write_lock import CatalogWriteLock

logger = structlog.get_logger(__name__)

TransactionFactory = Callable[[], AsyncContextManager[CatalogRepository]]
ParserFactory = Callable[[ImportSettings], FeedParser]

# Job progress milestones
PROGRESS_STORAGE_CHECK = 5
PROGRESS_PARSING = 10
PROGRESS_PERSISTING = 30


class ImportOptions(PersistOptions):
    """Options for one import job."""

    check_storage: bool = True

    @classmethod
    def from_settings(cls, config: ImportSettings) -> "ImportOptions":
        return cls(**PersistOptions.from_settings(config).model_dump())

    def persist_options(self) -> PersistOptions:
        return PersistOptions(**self.model_dump(include=set(PersistOptions.model_fields)))


@asynccontextmanager
async def sql_transaction() -> AsyncIterator[CatalogRepository]:
    """Open a session and transaction; commit on success, roll back on error.

    The transaction holds the catalog write lock shared until it ends.
    """
    async with async_session_maker() as session:
        async with session.begin():
            await lock_catalog_writes(session)
            yield SqlCatalogRepository(session)


class ImportPipeline:
    """Runs imports for jobs registered with a :class:`JobLifecycleManager`.

    Args:
        manager: Job state owner
        guard: Storage guard; None disables the pre-import check
        transaction_factory: Yields a repository bound to a fresh transaction
        parser_factory: Builds the feed parser from the import settings
        write_lock: Held shared around each transaction; defaults to the
            guard's lock so cleanup and imports exclude each other
    """

    def __init__(
        self,
        manager: JobLifecycleManager,
        guard: Optional[StorageQuotaGuard] = None,
        transaction_factory: TransactionFactory = sql_transaction,
        config: Optional[ImportSettings] = None,
        parser_factory: ParserFactory = CatalogXmlParser,
        write_lock: Optional[CatalogWriteLock] = None,
    ) -> None:
        self._manager = manager
        self._guard = guard
        self._transaction_factory = transaction_factory
        self._config = config or import_settings
        self._parser_factory = parser_factory
        if write_lock is None:
            write_lock = guard.write_lock if guard is not None else CatalogWriteLock()
        self._write_lock = write_lock

    async def run(
        self,
        job_id: str,
        raw: Union[bytes, str],
        options: Optional[ImportOptions] = None,
    ) -> Optional[ImportStats]:
        """Execute the import for ``job_id``.

        Never raises for import failures: they end the job as failed or
        cancelled. Returns the stats of a completed run, else None.
        """
        options = options or ImportOptions.from_settings(self._config)
        log = logger.bind(job_id=job_id)

        job = await self._manager.get_job(job_id)
        if job is None or job.is_terminal:
            log.info("import_job_skipped", status=job.status.value if job else None)
            return None
        token = self._manager.get_token(job_id)

        try:
            await self._manager.update_status(
                job_id, JobStatus.PROCESSING, progress=0, stage="starting"
            )

            storage_check = None
            if options.check_storage and self._guard is not None:
                await self._manager.report_progress(job_id, PROGRESS_STORAGE_CHECK, "storage_check")
                storage_check = await self._guard.check_and_manage_storage()
                if not storage_check.can_proceed:
                    await self._fail_blocked(job_id, storage_check)
                    return None

            await token.checkpoint()
            await self._manager.report_progress(job_id, PROGRESS_PARSING, "parsing")
            parser = self._parser_factory(self._config)
            graph = await asyncio.to_thread(parser.parse, raw)
            del raw
            log.info(
                "feed_parsed",
                shape=graph.source_shape,
                product_elements=graph.source_product_count,
                total_rows=graph.total_rows(),
                record_errors=len(graph.errors),
            )

            await token.checkpoint()
            await self._manager.report_progress(job_id, PROGRESS_PERSISTING, "persisting")

            async def on_progress(percent: int, stage: str) -> None:
                await self._manager.report_progress(job_id, percent, stage)

            async with self._write_lock.shared():
                async with self._transaction_factory() as repository:
                    engine = BatchPersistenceEngine(repository, options.persist_options())
                    stats = await engine.persist(graph, token, on_progress)
                    # Last cancellation point; cancel() is refused from here on
                    await self._manager.begin_commit(job_id)

            for entry in graph.errors:
                stats.record_error(entry)

            await self._complete(job_id, graph, stats, storage_check)
            return stats

        except ImportCancelledError:
            log.info("import_cancelled_rolled_back")
            await self._ensure_cancelled(job_id)
            return None
        except StructuralParseError as e:
            log.error("import_parse_failed", error=e.message)
            await self._fail(job_id, e.message, ErrorKind.STRUCTURAL_PARSE)
            return None
        except TransactionFatalError as e:
            log.error("import_transaction_failed", error=e.message)
            await self._fail(job_id, e.message, ErrorKind.TRANSACTION_FATAL)
            return None
        except CatalogImportError as e:
            log.error("import_failed", error=e.message, error_type=type(e).__name__)
            await self._fail(job_id, e.message, None)
            return None
        except Exception as e:
            log.exception("import_unexpected_error", error=str(e), error_type=type(e).__name__)
            await self._fail(job_id, f"Unexpected error: {e}", None)
            return None

    # =========================================================================
    # Finalization
    # =========================================================================

    async def _complete(
        self,
        job_id: str,
        graph: EntityGraph,
        stats: ImportStats,
        storage_check: Optional[StorageCheckResult],
    ) -> None:
        result: Dict[str, Any] = {
            "source_shape": graph.source_shape,
            "source_product_count": graph.source_product_count,
            "created": stats.created_counts(),
            "stats": stats.model_dump(mode="json", exclude={"errors"}),
        }
        if storage_check is not None:
            result["storage"] = storage_check.model_dump(mode="json", exclude={"report", "cleanup"})

        await self._manager.update_status(
            job_id,
            JobStatus.COMPLETED,
            progress=100,
            stage="completed",
            errors=stats.errors,
            error_counts=stats.error_counts,
            result=result,
        )

    async def _fail(self, job_id: str, message: str, kind: Optional[ErrorKind]) -> None:
        errors = [ErrorEntry(kind=kind, message=message)] if kind is not None else None
        counts = {kind.value: 1} if kind is not None else None
        await self._finish_safely(
            job_id, JobStatus.FAILED, stage="failed", error=message, errors=errors, error_counts=counts
        )

    async def _fail_blocked(self, job_id: str, check: StorageCheckResult) -> None:
        await self._finish_safely(
            job_id,
            JobStatus.FAILED,
            stage="storage_blocked",
            error=check.message,
            errors=[ErrorEntry(kind=ErrorKind.STORAGE_BLOCKED, message=check.message)],
            error_counts={ErrorKind.STORAGE_BLOCKED.value: 1},
            result={"storage": check.model_dump(mode="json")},
        )

    async def _ensure_cancelled(self, job_id: str) -> None:
        job = await self._manager.get_job(job_id)
        if job is not None and not job.is_terminal:
            await self._finish_safely(job_id, JobStatus.CANCELLED, stage="cancelled")

    async def _finish_safely(self, job_id: str, status: JobStatus, **fields: Any) -> None:
        try:
            await self._manager.update_status(job_id, status, **fields)
        except JobStateError as e:
            logger.warning(
                "job_final_status_rejected",
                job_id=job_id,
                status=status.value,
                error=e.message,
            )
