"""Archiver application: composes the services and manages their lifecycle.

Lifecycle points are emitted as structured log events (app.ready,
processing.started, processing.completed, stats.retrieved, retry.completed,
shutdown.completed).
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

# Import timezone enforcement (sets TZ=UTC)
from ecocert_archiver.core import timezone  # noqa: F401
from ecocert_archiver.core.config import Settings
from ecocert_archiver.core.database import setup_db_session
from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.models.attestation import EcocertAttestation
from ecocert_archiver.services.archiver import (
    EcocertArchiver,
    EcocertProcessingResult,
    ProcessingStatus,
)
from ecocert_archiver.services.attestation_source import AttestationSource, MockAttestationSource
from ecocert_archiver.services.content.downloader import ContentDownloader
from ecocert_archiver.services.exceptions import (
    ApplicationError,
    DatabaseError,
    InvalidEcocertIdError,
    IPFSError,
)
from ecocert_archiver.services.identifiers import extract_urls, parse_ecocert_id
from ecocert_archiver.services.ipfs.pinata_client import PinataClient
from ecocert_archiver.services.record_store import RecordStore
from ecocert_archiver.services.retry import RetryResult, RetryScheduler

logger = structlog.get_logger()


@dataclass
class ProcessingSummary:
    """Aggregate view of one batch run."""

    duration_seconds: float
    total_ecocerts: int
    completed: int
    failed: int
    success_rate: float
    total_attestations: int
    total_urls: int
    archived: int
    archival_rate: float
    error_count: int
    average_time_per_ecocert_seconds: float
    started_at: datetime
    finished_at: datetime


def build_processing_summary(
    results: list[EcocertProcessingResult], started_at: datetime, duration_seconds: float
) -> ProcessingSummary:
    total = len(results)
    completed = sum(r.status == ProcessingStatus.COMPLETED for r in results)
    total_urls = sum(r.urls_extracted for r in results)
    archived = sum(r.successfully_archived for r in results)

    return ProcessingSummary(
        duration_seconds=round(duration_seconds, 3),
        total_ecocerts=total,
        completed=completed,
        failed=total - completed,
        success_rate=completed / total * 100 if total else 0.0,
        total_attestations=sum(r.attestations_found for r in results),
        total_urls=total_urls,
        archived=archived,
        archival_rate=archived / total_urls * 100 if total_urls else 0.0,
        error_count=sum(len(r.errors) for r in results),
        average_time_per_ecocert_seconds=round(duration_seconds / total, 3) if total else 0.0,
        started_at=started_at,
        finished_at=utcnow(),
    )


class ArchiverApp:
    """Owns the record store, downloader, uploader, archiver and retry scheduler.

    Build it with ArchiverApp.from_settings(), call initialize() before any
    processing and shutdown() when done.
    """

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        downloader: ContentDownloader,
        uploader: PinataClient,
        source: AttestationSource,
    ):
        self.settings = settings
        self.store = store
        self.downloader = downloader
        self.uploader = uploader
        self.source = source
        self.archiver = EcocertArchiver(
            store=store,
            downloader=downloader,
            uploader=uploader,
            source=source,
            max_concurrent_ecocerts=settings.max_concurrent_ecocerts,
        )
        self.retry_scheduler = RetryScheduler(store=store, archiver=self.archiver)

        self.is_initialized = False
        self.is_shutting_down = False
        self._is_shut_down = False
        self._in_flight: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: AttestationSource | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ArchiverApp":
        """Construct the application and its services from settings.

        Args:
            settings: Application settings
            source: Attestation source (defaults to the bundled sample data)
            transport: Optional httpx transport shared by downloader and uploader
        """
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        store = RecordStore(
            session_factory,
            max_retry_attempts=settings.max_retry_attempts,
            retry_cooldown=timedelta(minutes=settings.retry_cooldown_minutes),
        )
        return cls(
            settings=settings,
            store=store,
            downloader=ContentDownloader(settings, transport=transport),
            uploader=PinataClient.from_settings(settings, transport=transport),
            source=source or MockAttestationSource(),
        )

    async def initialize(self) -> None:
        """Check database and Pinata readiness and sweep stale staged files.

        Raises:
            DatabaseError: DB_HEALTH_CHECK_FAILED
            IPFSError: IPFS_HEALTH_CHECK_FAILED
        """
        if self.is_initialized:
            logger.warning("app.already_initialized")
            return

        logger.info("app.initializing", environment=self.settings.app_env)

        db_health = await self.store.health_check()
        if not db_health.connection:
            raise DatabaseError("Database health check failed", "DB_HEALTH_CHECK_FAILED")

        if not await self.uploader.health_check():
            raise IPFSError("IPFS service is not available", "IPFS_HEALTH_CHECK_FAILED")

        self.downloader.cleanup_stale_files()

        self.is_initialized = True
        logger.info("app.ready", database_latency_ms=db_health.latency_ms)

    def _ensure_ready(self) -> None:
        if not self.is_initialized:
            raise ApplicationError("Application not initialized", "APP_NOT_INITIALIZED")
        if self.is_shutting_down:
            raise ApplicationError("Application is shutting down", "APP_SHUTTING_DOWN")

    async def health(self) -> dict[str, Any]:
        db_health = await self.store.health_check()
        ipfs_healthy = await self.uploader.health_check()
        result = {
            "database": db_health.connection,
            "ipfs": ipfs_healthy,
            "database_latency_ms": db_health.latency_ms,
        }
        logger.info("health.checked", **result)
        return result

    async def _run_batch(
        self, ecocert_ids: list[str]
    ) -> tuple[list[EcocertProcessingResult], ProcessingSummary]:
        started_at = utcnow()
        start = time.monotonic()

        task = asyncio.create_task(self.archiver.process_batch(ecocert_ids))
        self._in_flight.add(task)
        logger.info("processing.started", ecocert_count=len(ecocert_ids))
        try:
            results = await task
        finally:
            self._in_flight.discard(task)

        summary = build_processing_summary(results, started_at, time.monotonic() - start)
        logger.info("processing.completed", **asdict(summary))
        return results, summary

    async def process_all(self) -> tuple[list[EcocertProcessingResult], ProcessingSummary]:
        """Process every sample ecocert known to the attestation source."""
        self._ensure_ready()
        ecocert_ids = list(self.source.sample_ecocert_ids())
        return await self._run_batch(ecocert_ids)

    async def process_specific(
        self, ecocert_ids: list[str]
    ) -> tuple[list[EcocertProcessingResult], ProcessingSummary]:
        """Process the given ecocerts; malformed ids are dropped with a warning.

        Raises:
            ApplicationError: NO_VALID_ECOCERTS when no id is well-formed
        """
        self._ensure_ready()

        valid_ids = self.filter_valid_ids(ecocert_ids)
        if not valid_ids:
            raise ApplicationError(
                "No valid ecocert IDs provided",
                "NO_VALID_ECOCERTS",
                {"ecocert_ids": ecocert_ids},
            )
        return await self._run_batch(valid_ids)

    @staticmethod
    def filter_valid_ids(ecocert_ids: list[str]) -> list[str]:
        valid_ids = []
        for ecocert_id in ecocert_ids:
            try:
                parse_ecocert_id(ecocert_id)
            except InvalidEcocertIdError as e:
                logger.warning("ecocert.invalid_id", ecocert_id=ecocert_id, error=e.message)
                continue
            valid_ids.append(ecocert_id)
        return valid_ids

    async def plan(self, ecocert_ids: list[str]) -> dict[str, list[str]]:
        """Resolve the URLs each ecocert would archive, without writing anything.

        Invalid attestation payloads are skipped.
        """
        planned: dict[str, list[str]] = {}
        for ecocert_id in self.filter_valid_ids(ecocert_ids):
            attestations = []
            for payload in await self.source.fetch_attestations(ecocert_id):
                try:
                    attestations.append(EcocertAttestation.model_validate(payload))
                except ValidationError:
                    logger.warning("attestation.invalid", ecocert_id=ecocert_id)
            planned[ecocert_id] = extract_urls(attestations)
        return planned

    async def statistics(self) -> dict[str, Any]:
        self._ensure_ready()
        stats = await self.store.compute_statistics()
        health = await self.health()
        result = {"archiving": asdict(stats), "health": health, "last_updated": utcnow()}
        logger.info("stats.retrieved", **asdict(stats))
        return result

    async def retry_failed(self, limit: int = 50) -> RetryResult:
        self._ensure_ready()
        return await self.retry_scheduler.retry_failed(limit)

    async def shutdown(self) -> None:
        """Wait for in-flight work up to the grace period, then release resources.

        Staged files are swept and connections disposed even if work is still
        outstanding. Calling shutdown more than once is a no-op.
        """
        if self._is_shut_down:
            return
        self.is_shutting_down = True
        logger.info("shutdown.started", in_flight=len(self._in_flight))

        pending = {task for task in self._in_flight if not task.done()}
        if pending:
            _, pending = await asyncio.wait(pending, timeout=self.settings.shutdown_grace_seconds)
            if pending:
                logger.warning(
                    "shutdown.work_outstanding",
                    tasks=len(pending),
                    grace_seconds=self.settings.shutdown_grace_seconds,
                )

        try:
            self.downloader.cleanup_stale_files(max_age_seconds=0)
        finally:
            await self.store.dispose()
            self._is_shut_down = True

        logger.info("shutdown.completed")
