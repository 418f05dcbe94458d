"""Durable record store for ecocerts, attestations and archive records.

Wraps the UnitOfWork and repositories behind intention-revealing operations.
Every mutating operation runs in its own transaction; storage failures are
classified into DatabaseError codes so callers can report them per item.
"""

import time
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ecocert_archiver.models.archive_record import (
    ArchiveRecord,
    ArchiveStatus,
    InvalidStateTransition,
)
from ecocert_archiver.models.attestation import EcocertAttestation
from ecocert_archiver.models.ecocert import Ecocert
from ecocert_archiver.services.content.downloader import ContentMetadata
from ecocert_archiver.services.exceptions import DatabaseError
from ecocert_archiver.services.identifiers import parse_ecocert_id
from ecocert_archiver.services.ipfs.pinata_client import UploadResult
from ecocert_archiver.uow import create_uow_factory

logger = structlog.get_logger()


@dataclass
class ArchivingStats:
    """Aggregate archiving statistics across all ecocerts."""

    total_ecocerts: int
    processed_ecocerts: int
    total_attestations: int
    total_urls: int
    archived_urls: int
    failed_urls: int
    pending_urls: int
    average_urls_per_ecocert: float
    success_rate: float


@dataclass
class DatabaseHealth:
    status: str
    connection: bool
    latency_ms: float | None = None


class RecordStore:
    """Persistence facade used by the archiver and the retry scheduler.

    Args:
        session_factory: Async session factory (see core.database.setup_db_session)
        max_retry_attempts: Records with this many failures are no longer retried
        retry_cooldown: Minimum time between a failure and its retry
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retry_attempts: int = 3,
        retry_cooldown: timedelta = timedelta(minutes=5),
    ):
        self.session_factory = session_factory
        self.uow_factory = create_uow_factory(session_factory)
        self.max_retry_attempts = max_retry_attempts
        self.retry_cooldown = retry_cooldown

    # Ecocerts

    async def upsert_ecocert(
        self, ecocert_id: str, title: str | None = None, description: str | None = None
    ) -> bool:
        """Insert the ecocert unless it already exists.

        Returns:
            True if a row was inserted

        Raises:
            InvalidEcocertIdError: If the id is malformed
            DatabaseError: ECOCERT_INSERT_FAILED on storage failure
        """
        parsed = parse_ecocert_id(ecocert_id)
        try:
            async with await self.uow_factory() as uow:
                inserted = await uow.ecocerts.insert_ignore(
                    ecocert_id=parsed.full_id,
                    chain_id=parsed.chain_id,
                    contract_address=parsed.contract_address,
                    token_id=parsed.token_id,
                    title=title,
                    description=description,
                )
        except SQLAlchemyError as e:
            logger.error("ecocert.insert_failed", ecocert_id=ecocert_id, error=str(e))
            raise DatabaseError(
                f"Failed to insert ecocert {ecocert_id}",
                "ECOCERT_INSERT_FAILED",
                {"ecocert_id": ecocert_id},
            ) from e

        logger.debug("ecocert.upserted", ecocert_id=ecocert_id, inserted=inserted)
        return inserted

    async def get_ecocert(self, ecocert_id: str) -> Ecocert | None:
        try:
            async with await self.uow_factory() as uow:
                return await uow.ecocerts.get_by_id(ecocert_id)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to query ecocert {ecocert_id}",
                "ECOCERT_QUERY_FAILED",
                {"ecocert_id": ecocert_id},
            ) from e

    async def mark_ecocert_processed(self, ecocert_id: str) -> None:
        """Stamp processed_at on the ecocert.

        Raises:
            DatabaseError: ECOCERT_NOT_FOUND or ECOCERT_UPDATE_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                updated = await uow.ecocerts.mark_processed(ecocert_id)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to mark ecocert {ecocert_id} processed",
                "ECOCERT_UPDATE_FAILED",
                {"ecocert_id": ecocert_id},
            ) from e

        if not updated:
            raise DatabaseError(
                f"Ecocert {ecocert_id} not found", "ECOCERT_NOT_FOUND", {"ecocert_id": ecocert_id}
            )
        logger.debug("ecocert.marked_processed", ecocert_id=ecocert_id)

    async def get_unprocessed_ecocerts(self, limit: int = 100) -> list[Ecocert]:
        try:
            async with await self.uow_factory() as uow:
                return await uow.ecocerts.get_unprocessed(limit)
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to query unprocessed ecocerts", "ECOCERT_QUERY_FAILED"
            ) from e

    # Attestations

    async def insert_attestation(self, ecocert_id: str, attestation: EcocertAttestation) -> bool:
        """Store an attestation under its ecocert.

        The parent's attestation_count is incremented only when a new row was
        written, so repeated runs leave the counter unchanged.

        Returns:
            True if a row was inserted, False if the uid was already stored

        Raises:
            DatabaseError: ECOCERT_NOT_FOUND, ATTESTATION_OWNER_MISMATCH (uid stored
                under another ecocert) or ATTESTATION_INSERT_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                if not await uow.ecocerts.exists(ecocert_id):
                    raise DatabaseError(
                        f"Ecocert {ecocert_id} not found",
                        "ECOCERT_NOT_FOUND",
                        {"ecocert_id": ecocert_id},
                    )
                inserted = await uow.attestations.insert_ignore(ecocert_id, attestation)
                if inserted:
                    await uow.ecocerts.increment_attestation_count(ecocert_id)
                else:
                    existing = await uow.attestations.get_by_uid(attestation.uid)
                    if existing is not None and existing.ecocert_id != ecocert_id:
                        raise DatabaseError(
                            f"Attestation {attestation.uid} belongs to ecocert "
                            f"{existing.ecocert_id}",
                            "ATTESTATION_OWNER_MISMATCH",
                            {
                                "ecocert_id": ecocert_id,
                                "uid": attestation.uid,
                                "owner_ecocert_id": existing.ecocert_id,
                            },
                        )
        except SQLAlchemyError as e:
            logger.error(
                "attestation.insert_failed",
                ecocert_id=ecocert_id,
                uid=attestation.uid,
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to insert attestation {attestation.uid}",
                "ATTESTATION_INSERT_FAILED",
                {"ecocert_id": ecocert_id, "uid": attestation.uid},
            ) from e

        logger.debug(
            "attestation.stored", ecocert_id=ecocert_id, uid=attestation.uid, inserted=inserted
        )
        return inserted

    # Archive records

    async def create_archive_record(
        self, ecocert_id: str, attestation_uid: str, original_url: str
    ) -> int:
        """Create a pending archive record and bump the ecocert's archived_content_count.

        Returns:
            Id of the new record

        Raises:
            DatabaseError: ARCHIVE_RECORD_INSERT_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                record = await uow.archive_records.add(
                    ArchiveRecord(
                        ecocert_id=ecocert_id,
                        attestation_uid=attestation_uid,
                        original_url=original_url,
                        status=ArchiveStatus.PENDING,
                        retry_count=0,
                    )
                )
                await uow.ecocerts.increment_archived_content_count(ecocert_id)
                record_id = int(record.id)  # type: ignore[arg-type]
        except SQLAlchemyError as e:
            logger.error(
                "archive_record.insert_failed",
                ecocert_id=ecocert_id,
                url=original_url,
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to create archive record for {original_url}",
                "ARCHIVE_RECORD_INSERT_FAILED",
                {"ecocert_id": ecocert_id, "url": original_url},
            ) from e

        logger.debug("archive_record.created", record_id=record_id, url=original_url)
        return record_id

    async def get_archive_record(self, record_id: int) -> ArchiveRecord | None:
        try:
            async with await self.uow_factory() as uow:
                return await uow.archive_records.get_by_id(record_id)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to query archive record {record_id}",
                "ARCHIVE_RECORD_QUERY_FAILED",
                {"record_id": record_id},
            ) from e

    async def list_archive_records(self, ecocert_id: str) -> list[ArchiveRecord]:
        try:
            async with await self.uow_factory() as uow:
                return await uow.archive_records.get_by_ecocert(ecocert_id)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to query archive records of {ecocert_id}",
                "ARCHIVE_RECORD_QUERY_FAILED",
                {"ecocert_id": ecocert_id},
            ) from e

    async def find_completed_record(
        self, ecocert_id: str, original_url: str
    ) -> ArchiveRecord | None:
        try:
            async with await self.uow_factory() as uow:
                return await uow.archive_records.find_completed(ecocert_id, original_url)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to query archive records of {ecocert_id}",
                "ARCHIVE_RECORD_QUERY_FAILED",
                {"ecocert_id": ecocert_id, "url": original_url},
            ) from e

    async def transition_status(
        self,
        record_id: int,
        status: ArchiveStatus,
        error_message: str | None = None,
    ) -> ArchiveRecord:
        """Move an archive record to a new status.

        Args:
            record_id: Archive record id
            status: Target status
            error_message: Failure description when entering failed

        Returns:
            The updated record

        Raises:
            DatabaseError: ARCHIVE_RECORD_NOT_FOUND, ARCHIVE_RECORD_INVALID_TRANSITION
                or ARCHIVE_RECORD_UPDATE_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                record = await uow.archive_records.get_by_id(record_id, for_update=True)
                if record is None:
                    raise DatabaseError(
                        f"Archive record {record_id} not found",
                        "ARCHIVE_RECORD_NOT_FOUND",
                        {"record_id": record_id},
                    )
                previous = record.status
                record.transition_to(status, error_message)
                uow.session.add(record)
        except InvalidStateTransition as e:
            raise DatabaseError(
                str(e),
                "ARCHIVE_RECORD_INVALID_TRANSITION",
                {"record_id": record_id, "target_status": status.value},
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to update archive record {record_id}",
                "ARCHIVE_RECORD_UPDATE_FAILED",
                {"record_id": record_id, "target_status": status.value},
            ) from e

        logger.debug(
            "archive_record.status_changed",
            record_id=record_id,
            from_status=previous.value,
            to_status=status.value,
        )
        return record

    async def complete_archive_record(
        self, record_id: int, metadata: ContentMetadata, upload: UploadResult
    ) -> ArchiveRecord:
        """Persist download/upload metadata and mark the record completed in one transaction.

        Raises:
            DatabaseError: ARCHIVE_RECORD_NOT_FOUND, ARCHIVE_RECORD_INVALID_TRANSITION
                or ARCHIVE_RECORD_UPDATE_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                record = await uow.archive_records.get_by_id(record_id, for_update=True)
                if record is None:
                    raise DatabaseError(
                        f"Archive record {record_id} not found",
                        "ARCHIVE_RECORD_NOT_FOUND",
                        {"record_id": record_id},
                    )
                record.content_type = metadata.content_type
                record.file_extension = metadata.file_extension
                record.file_size = metadata.file_size
                record.content_hash = metadata.content_hash
                record.content_identifier = upload.content_identifier
                record.gateway_url = upload.gateway_url
                record.transition_to(ArchiveStatus.COMPLETED)
                uow.session.add(record)
        except InvalidStateTransition as e:
            raise DatabaseError(
                str(e),
                "ARCHIVE_RECORD_INVALID_TRANSITION",
                {"record_id": record_id, "target_status": ArchiveStatus.COMPLETED.value},
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to complete archive record {record_id}",
                "ARCHIVE_RECORD_UPDATE_FAILED",
                {"record_id": record_id},
            ) from e

        logger.info(
            "archive_record.completed",
            record_id=record_id,
            cid=upload.content_identifier,
            size=metadata.file_size,
        )
        return record

    async def query_retry_eligible(self, limit: int = 50) -> list[ArchiveRecord]:
        """Failed records that may be retried now (see ArchiveRecordRepository.get_retry_eligible).

        Raises:
            DatabaseError: RETRY_QUERY_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                return await uow.archive_records.get_retry_eligible(
                    limit=limit,
                    max_retries=self.max_retry_attempts,
                    cooldown=self.retry_cooldown,
                )
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to query retry-eligible records", "RETRY_QUERY_FAILED", {"limit": limit}
            ) from e

    # Reporting

    async def compute_statistics(self) -> ArchivingStats:
        """Compute aggregate archiving statistics.

        Raises:
            DatabaseError: STATS_CALCULATION_FAILED
        """
        try:
            async with await self.uow_factory() as uow:
                total_ecocerts, processed_ecocerts = await uow.ecocerts.count_totals()
                total_attestations = await uow.attestations.count()
                by_status = await uow.archive_records.count_by_status()
        except SQLAlchemyError as e:
            logger.error("stats.calculation_failed", error=str(e))
            raise DatabaseError(
                "Failed to calculate archiving statistics", "STATS_CALCULATION_FAILED"
            ) from e

        total_urls = sum(by_status.values())
        archived = by_status.get(ArchiveStatus.COMPLETED, 0)
        failed = by_status.get(ArchiveStatus.FAILED, 0)
        pending = sum(
            by_status.get(status, 0)
            for status in (
                ArchiveStatus.PENDING,
                ArchiveStatus.DOWNLOADING,
                ArchiveStatus.UPLOADING,
            )
        )

        return ArchivingStats(
            total_ecocerts=total_ecocerts,
            processed_ecocerts=processed_ecocerts,
            total_attestations=total_attestations,
            total_urls=total_urls,
            archived_urls=archived,
            failed_urls=failed,
            pending_urls=pending,
            average_urls_per_ecocert=(
                total_urls / total_ecocerts if total_ecocerts and total_urls else 0.0
            ),
            success_rate=archived / total_urls * 100 if total_urls else 0.0,
        )

    async def get_archiving_summary(self) -> list[dict]:
        try:
            async with await self.uow_factory() as uow:
                return await uow.ecocerts.get_archiving_summary()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to query archiving summary", "SUMMARY_QUERY_FAILED") from e

    # Lifecycle

    async def health_check(self) -> DatabaseHealth:
        """Run SELECT 1 and report connectivity and round-trip latency. Never raises."""
        start = time.monotonic()
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error("database.health_check_failed", error=str(e))
            return DatabaseHealth(status="unhealthy", connection=False)

        latency_ms = (time.monotonic() - start) * 1000
        return DatabaseHealth(status="healthy", connection=True, latency_ms=latency_ms)

    async def dispose(self) -> None:
        """Close every pooled connection."""
        bind = self.session_factory.kw.get("bind")
        if bind is not None:
            await bind.dispose()
        logger.info("database.disposed")
