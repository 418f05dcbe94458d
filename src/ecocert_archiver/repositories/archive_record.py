"""ArchiveRecord repository.

Provides data access methods for ArchiveRecord entities, including the
retry-eligibility query used by the retry scheduler.
"""

from datetime import timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.models.archive_record import ArchiveRecord, ArchiveStatus

MAX_RETRY_QUERY_LIMIT = 200


class ArchiveRecordRepository:
    """Repository for ArchiveRecord entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, record: ArchiveRecord) -> ArchiveRecord:
        """Persist new archive record to database.

        Args:
            record: ArchiveRecord entity to persist

        Returns:
            Persisted record with generated ID
        """
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_id(self, record_id: int, for_update: bool = False) -> ArchiveRecord | None:
        """Retrieve archive record by id.

        Args:
            record_id: Record's integer id
            for_update: Lock the row for the rest of the transaction

        Returns:
            ArchiveRecord if found, None otherwise
        """
        query = select(ArchiveRecord).where(ArchiveRecord.id == record_id)  # type: ignore[arg-type]
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_ecocert(self, ecocert_id: str) -> list[ArchiveRecord]:
        """Retrieve all archive records of an ecocert, oldest first."""
        result = await self.session.execute(
            select(ArchiveRecord)
            .where(ArchiveRecord.ecocert_id == ecocert_id)  # type: ignore[arg-type]
            .order_by(ArchiveRecord.archived_at.asc(), ArchiveRecord.id.asc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

    async def find_completed(self, ecocert_id: str, original_url: str) -> ArchiveRecord | None:
        """Retrieve a completed record for the URL of an ecocert, if any."""
        result = await self.session.execute(
            select(ArchiveRecord)
            .where(ArchiveRecord.ecocert_id == ecocert_id)  # type: ignore[arg-type]
            .where(ArchiveRecord.original_url == original_url)  # type: ignore[arg-type]
            .where(ArchiveRecord.status == ArchiveStatus.COMPLETED)  # type: ignore[arg-type]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_retry_eligible(
        self,
        limit: int = 50,
        max_retries: int = 3,
        cooldown: timedelta = timedelta(minutes=5),
    ) -> list[ArchiveRecord]:
        """Retrieve failed records that may be retried now.

        Query explanation:
        - WHERE status = 'failed': Only failed records
        - AND retry_count < max_retries: Retry budget not exhausted
        - AND (last_retry_at IS NULL OR last_retry_at < now - cooldown): Outside retry window
        - ORDER BY last_retry_at ASC NULLS FIRST: Longest-waiting first
        - LIMIT min(limit, 200)

        Args:
            limit: Maximum number of records to return (capped at 200)
            max_retries: Records with retry_count >= max_retries are excluded
            cooldown: Minimum time since the last failure

        Returns:
            List of retry-eligible records
        """
        cutoff = utcnow() - cooldown
        result = await self.session.execute(
            select(ArchiveRecord)
            .where(ArchiveRecord.status == ArchiveStatus.FAILED)  # type: ignore[arg-type]
            .where(ArchiveRecord.retry_count < max_retries)  # type: ignore[arg-type]
            .where(
                or_(
                    ArchiveRecord.last_retry_at.is_(None),  # type: ignore[union-attr]
                    ArchiveRecord.last_retry_at < cutoff,  # type: ignore[operator]
                )
            )
            .order_by(
                ArchiveRecord.last_retry_at.asc().nulls_first(),  # type: ignore[union-attr]
                ArchiveRecord.id.asc(),  # type: ignore[union-attr]
            )
            .limit(min(limit, MAX_RETRY_QUERY_LIMIT))
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[ArchiveStatus, int]:
        """Count archive records grouped by status.

        Returns:
            Mapping of status to row count (statuses without rows are absent)
        """
        result = await self.session.execute(
            select(ArchiveRecord.status, func.count(ArchiveRecord.id)).group_by(
                ArchiveRecord.status
            )
        )
        return {ArchiveStatus(status): int(count) for status, count in result.all()}
