"""Ecocert repository.

Provides data access methods for Ecocert entities, including the counters
kept in step with child rows.
"""

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ecocert_archiver.core.database import dialect_insert
from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.models.archive_record import ArchiveRecord, ArchiveStatus
from ecocert_archiver.models.attestation import Attestation
from ecocert_archiver.models.ecocert import Ecocert


class EcocertRepository:
    """Repository for Ecocert entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, ecocert_id: str) -> Ecocert | None:
        """Retrieve ecocert by full id.

        Args:
            ecocert_id: Full ecocert id ("{chain}-{contract}-{token}")

        Returns:
            Ecocert if found, None otherwise
        """
        result = await self.session.execute(select(Ecocert).where(Ecocert.id == ecocert_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def exists(self, ecocert_id: str) -> bool:
        """Check whether an ecocert row exists."""
        result = await self.session.execute(
            select(Ecocert.id).where(Ecocert.id == ecocert_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none() is not None

    async def insert_ignore(
        self,
        ecocert_id: str,
        chain_id: str,
        contract_address: str,
        token_id: str,
        title: str | None = None,
        description: str | None = None,
    ) -> bool:
        """Insert an ecocert unless one with the same id already exists.

        Uses INSERT ... ON CONFLICT (id) DO NOTHING, so repeated calls are idempotent
        and never overwrite existing counters or timestamps.

        Returns:
            True if a row was inserted, False if it already existed
        """
        stmt = (
            dialect_insert(self.session, Ecocert)
            .values(
                id=ecocert_id,
                chain_id=chain_id,
                contract_address=contract_address,
                token_id=token_id,
                title=title,
                description=description,
                created_at=utcnow(),
                attestation_count=0,
                archived_content_count=0,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_processed(self, ecocert_id: str) -> bool:
        """Stamp processed_at with the current time.

        Returns:
            True if the ecocert exists and was updated
        """
        result = await self.session.execute(
            update(Ecocert)
            .where(Ecocert.id == ecocert_id)  # type: ignore[arg-type]
            .values(processed_at=utcnow())
        )
        return result.rowcount > 0

    async def increment_attestation_count(self, ecocert_id: str) -> None:
        await self.session.execute(
            update(Ecocert)
            .where(Ecocert.id == ecocert_id)  # type: ignore[arg-type]
            .values(attestation_count=Ecocert.attestation_count + 1)
        )

    async def increment_archived_content_count(self, ecocert_id: str) -> None:
        await self.session.execute(
            update(Ecocert)
            .where(Ecocert.id == ecocert_id)  # type: ignore[arg-type]
            .values(archived_content_count=Ecocert.archived_content_count + 1)
        )

    async def get_unprocessed(self, limit: int = 100) -> list[Ecocert]:
        """Retrieve ecocerts that have never been processed, oldest first.

        Args:
            limit: Maximum number of ecocerts to return (capped at 1000)

        Returns:
            List of ecocerts with processed_at NULL
        """
        result = await self.session.execute(
            select(Ecocert)
            .where(Ecocert.processed_at.is_(None))  # type: ignore[union-attr]
            .order_by(Ecocert.created_at.asc())  # type: ignore[attr-defined]
            .limit(min(limit, 1000))
        )
        return list(result.scalars().all())

    async def count_totals(self) -> tuple[int, int]:
        """Count all ecocerts and the processed ones.

        Returns:
            Tuple of (total, processed)
        """
        result = await self.session.execute(
            select(func.count(Ecocert.id), func.count(Ecocert.processed_at))
        )
        total, processed = result.one()
        return int(total or 0), int(processed or 0)

    async def get_archiving_summary(self) -> list[dict]:
        """Aggregate attestation and archive record counts per ecocert.

        Mirrors the archiving_summary reporting view created by the migrations,
        expressed in SQLAlchemy so it runs on any supported backend.

        Returns:
            One dict per ecocert (oldest first) with keys ecocert_id, title, chain_id,
            processed_at, attestation_count, total_archived_count, completed_count,
            failed_count, pending_count
        """
        attestation_counts = (
            select(
                Attestation.ecocert_id,
                func.count(Attestation.uid).label("attestation_count"),
            )
            .group_by(Attestation.ecocert_id)
            .subquery()
        )

        def status_count(*statuses: ArchiveStatus):
            return func.sum(case((ArchiveRecord.status.in_(statuses), 1), else_=0))  # type: ignore[attr-defined]

        record_counts = (
            select(
                ArchiveRecord.ecocert_id,
                func.count(ArchiveRecord.id).label("total_archived_count"),
                status_count(ArchiveStatus.COMPLETED).label("completed_count"),
                status_count(ArchiveStatus.FAILED).label("failed_count"),
                status_count(
                    ArchiveStatus.PENDING, ArchiveStatus.DOWNLOADING, ArchiveStatus.UPLOADING
                ).label("pending_count"),
            )
            .group_by(ArchiveRecord.ecocert_id)
            .subquery()
        )

        result = await self.session.execute(
            select(
                Ecocert.id.label("ecocert_id"),  # type: ignore[attr-defined]
                Ecocert.title,
                Ecocert.chain_id,
                Ecocert.processed_at,
                func.coalesce(attestation_counts.c.attestation_count, 0).label("attestation_count"),
                func.coalesce(record_counts.c.total_archived_count, 0).label(
                    "total_archived_count"
                ),
                func.coalesce(record_counts.c.completed_count, 0).label("completed_count"),
                func.coalesce(record_counts.c.failed_count, 0).label("failed_count"),
                func.coalesce(record_counts.c.pending_count, 0).label("pending_count"),
            )
            .outerjoin(attestation_counts, attestation_counts.c.ecocert_id == Ecocert.id)
            .outerjoin(record_counts, record_counts.c.ecocert_id == Ecocert.id)
            .order_by(Ecocert.created_at.asc())  # type: ignore[attr-defined]
        )
        return [dict(row._mapping) for row in result.all()]
