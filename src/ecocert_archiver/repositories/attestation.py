"""Attestation repository.

Provides data access methods for Attestation entities.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ecocert_archiver.core.database import dialect_insert
from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.models.attestation import Attestation, EcocertAttestation


class AttestationRepository:
    """Repository for Attestation entities.

    Attestations are immutable: inserting a uid that already exists is a no-op.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_uid(self, uid: str) -> Attestation | None:
        result = await self.session.execute(select(Attestation).where(Attestation.uid == uid))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def insert_ignore(self, ecocert_id: str, attestation: EcocertAttestation) -> bool:
        """Insert an attestation unless its uid is already stored.

        sources_count is derived from the payload at insert time.

        Args:
            ecocert_id: Parent ecocert id
            attestation: Validated attestation payload

        Returns:
            True if a row was inserted, False on duplicate uid
        """
        stmt = (
            dialect_insert(self.session, Attestation)
            .values(
                uid=attestation.uid,
                ecocert_id=ecocert_id,
                schema_uid=attestation.schema_uid,
                attester=attestation.attester,
                data=attestation.data.model_dump(mode="json"),
                creation_block_timestamp=attestation.creation_block_timestamp,
                created_at=utcnow(),
                sources_count=len(attestation.data.sources),
            )
            .on_conflict_do_nothing(index_elements=["uid"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def count(self) -> int:
        result = await self.session.execute(select(func.count(Attestation.uid)))
        return int(result.scalar() or 0)
