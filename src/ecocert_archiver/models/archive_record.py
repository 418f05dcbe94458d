"""ArchiveRecord entity - One archival attempt of one URL, with lifecycle status."""

from datetime import datetime
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from ecocert_archiver.core.timezone import utcnow


class ArchiveStatus(str, Enum):
    """Archive record lifecycle status."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ArchiveStatus, frozenset[ArchiveStatus]] = {
    ArchiveStatus.PENDING: frozenset({ArchiveStatus.DOWNLOADING, ArchiveStatus.FAILED}),
    ArchiveStatus.DOWNLOADING: frozenset({ArchiveStatus.UPLOADING, ArchiveStatus.FAILED}),
    ArchiveStatus.UPLOADING: frozenset({ArchiveStatus.COMPLETED, ArchiveStatus.FAILED}),
    ArchiveStatus.COMPLETED: frozenset(),
    # failed -> downloading is the retry path
    ArchiveStatus.FAILED: frozenset({ArchiveStatus.DOWNLOADING}),
}


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid archive record state transition."""

    pass


class ArchiveRecord(SQLModel, table=True):
    """ArchiveRecord tracks archiving of one URL cited by an ecocert attestation."""

    __tablename__ = "archive_records"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    ecocert_id: str = Field(foreign_key="ecocerts.id", ondelete="CASCADE", index=True)
    attestation_uid: str = Field(foreign_key="attestations.uid", ondelete="CASCADE", index=True)
    original_url: str = Field(sa_column=Column(sa.Text, nullable=False, index=True))
    content_type: str = Field(default="unknown", max_length=100)
    file_extension: Optional[str] = Field(default=None, max_length=10)
    content_identifier: Optional[str] = Field(default=None, max_length=100, index=True)
    gateway_url: Optional[str] = Field(default=None, max_length=300)
    file_size: Optional[int] = Field(default=None, sa_column=Column(sa.BigInteger, nullable=True))
    content_hash: Optional[str] = Field(default=None, max_length=64)
    status: ArchiveStatus = Field(
        default=ArchiveStatus.PENDING,
        sa_column=Column(
            sa.Enum(
                ArchiveStatus,
                name="archive_status",
                native_enum=False,
                length=20,
                values_callable=lambda enum: [member.value for member in enum],
            ),
            nullable=False,
            index=True,
        ),
    )
    error_message: Optional[str] = Field(default=None, sa_column=Column(sa.Text, nullable=True))
    retry_count: int = Field(default=0, ge=0)
    last_retry_at: Optional[datetime] = Field(
        default=None, sa_column=Column(sa.DateTime, nullable=True, index=True)
    )
    archived_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(sa.DateTime, nullable=False, index=True)
    )

    def transition_to(self, status: ArchiveStatus, error_message: str | None = None) -> None:
        """Move to a new status, applying the bookkeeping tied to it.

        Entering failed with a message records it, stamps last_retry_at and
        increments retry_count. Entering completed clears error_message.

        Args:
            status: Target status
            error_message: Failure description (only meaningful for failed)

        Raises:
            InvalidStateTransition: If the transition is not part of the lifecycle
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(
                f"Cannot transition archive record from {self.status.value} to {status.value}."
            )

        if status == ArchiveStatus.FAILED and error_message:
            self.error_message = error_message
            self.last_retry_at = utcnow()
            self.retry_count += 1

        if status == ArchiveStatus.COMPLETED:
            self.error_message = None

        self.status = status
