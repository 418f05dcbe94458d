"""Ecocert entity - Top-level identifier whose cited content gets archived."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from ecocert_archiver.core.timezone import utcnow


class Ecocert(SQLModel, table=True):
    """Ecocert keyed by its full id "{chain_id}-{contract_address}-{token_id}".

    The counters mirror the number of child attestation and archive record rows
    and are only changed in the same transaction as those rows.
    """

    __tablename__ = "ecocerts"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=255)
    chain_id: str = Field(max_length=10)
    contract_address: str = Field(max_length=42)
    token_id: str = Field(max_length=100)
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(sa.DateTime, nullable=False, index=True)
    )
    processed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(sa.DateTime, nullable=True, index=True)
    )
    attestation_count: int = Field(default=0, ge=0)
    archived_content_count: int = Field(default=0, ge=0)
