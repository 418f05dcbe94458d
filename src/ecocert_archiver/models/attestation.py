"""Attestation entity and the payload schema it carries."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, BigInteger, Column, DateTime
from sqlmodel import Field, SQLModel

from ecocert_archiver.core.timezone import utcnow


class ContentSource(BaseModel):
    """Reference to external content cited by an attestation."""

    model_config = ConfigDict(frozen=True)

    type: Literal["url", "ipfs", "arweave"]
    src: str = PydanticField(min_length=1)
    description: Optional[str] = None


class AttestationData(BaseModel):
    """Decoded attestation payload."""

    title: str
    description: str
    chain_id: str
    token_id: str
    contract_address: str
    sources: list[ContentSource] = PydanticField(default_factory=list)


class EcocertAttestation(BaseModel):
    """Attestation as returned by the attestation source.

    Validation is strict: unknown source types, a malformed uid or missing
    payload fields raise pydantic.ValidationError.
    """

    uid: str = PydanticField(pattern=r"^0x[0-9a-fA-F]{64}$")
    schema_uid: str = PydanticField(pattern=r"^0x[0-9a-fA-F]{64}$")
    attester: str = PydanticField(pattern=r"^0x[0-9a-fA-F]{40}$")
    data: AttestationData
    creation_block_timestamp: Optional[int] = None


class Attestation(SQLModel, table=True):
    """Attestation row. Immutable once inserted (insert-or-ignore on uid)."""

    __tablename__ = "attestations"  # type: ignore[assignment]

    uid: str = Field(primary_key=True, max_length=66)
    ecocert_id: str = Field(foreign_key="ecocerts.id", ondelete="CASCADE", index=True)
    schema_uid: str = Field(max_length=66, index=True)
    attester: str = Field(max_length=42, index=True)
    data: dict = Field(sa_column=Column(JSON, nullable=False))
    creation_block_timestamp: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime, nullable=False)
    )
    sources_count: int = Field(default=0, ge=0)
