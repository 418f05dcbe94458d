"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from ecocert_archiver.models.archive_record import (
    ArchiveRecord,
    ArchiveStatus,
    InvalidStateTransition,
)
from ecocert_archiver.models.attestation import (
    Attestation,
    AttestationData,
    ContentSource,
    EcocertAttestation,
)
from ecocert_archiver.models.ecocert import Ecocert

__all__ = [
    "Ecocert",
    "Attestation",
    "AttestationData",
    "ContentSource",
    "EcocertAttestation",
    "ArchiveRecord",
    "ArchiveStatus",
    "InvalidStateTransition",
]
