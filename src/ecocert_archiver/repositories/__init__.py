"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from ecocert_archiver.repositories.archive_record import ArchiveRecordRepository
from ecocert_archiver.repositories.attestation import AttestationRepository
from ecocert_archiver.repositories.ecocert import EcocertRepository

__all__ = [
    "EcocertRepository",
    "AttestationRepository",
    "ArchiveRecordRepository",
]
