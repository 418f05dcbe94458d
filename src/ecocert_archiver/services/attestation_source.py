"""Attestation sources.

The archiver only needs "attestations for an ecocert id"; in production that is
an attestation indexer, here a bundled sample data set.
"""

import asyncio
import random
from collections.abc import Mapping
from typing import Protocol

import structlog

from ecocert_archiver.data.mock_attestations import MOCK_ATTESTATIONS, SAMPLE_ECOCERT_IDS

logger = structlog.get_logger()


class AttestationSource(Protocol):
    """Supplies raw attestation payloads for an ecocert."""

    async def fetch_attestations(self, ecocert_id: str) -> list[dict]: ...

    def sample_ecocert_ids(self) -> tuple[str, ...]: ...


class MockAttestationSource:
    """In-process attestation source backed by sample data.

    Simulates indexer latency with a random delay in [min_delay, max_delay] seconds.
    """

    def __init__(
        self,
        attestations: Mapping[str, list[dict]] | None = None,
        ecocert_ids: tuple[str, ...] | None = None,
        min_delay: float = 0.1,
        max_delay: float = 0.3,
    ):
        self.attestations = MOCK_ATTESTATIONS if attestations is None else attestations
        self.ecocert_ids = SAMPLE_ECOCERT_IDS if ecocert_ids is None else ecocert_ids
        self.min_delay = min_delay
        self.max_delay = max_delay

    async def fetch_attestations(self, ecocert_id: str) -> list[dict]:
        if self.max_delay > 0:
            await asyncio.sleep(random.uniform(self.min_delay, self.max_delay))

        attestations = [dict(item) for item in self.attestations.get(ecocert_id, [])]
        logger.debug(
            "attestations.fetched", ecocert_id=ecocert_id, attestation_count=len(attestations)
        )
        return attestations

    def sample_ecocert_ids(self) -> tuple[str, ...]:
        return tuple(self.ecocert_ids)
