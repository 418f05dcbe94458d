"""On-demand retry of failed archive records.

Selects failed records whose retry budget is not exhausted and whose cooldown
has elapsed, then re-runs the download -> upload -> persist sequence for each.
There is no timer here; an operator command or an external scheduler triggers it.
"""

from collections import defaultdict
from dataclasses import dataclass

import structlog

from ecocert_archiver.services.archiver import EcocertArchiver
from ecocert_archiver.services.exceptions import ServiceError
from ecocert_archiver.services.record_store import RecordStore

logger = structlog.get_logger()

RETRY_ERROR_PREFIX = "Retry failed: "


@dataclass
class RetryResult:
    attempted: int = 0
    successful: int = 0
    still_failed: int = 0


class RetryScheduler:
    """Retries failed archive records sequentially.

    Args:
        store: Record store used to select eligible records
        archiver: Archiver whose record pipeline is reused for each retry
    """

    def __init__(self, store: RecordStore, archiver: EcocertArchiver):
        self.store = store
        self.archiver = archiver

    async def retry_failed(self, limit: int = 50) -> RetryResult:
        """Retry up to `limit` eligible failed records.

        Args:
            limit: Maximum records to retry (the store caps it at 200)

        Returns:
            RetryResult with attempted/successful/still_failed counts
        """
        records = await self.store.query_retry_eligible(limit)
        result = RetryResult()

        if not records:
            logger.info("retry.nothing_eligible", limit=limit)
            return result

        by_ecocert: dict[str, list[int]] = defaultdict(list)
        for record in records:
            by_ecocert[record.ecocert_id].append(record.id)  # type: ignore[arg-type]
        logger.info(
            "retry.started",
            record_count=len(records),
            ecocerts={ecocert_id: len(ids) for ecocert_id, ids in by_ecocert.items()},
        )

        for record in records:
            result.attempted += 1
            logger.info(
                "retry.attempt",
                record_id=record.id,
                ecocert_id=record.ecocert_id,
                url=record.original_url,
                retry_count=record.retry_count,
            )
            try:
                await self.archiver.archive_record_content(
                    record.id,  # type: ignore[arg-type]
                    record.original_url,
                    error_prefix=RETRY_ERROR_PREFIX,
                )
                result.successful += 1
            except ServiceError as e:
                result.still_failed += 1
                logger.warning(
                    "retry.failed",
                    record_id=record.id,
                    url=record.original_url,
                    code=e.code,
                    error=e.message,
                )

        logger.info(
            "retry.completed",
            attempted=result.attempted,
            successful=result.successful,
            still_failed=result.still_failed,
        )
        return result
