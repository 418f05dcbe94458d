"""Retry scheduler tests."""

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from ecocert_archiver.models.archive_record import ArchiveRecord, ArchiveStatus
from ecocert_archiver.services.archiver import EcocertArchiver
from ecocert_archiver.services.attestation_source import MockAttestationSource
from ecocert_archiver.services.content.downloader import ContentDownloader
from ecocert_archiver.services.ipfs.pinata_client import PinataClient
from ecocert_archiver.services.record_store import RecordStore
from ecocert_archiver.services.retry import RETRY_ERROR_PREFIX, RetryScheduler

CID = "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"


@pytest.fixture
def content_available():
    return {"/late.pdf": False}


@pytest.fixture
def scheduler(settings, session_factory, content_available):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.pinata.cloud":
            return httpx.Response(200, json={"IpfsHash": CID})
        if content_available.get(request.url.path):
            return httpx.Response(200, content=b"late report", headers={"content-type": "text/plain"})
        return httpx.Response(503)

    transport = httpx.MockTransport(handler)
    # No cooldown so a record failed a moment ago is immediately eligible
    store = RecordStore(session_factory, max_retry_attempts=3, retry_cooldown=timedelta(0))
    archiver = EcocertArchiver(
        store=store,
        downloader=ContentDownloader(settings, transport=transport),
        uploader=PinataClient.from_settings(settings, transport=transport),
        source=MockAttestationSource(attestations={}, min_delay=0, max_delay=0),
    )
    return RetryScheduler(store=store, archiver=archiver)


async def _failed_record(scheduler, ecocert_id, attestation_payload, url):
    archiver = scheduler.archiver
    archiver.source.attestations[ecocert_id] = [attestation_payload(1, urls=[url])]
    result = await archiver.process_ecocert(ecocert_id)
    assert result.successfully_archived == 0
    [record] = await scheduler.store.list_archive_records(ecocert_id)
    assert record.status == ArchiveStatus.FAILED
    return record


@pytest.mark.asyncio
async def test_retry_nothing_eligible(scheduler):
    result = await scheduler.retry_failed()

    assert (result.attempted, result.successful, result.still_failed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_retry_recovers_failed_record(
    scheduler, content_available, ecocert_id, attestation_payload
):
    """Scenario: content was unavailable during processing and is now served.

    The record goes failed → downloading → uploading → completed; retry_count
    keeps the one failure and the error message is cleared.
    """
    record = await _failed_record(
        scheduler, ecocert_id, attestation_payload, "https://example.org/late.pdf"
    )
    assert record.retry_count == 1

    content_available["/late.pdf"] = True
    result = await scheduler.retry_failed()

    assert (result.attempted, result.successful, result.still_failed) == (1, 1, 0)
    record = await scheduler.store.get_archive_record(record.id)
    assert record.status == ArchiveStatus.COMPLETED
    assert record.content_identifier == CID
    assert record.error_message is None
    assert record.retry_count == 1


@pytest.mark.asyncio
async def test_retry_failure_is_prefixed_and_counted(
    scheduler, ecocert_id, attestation_payload
):
    record = await _failed_record(
        scheduler, ecocert_id, attestation_payload, "https://example.org/late.pdf"
    )

    result = await scheduler.retry_failed()

    assert (result.attempted, result.successful, result.still_failed) == (1, 0, 1)
    record = await scheduler.store.get_archive_record(record.id)
    assert record.status == ArchiveStatus.FAILED
    assert record.retry_count == 2
    assert record.error_message.startswith(RETRY_ERROR_PREFIX)
    assert "HTTP 503" in record.error_message


@pytest.mark.asyncio
async def test_retry_skips_exhausted_records(
    scheduler, session_factory, ecocert_id, attestation_payload
):
    record = await _failed_record(
        scheduler, ecocert_id, attestation_payload, "https://example.org/late.pdf"
    )
    async with session_factory() as session:
        await session.execute(
            update(ArchiveRecord).where(ArchiveRecord.id == record.id).values(retry_count=3)  # type: ignore[arg-type]
        )
        await session.commit()

    result = await scheduler.retry_failed()

    assert result.attempted == 0
