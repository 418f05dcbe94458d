"""Archiving pipeline tests.

Content hosts and Pinata are served by one httpx.MockTransport; the record
store runs on a temporary SQLite database.
"""

import asyncio

import httpx
import pytest

from ecocert_archiver.models.archive_record import ArchiveStatus
from ecocert_archiver.services.archiver import (
    NO_ATTESTATIONS_NOTE,
    NO_URLS_NOTE,
    EcocertArchiver,
    ProcessingStatus,
    generate_filename,
)
from ecocert_archiver.services.attestation_source import MockAttestationSource
from ecocert_archiver.services.content.downloader import ContentDownloader
from ecocert_archiver.services.ipfs.pinata_client import PinataClient

CID = "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"
PDF_BYTES = b"%PDF-1.4 field report"


class FakeNetwork:
    """Serves content from `pages` (path -> (body, content type)) and answers Pinata uploads."""

    def __init__(self):
        self.pages: dict[str, tuple[bytes, str]] = {}
        self.uploads: list[bytes] = []
        self.pinata_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.pinata.cloud":
            if request.url.path == "/data/testAuthentication":
                return httpx.Response(200)
            self.uploads.append(request.content)
            if self.pinata_status != 200:
                return httpx.Response(self.pinata_status)
            return httpx.Response(200, json={"IpfsHash": CID})

        page = self.pages.get(request.url.path)
        if page is None:
            return httpx.Response(404)
        body, content_type = page
        return httpx.Response(200, content=body, headers={"content-type": content_type})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def network() -> FakeNetwork:
    network = FakeNetwork()
    network.pages["/report.pdf"] = (PDF_BYTES, "application/pdf")
    return network


@pytest.fixture
def make_archiver(settings, store, network):
    def _make(attestations: dict[str, list[dict]]) -> EcocertArchiver:
        transport = network.transport()
        return EcocertArchiver(
            store=store,
            downloader=ContentDownloader(settings, transport=transport),
            uploader=PinataClient.from_settings(settings, transport=transport),
            source=MockAttestationSource(attestations=attestations, min_delay=0, max_delay=0),
            max_concurrent_ecocerts=2,
        )

    return _make


@pytest.mark.asyncio
async def test_process_ecocert_partial_success(
    make_archiver, store, network, ecocert_id, attestation_payload
):
    """Scenario: one attestation cites 2 URLs and 1 IPFS hash; one URL returns 404.

    - urls_extracted is 2 (IPFS sources are not archived)
    - the good URL is completed with the Pinata CID
    - the 404 URL is failed with its error recorded
    - the ecocert is completed because something was archived
    """
    payload = attestation_payload(
        1,
        urls=["https://example.org/report.pdf", "https://example.org/missing.pdf"],
        ipfs=["bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"],
    )
    archiver = make_archiver({ecocert_id: [payload]})

    result = await archiver.process_ecocert(ecocert_id)

    assert result.status == ProcessingStatus.COMPLETED
    assert result.attestations_found == 1
    assert result.urls_extracted == 2
    assert result.successfully_archived == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Failed to process URL https://example.org/missing.pdf:")

    records = {r.original_url: r for r in await store.list_archive_records(ecocert_id)}
    completed = records["https://example.org/report.pdf"]
    assert completed.status == ArchiveStatus.COMPLETED
    assert completed.content_identifier == CID
    assert completed.gateway_url == f"https://gateway.test/ipfs/{CID}"
    assert completed.content_type == "application/pdf"
    assert completed.attestation_uid == payload["uid"]

    failed = records["https://example.org/missing.pdf"]
    assert failed.status == ArchiveStatus.FAILED
    assert "HTTP 404" in failed.error_message
    assert failed.retry_count == 1

    ecocert = await store.get_ecocert(ecocert_id)
    assert ecocert.processed_at is not None
    assert ecocert.attestation_count == 1
    assert ecocert.archived_content_count == 2
    assert ecocert.title == "Ecocert 1001"


@pytest.mark.asyncio
async def test_process_ecocert_all_urls_failed(make_archiver, network, ecocert_id, attestation_payload):
    network.pinata_status = 503
    archiver = make_archiver(
        {ecocert_id: [attestation_payload(1, urls=["https://example.org/report.pdf"])]}
    )

    result = await archiver.process_ecocert(ecocert_id)

    assert result.status == ProcessingStatus.FAILED
    assert result.successfully_archived == 0
    assert len(result.errors) == 1
    assert "Service unavailable (503)" in result.errors[0]


@pytest.mark.asyncio
async def test_process_ecocert_without_attestations(make_archiver, store, ecocert_id):
    archiver = make_archiver({})

    result = await archiver.process_ecocert(ecocert_id)

    assert result.status == ProcessingStatus.COMPLETED
    assert result.attestations_found == 0
    assert result.errors == []
    assert result.notes == [NO_ATTESTATIONS_NOTE]
    assert (await store.get_ecocert(ecocert_id)).processed_at is not None


@pytest.mark.asyncio
async def test_process_ecocert_without_urls(make_archiver, ecocert_id, attestation_payload):
    archiver = make_archiver({ecocert_id: [attestation_payload(1, ipfs=["bafyabc"])]})

    result = await archiver.process_ecocert(ecocert_id)

    assert result.status == ProcessingStatus.COMPLETED
    assert result.attestations_found == 1
    assert result.urls_extracted == 0
    assert result.notes == [NO_URLS_NOTE]


@pytest.mark.asyncio
async def test_process_ecocert_invalid_id(make_archiver, store):
    archiver = make_archiver({})

    result = await archiver.process_ecocert("not-a-valid-id-at-all")

    assert result.status == ProcessingStatus.FAILED
    assert result.errors == ["Invalid ecocert ID format: not-a-valid-id-at-all"]
    assert (await store.compute_statistics()).total_ecocerts == 0


@pytest.mark.asyncio
async def test_invalid_attestation_is_a_soft_error(
    make_archiver, ecocert_id, attestation_payload
):
    """Scenario: one malformed attestation next to a valid one.

    The malformed one is reported; URLs of the valid one are still archived.
    """
    broken = attestation_payload(2, urls=["https://example.org/other.pdf"])
    broken["data"]["sources"][0]["type"] = "torrent"
    archiver = make_archiver(
        {ecocert_id: [attestation_payload(1, urls=["https://example.org/report.pdf"]), broken]}
    )

    result = await archiver.process_ecocert(ecocert_id)

    assert result.status == ProcessingStatus.COMPLETED
    assert result.attestations_found == 2
    assert result.urls_extracted == 1
    assert result.successfully_archived == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Invalid attestation {broken['uid']}")


@pytest.mark.asyncio
async def test_reprocessing_skips_archived_urls(
    make_archiver, store, network, ecocert_id, attestation_payload
):
    archiver = make_archiver(
        {ecocert_id: [attestation_payload(1, urls=["https://example.org/report.pdf"])]}
    )

    await archiver.process_ecocert(ecocert_id)
    second = await archiver.process_ecocert(ecocert_id)

    assert second.status == ProcessingStatus.COMPLETED
    assert second.successfully_archived == 1
    assert second.notes == ["Already archived: https://example.org/report.pdf"]
    assert len(network.uploads) == 1
    assert len(await store.list_archive_records(ecocert_id)) == 1
    assert (await store.get_ecocert(ecocert_id)).attestation_count == 1


@pytest.mark.asyncio
async def test_process_batch_chunks_and_keeps_order(make_archiver, attestation_payload):
    """Scenario: 3 ecocerts with a chunk size of 2.

    At most 2 ecocerts run at once and results come back in input order.
    """
    ids = [f"42220-0x16bA53B74c234C870c61EFC04cD418B8f2865959-{n}" for n in (3, 1, 2)]
    archiver = make_archiver(
        {
            ecocert_id: [attestation_payload(n, token_id=ecocert_id.rsplit("-", 1)[1])]
            for n, ecocert_id in enumerate(ids, start=1)
        }
    )

    running = 0
    peak = 0
    original = archiver.process_ecocert

    async def tracked(raw_id):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        try:
            return await original(raw_id)
        finally:
            running -= 1

    archiver.process_ecocert = tracked  # type: ignore[method-assign]

    results = await archiver.process_batch(ids + ["bogus"])

    assert [r.ecocert_id for r in results] == ids + ["bogus"]
    assert peak == 2
    assert [r.status for r in results] == [ProcessingStatus.COMPLETED] * 3 + [
        ProcessingStatus.FAILED
    ]


@pytest.mark.asyncio
async def test_process_batch_waits_for_whole_chunk(make_archiver):
    """Scenario: chunk 1 holds a slow and a fast ecocert.

    The third ecocert starts only after the slow one finishes, even though a
    slot freed up earlier when the fast one ended.
    """
    slow, fast, third = (f"42220-0x16bA53B74c234C870c61EFC04cD418B8f2865959-{n}" for n in (1, 2, 3))
    delays = {slow: 0.05, fast: 0, third: 0}
    archiver = make_archiver({})

    events: list[tuple[str, str]] = []
    original = archiver.process_ecocert

    async def tracked(raw_id):
        events.append(("start", raw_id))
        await asyncio.sleep(delays[raw_id])
        try:
            return await original(raw_id)
        finally:
            events.append(("end", raw_id))

    archiver.process_ecocert = tracked  # type: ignore[method-assign]

    await archiver.process_batch([slow, fast, third])

    assert events.index(("end", fast)) < events.index(("end", slow))
    assert events.index(("start", third)) > events.index(("end", slow))


@pytest.mark.asyncio
async def test_malformed_url_is_isolated(make_archiver, store, ecocert_id, attestation_payload):
    """Scenario: a cited URL with an invalid IDNA host sits next to a good one.

    The bad URL becomes a failed record with a soft error; the good one is archived.
    """
    bad_url = "https://exämple..org/bad.pdf"
    archiver = make_archiver(
        {ecocert_id: [attestation_payload(1, urls=[bad_url, "https://example.org/report.pdf"])]}
    )

    result = await archiver.process_ecocert(ecocert_id)

    assert result.status == ProcessingStatus.COMPLETED
    assert result.urls_extracted == 2
    assert result.successfully_archived == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Failed to process URL {bad_url}: Invalid URL")

    records = {r.original_url: r for r in await store.list_archive_records(ecocert_id)}
    assert records[bad_url].status == ArchiveStatus.FAILED
    assert records["https://example.org/report.pdf"].status == ArchiveStatus.COMPLETED


@pytest.mark.asyncio
async def test_malformed_url_does_not_abort_batch(make_archiver, attestation_payload):
    ids = [f"42220-0x16bA53B74c234C870c61EFC04cD418B8f2865959-{n}" for n in (1, 2)]
    archiver = make_archiver(
        {
            ids[0]: [attestation_payload(1, urls=["https://exämple..org/bad.pdf"], token_id="1")],
            ids[1]: [attestation_payload(2, urls=["https://example.org/report.pdf"], token_id="2")],
        }
    )

    results = await archiver.process_batch(ids)

    assert [r.ecocert_id for r in results] == ids
    assert results[0].status == ProcessingStatus.FAILED
    assert results[1].status == ProcessingStatus.COMPLETED
    assert results[1].successfully_archived == 1


@pytest.mark.asyncio
async def test_attestation_owned_by_other_ecocert_is_a_soft_error(
    make_archiver, store, ecocert_id, attestation_payload
):
    """Scenario: a second ecocert returns an attestation uid already stored under the first.

    The second ecocert reports the conflict and gets no archive records.
    """
    other_id = ecocert_id.rsplit("-", 1)[0] + "-2002"
    shared = attestation_payload(1, urls=["https://example.org/report.pdf"])
    archiver = make_archiver({ecocert_id: [shared], other_id: [shared]})

    await archiver.process_ecocert(ecocert_id)
    result = await archiver.process_ecocert(other_id)

    assert result.urls_extracted == 0
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Failed to store attestation {shared['uid']}")
    assert await store.list_archive_records(other_id) == []
    assert len(await store.list_archive_records(ecocert_id)) == 1


@pytest.mark.parametrize(
    ("url", "content_type", "expected"),
    [
        ("https://example.org/docs/report.pdf", "application/pdf", "report_1700000000000.pdf"),
        ("https://example.org/", "text/html", "content_1700000000000.html"),
        ("https://example.org/photo", "image/png; charset=binary", "photo_1700000000000.png"),
        ("https://example.org/data", "application/x-unknown", "data_1700000000000.bin"),
        ("https://example.org/my%20file(1).txt", "text/plain", "my_20file_1__1700000000000.txt"),
    ],
)
def test_generate_filename(url, content_type, expected):
    assert generate_filename(url, content_type, timestamp_ms=1700000000000) == expected
