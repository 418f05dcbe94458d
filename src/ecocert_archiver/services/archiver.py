"""Ecocert archiving pipeline.

For each ecocert: fetch its attestations, persist them, extract the URLs they
cite and archive each URL (download -> upload to IPFS -> persist) while tracking
every URL as an archive record with its own lifecycle status.

One failing URL never aborts its ecocert, and one failing ecocert never aborts
a batch; classified failures are collected into the processing result.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from urllib.parse import urlsplit

import structlog
from pydantic import ValidationError

from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.models.archive_record import ArchiveStatus
from ecocert_archiver.models.attestation import EcocertAttestation
from ecocert_archiver.services.attestation_source import AttestationSource
from ecocert_archiver.services.content.downloader import ContentDownloader
from ecocert_archiver.services.exceptions import InvalidEcocertIdError, ServiceError
from ecocert_archiver.services.identifiers import (
    EcocertId,
    map_urls_to_attestations,
    parse_ecocert_id,
)
from ecocert_archiver.services.ipfs.pinata_client import PinataClient, UploadResult
from ecocert_archiver.services.record_store import RecordStore

logger = structlog.get_logger()

NO_ATTESTATIONS_NOTE = "No attestations found"
NO_URLS_NOTE = "No URLs found in attestations"

EXTENSION_BY_CONTENT_TYPE = {
    "text/html": ".html",
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "application/json": ".json",
    "text/plain": ".txt",
    "text/csv": ".csv",
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class ProcessingStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EcocertProcessingResult:
    """Outcome of one ecocert pipeline run.

    errors holds failures (soft or fatal); notes holds informational messages
    such as "No attestations found".
    """

    ecocert_id: str
    status: ProcessingStatus = ProcessingStatus.FAILED
    attestations_found: int = 0
    urls_extracted: int = 0
    successfully_archived: int = 0
    errors: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    processed_at: datetime = field(default_factory=utcnow)


def extension_for_content_type(content_type: str) -> str:
    return EXTENSION_BY_CONTENT_TYPE.get(content_type.split(";")[0].strip().lower(), ".bin")


def generate_filename(url: str, content_type: str, timestamp_ms: int | None = None) -> str:
    """Build a safe, unique upload filename from a URL.

    Uses the last path segment (or "content"), appends an extension derived
    from the content type when the segment has none, replaces characters outside
    [a-zA-Z0-9.-] with "_" and inserts "_<epoch-ms>" before the extension.

    Example:
        generate_filename("https://example.org/docs/report.pdf", "application/pdf", 1700000000000)
        -> "report_1700000000000.pdf"
    """
    timestamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)

    try:
        path = urlsplit(url).path
    except ValueError:
        return f"content_{timestamp}{extension_for_content_type(content_type)}"

    filename = path.rsplit("/", 1)[-1] or "content"
    if "." not in filename:
        filename += extension_for_content_type(content_type)
    filename = _UNSAFE_FILENAME_CHARS.sub("_", filename)

    base, dot, extension = filename.rpartition(".")
    if dot:
        return f"{base}_{timestamp}.{extension}"
    return f"{filename}_{timestamp}"


class EcocertArchiver:
    """Drives the archiving pipeline for ecocerts.

    Args:
        store: Record store (owned by the caller)
        downloader: Content downloader
        uploader: Pinata client
        source: Attestation source
        max_concurrent_ecocerts: Chunk size for process_batch
    """

    def __init__(
        self,
        store: RecordStore,
        downloader: ContentDownloader,
        uploader: PinataClient,
        source: AttestationSource,
        max_concurrent_ecocerts: int = 2,
    ):
        self.store = store
        self.downloader = downloader
        self.uploader = uploader
        self.source = source
        self.max_concurrent_ecocerts = max_concurrent_ecocerts

    async def process_ecocert(self, raw_id: str) -> EcocertProcessingResult:
        """Run the full pipeline for one ecocert.

        Status is completed when there are no errors or at least one URL was
        archived; failed only when errors exist and nothing was archived.

        Args:
            raw_id: Ecocert id ("{chain_id}-{contract_address}-{token_id}")

        Returns:
            EcocertProcessingResult (malformed ids return a failed result)
        """
        start_time = time.monotonic()
        result = EcocertProcessingResult(ecocert_id=raw_id)
        logger.info("ecocert.processing.started", ecocert_id=raw_id)

        try:
            parsed = parse_ecocert_id(raw_id)
        except InvalidEcocertIdError as e:
            logger.warning("ecocert.invalid_id", ecocert_id=raw_id, error=e.message)
            result.errors.append(e.message)
            return result

        try:
            await self._process(parsed, result)
        except ServiceError as e:
            logger.error(
                "ecocert.processing.failed",
                ecocert_id=raw_id,
                code=e.code,
                error=e.message,
            )
            result.errors.append(f"Processing failed: {e.message}")
            result.status = ProcessingStatus.FAILED
            result.processed_at = utcnow()
            return result

        result.processed_at = utcnow()
        logger.info(
            "ecocert.processing.completed",
            ecocert_id=raw_id,
            status=result.status.value,
            attestations_found=result.attestations_found,
            urls_extracted=result.urls_extracted,
            successfully_archived=result.successfully_archived,
            error_count=len(result.errors),
            duration_seconds=round(time.monotonic() - start_time, 3),
        )
        return result

    async def _process(self, parsed: EcocertId, result: EcocertProcessingResult) -> None:
        ecocert_id = parsed.full_id

        await self.store.upsert_ecocert(
            ecocert_id,
            title=f"Ecocert {parsed.token_id[-8:]}",
            description="Environmental impact proof of concept",
        )

        payloads = await self.source.fetch_attestations(ecocert_id)
        result.attestations_found = len(payloads)

        if not payloads:
            logger.warning("ecocert.no_attestations", ecocert_id=ecocert_id)
            await self.store.mark_ecocert_processed(ecocert_id)
            result.status = ProcessingStatus.COMPLETED
            result.notes.append(NO_ATTESTATIONS_NOTE)
            return

        attestations = await self._store_attestations(ecocert_id, payloads, result)

        url_owners = map_urls_to_attestations(attestations)
        result.urls_extracted = len(url_owners)
        logger.debug("ecocert.urls_extracted", ecocert_id=ecocert_id, urls=list(url_owners))

        if not url_owners:
            logger.warning("ecocert.no_urls", ecocert_id=ecocert_id)
            await self.store.mark_ecocert_processed(ecocert_id)
            result.status = ProcessingStatus.COMPLETED
            result.notes.append(NO_URLS_NOTE)
            return

        for url, attestation_uid in url_owners.items():
            existing = await self.store.find_completed_record(ecocert_id, url)
            if existing is not None:
                logger.info(
                    "url.already_archived",
                    ecocert_id=ecocert_id,
                    url=url,
                    cid=existing.content_identifier,
                )
                result.successfully_archived += 1
                result.notes.append(f"Already archived: {url}")
                continue

            try:
                await self.archive_url(ecocert_id, attestation_uid, url)
                result.successfully_archived += 1
            except ServiceError as e:
                logger.error(
                    "url.processing_failed",
                    ecocert_id=ecocert_id,
                    url=url,
                    code=e.code,
                    error=e.message,
                )
                result.errors.append(f"Failed to process URL {url}: {e.message}")

        await self.store.mark_ecocert_processed(ecocert_id)

        if not result.errors or result.successfully_archived > 0:
            result.status = ProcessingStatus.COMPLETED
        else:
            result.status = ProcessingStatus.FAILED

    async def _store_attestations(
        self, ecocert_id: str, payloads: list[dict], result: EcocertProcessingResult
    ) -> list[EcocertAttestation]:
        """Validate and persist attestations; failures are recorded as soft errors.

        Returns:
            Attestations that are stored (newly or previously)
        """
        stored: list[EcocertAttestation] = []
        for payload in payloads:
            uid = payload.get("uid", "<unknown>") if isinstance(payload, dict) else "<unknown>"
            try:
                attestation = EcocertAttestation.model_validate(payload)
            except ValidationError as e:
                logger.warning(
                    "attestation.invalid",
                    ecocert_id=ecocert_id,
                    uid=uid,
                    error_count=e.error_count(),
                )
                result.errors.append(
                    f"Invalid attestation {uid}: {e.error_count()} validation error(s)"
                )
                continue

            try:
                await self.store.insert_attestation(ecocert_id, attestation)
            except ServiceError as e:
                logger.error(
                    "attestation.store_failed", ecocert_id=ecocert_id, uid=uid, error=e.message
                )
                result.errors.append(f"Failed to store attestation {uid}: {e.message}")
                continue

            stored.append(attestation)
        return stored

    async def archive_url(self, ecocert_id: str, attestation_uid: str, url: str) -> UploadResult:
        """Create an archive record for a URL and run it through the pipeline.

        Raises:
            ServiceError: Any classified failure (the record is left failed)
        """
        logger.info("url.processing.started", ecocert_id=ecocert_id, url=url)
        record_id = await self.store.create_archive_record(ecocert_id, attestation_uid, url)
        return await self.archive_record_content(record_id, url)

    async def archive_record_content(
        self, record_id: int, url: str, error_prefix: str = ""
    ) -> UploadResult:
        """Run downloading -> download -> uploading -> upload -> completed for a record.

        Any failure moves the record to failed with the error message (prefixed
        with error_prefix) and is re-raised.

        Args:
            record_id: Archive record in pending or failed status
            url: URL to archive
            error_prefix: Prepended to the stored error message (e.g. "Retry failed: ")

        Returns:
            UploadResult of the pinned content
        """
        try:
            await self.store.transition_status(record_id, ArchiveStatus.DOWNLOADING)
            download = await self.downloader.download(url)

            await self.store.transition_status(record_id, ArchiveStatus.UPLOADING)
            filename = generate_filename(url, download.metadata.content_type)
            upload = await self.uploader.upload(download.content, filename, download.metadata)

            await self.store.complete_archive_record(record_id, download.metadata, upload)
        except Exception as e:
            message = e.message if isinstance(e, ServiceError) else str(e) or type(e).__name__
            await self._mark_failed(record_id, f"{error_prefix}{message}")
            raise

        logger.info(
            "url.processing.completed",
            record_id=record_id,
            url=url,
            cid=upload.content_identifier,
        )
        return upload

    async def _mark_failed(self, record_id: int, message: str) -> None:
        try:
            await self.store.transition_status(record_id, ArchiveStatus.FAILED, message)
        except ServiceError as e:
            # The original failure is re-raised by the caller
            logger.error(
                "archive_record.mark_failed_failed",
                record_id=record_id,
                code=e.code,
                error=e.message,
            )

    async def process_batch(self, ecocert_ids: list[str]) -> list[EcocertProcessingResult]:
        """Process ecocerts in sequential chunks of max_concurrent_ecocerts.

        Ecocerts within a chunk run concurrently; the next chunk starts only after
        the previous one completes. Results are returned in input order.
        """
        logger.info(
            "batch.started",
            ecocert_count=len(ecocert_ids),
            max_concurrent=self.max_concurrent_ecocerts,
        )
        results: list[EcocertProcessingResult] = []

        for start in range(0, len(ecocert_ids), self.max_concurrent_ecocerts):
            chunk = ecocert_ids[start : start + self.max_concurrent_ecocerts]
            chunk_results = await asyncio.gather(*(self.process_ecocert(i) for i in chunk))
            results.extend(chunk_results)
            logger.debug(
                "batch.chunk_completed",
                chunk_index=start // self.max_concurrent_ecocerts + 1,
                ecocerts_in_chunk=len(chunk),
            )

        logger.info(
            "batch.completed",
            ecocert_count=len(results),
            completed=sum(r.status == ProcessingStatus.COMPLETED for r in results),
            failed=sum(r.status == ProcessingStatus.FAILED for r in results),
        )
        return results
