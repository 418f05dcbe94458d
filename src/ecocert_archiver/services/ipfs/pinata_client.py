"""Pinata IPFS client for archiving downloaded content."""

import asyncio
import hashlib
import json
import mimetypes
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any

import httpx
import structlog

from ecocert_archiver import __version__
from ecocert_archiver.core.config import Settings
from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.services.content.downloader import DEFAULT_CONTENT_TYPE, ContentMetadata
from ecocert_archiver.services.exceptions import IPFSError

logger = structlog.get_logger()

PINATA_API_URL = "https://api.pinata.cloud"

ALLOWED_EXTENSIONS = frozenset(
    {
        ".pdf",
        ".html",
        ".htm",
        ".txt",
        ".json",
        ".csv",
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".webp",
        ".mp4",
        ".mov",
    }
)

ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "text/html",
        "text/plain",
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "video/mp4",
        "application/json",
        "text/csv",
    }
)

SUSPICIOUS_PATTERNS = ("<script", "javascript:", "eval(", "document.write")
SCAN_WINDOW_BYTES = 1024

PROJECT_KEYVALUES = {"project": "gainforest-archiver", "version": __version__}

PINATA_OPTIONS = {
    "cidVersion": 1,
    "wrapWithDirectory": False,
    "customPinPolicy": {
        "regions": [
            {"id": "FRA1", "desiredReplicationCount": 2},
            {"id": "NYC1", "desiredReplicationCount": 2},
        ]
    },
}


@dataclass
class UploadResult:
    """Outcome of a successful upload."""

    content_identifier: str
    size: int
    gateway_url: str
    uploaded_at: datetime = field(default_factory=utcnow)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class PinStatus:
    content_identifier: str
    is_pinned: bool
    pin_date: datetime | None = None
    node_id: str | None = None


@dataclass
class UsageStats:
    total_pins: int
    total_size: int
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class UploadItem:
    content: bytes
    filename: str
    metadata: ContentMetadata | None = None


@dataclass
class BatchUploadResult:
    """Successful uploads alongside the per-item failures of a batch."""

    results: list[UploadResult] = field(default_factory=list)
    errors: list[IPFSError] = field(default_factory=list)


def _parse_pin_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class PinataClient:
    """IPFS upload client using Pinata pinning service.

    Authenticates with a JWT when one is configured, otherwise with an API
    key/secret pair.
    """

    def __init__(
        self,
        jwt_token: str = "",
        api_key: str = "",
        api_secret: str = "",
        gateway: str = "https://gateway.pinata.cloud",
        timeout_ms: int = 60000,
        max_file_size: int = 100 * 1024 * 1024,
        enforce_mime_allowlist: bool = True,
        scan_for_malware: bool = True,
        block_suspicious_content: bool = False,
        max_concurrent_uploads: int = 3,
        base_url: str = PINATA_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Pinata client.

        Args:
            jwt_token: Pinata API JWT (preferred)
            api_key: Pinata API key (used with api_secret when no JWT is set)
            api_secret: Pinata API secret
            gateway: Gateway base URL for links to uploaded content
            timeout_ms: Per-request timeout
            max_file_size: Largest payload accepted by validate_content
            enforce_mime_allowlist: Reject files whose guessed MIME type is not allowed
            scan_for_malware: Look for script-like patterns in the payload head
            block_suspicious_content: Treat pattern matches as errors instead of warnings
            max_concurrent_uploads: Group size for upload_batch
            base_url: Pinata API base URL
            transport: Optional httpx transport (tests inject httpx.MockTransport)

        Raises:
            IPFSError: PINATA_CONFIG_MISSING if no credentials are given,
                PINATA_GATEWAY_MISSING if the gateway is empty
        """
        if jwt_token:
            self.headers = {"Authorization": f"Bearer {jwt_token}"}
        elif api_key and api_secret:
            self.headers = {"pinata_api_key": api_key, "pinata_secret_api_key": api_secret}
        else:
            raise IPFSError(
                "Pinata API key/secret or JWT is required", "PINATA_CONFIG_MISSING"
            )

        if not gateway:
            raise IPFSError("Pinata gateway URL is required", "PINATA_GATEWAY_MISSING")

        self.gateway = gateway.rstrip("/")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000
        self.max_file_size = max_file_size
        self.enforce_mime_allowlist = enforce_mime_allowlist
        self.scan_for_malware = scan_for_malware
        self.block_suspicious_content = block_suspicious_content
        self.max_concurrent_uploads = max_concurrent_uploads
        self.transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "PinataClient":
        return cls(
            jwt_token=settings.pinata_jwt,
            api_key=settings.pinata_api_key,
            api_secret=settings.pinata_api_secret,
            gateway=settings.pinata_gateway,
            timeout_ms=settings.pinata_timeout_ms,
            max_file_size=settings.max_file_size_bytes,
            enforce_mime_allowlist=settings.enforce_mime_allowlist,
            scan_for_malware=settings.scan_for_malware,
            block_suspicious_content=settings.block_suspicious_content,
            max_concurrent_uploads=settings.max_concurrent_uploads,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    def get_gateway_url(self, cid: str) -> str:
        """Convert CID to gateway URL for browser access.

        Args:
            cid: IPFS CID

        Returns:
            Gateway URL (e.g., "https://gateway.pinata.cloud/ipfs/<CID>")
        """
        return f"{self.gateway}/ipfs/{cid}"

    def validate_content(self, content: bytes, filename: str) -> ValidationResult:
        """Pre-flight checks run before every upload.

        Size cap, extension allowlist and (when enforced) MIME allowlist produce
        errors. Script-like patterns in the first KiB produce warnings, or errors
        when block_suspicious_content is set.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if len(content) > self.max_file_size:
            errors.append(f"File size {len(content)} exceeds maximum {self.max_file_size}")

        extension = PurePosixPath(filename.lower()).suffix
        if extension and extension not in ALLOWED_EXTENSIONS:
            errors.append(f"File extension {extension} is not allowed")

        detected_type = mimetypes.guess_type(filename)[0]
        if (
            self.enforce_mime_allowlist
            and detected_type
            and detected_type not in ALLOWED_MIME_TYPES
        ):
            errors.append(f"Content type {detected_type} is not allowed")

        if self.scan_for_malware:
            head = content[:SCAN_WINDOW_BYTES].decode("utf-8", errors="ignore").lower()
            findings = [
                f"Suspicious content pattern detected: {pattern}"
                for pattern in SUSPICIOUS_PATTERNS
                if pattern in head
            ]
            if self.block_suspicious_content:
                errors.extend(findings)
            else:
                warnings.extend(findings)

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _classify_response(self, response: httpx.Response, context: dict[str, Any]) -> None:
        """Raise an IPFSError for a non-2xx response."""
        status = response.status_code
        if response.is_success:
            return

        context = {**context, "status_code": status}
        if status in (401, 403):
            raise IPFSError(
                f"Pinata authentication failed ({status}). "
                "Check PINATA_JWT or PINATA_API_KEY/PINATA_API_SECRET. "
                "Verify credentials at https://app.pinata.cloud/developers/api-keys",
                "IPFS_AUTH_FAILED",
                context,
            )
        if status == 400:
            raise IPFSError(f"Bad request: {response.text}", "IPFS_BAD_REQUEST", context)
        if status == 429:
            raise IPFSError(f"Rate limit exceeded: {response.text}", "IPFS_RATE_LIMITED", context)
        if status >= 500:
            raise IPFSError(
                f"Service unavailable ({status}): {response.text}", "IPFS_UNAVAILABLE", context
            )
        raise IPFSError(f"Upload failed ({status}): {response.text}", "IPFS_UPLOAD_FAILED", context)

    async def upload(
        self, content: bytes, filename: str, metadata: ContentMetadata | None = None
    ) -> UploadResult:
        """Upload content to IPFS via Pinata.

        Args:
            content: Raw bytes to pin
            filename: Name shown in the Pinata dashboard (also drives validation)
            metadata: Download metadata (content type and hash are attached as keyvalues)

        Returns:
            UploadResult with the CIDv1 content identifier and gateway URL

        Raises:
            IPFSError: CONTENT_VALIDATION_FAILED, IPFS_AUTH_FAILED, IPFS_BAD_REQUEST,
                IPFS_RATE_LIMITED, IPFS_UNAVAILABLE, IPFS_NETWORK_ERROR or IPFS_UPLOAD_FAILED
        """
        validation = self.validate_content(content, filename)
        for warning in validation.warnings:
            logger.warning("ipfs.validation_warning", filename=filename, warning=warning)
        if not validation.is_valid:
            raise IPFSError(
                f"Content validation failed: {', '.join(validation.errors)}",
                "CONTENT_VALIDATION_FAILED",
                {"filename": filename, "errors": validation.errors},
            )

        content_type = (
            metadata.content_type
            if metadata
            else mimetypes.guess_type(filename)[0] or DEFAULT_CONTENT_TYPE
        )
        content_hash = metadata.content_hash if metadata else hashlib.sha256(content).hexdigest()

        uploaded_at = utcnow()
        pinata_metadata = {
            "name": f"{filename}_{int(time.time() * 1000)}",
            "keyvalues": {
                **PROJECT_KEYVALUES,
                "originalFilename": filename,
                "contentHash": content_hash,
                "uploadedAt": uploaded_at.isoformat(),
                "fileSize": str(len(content)),
                "contentType": content_type,
            },
        }
        context = {"filename": filename, "size": len(content)}

        logger.info(
            "ipfs.upload.started", filename=filename, size=len(content), content_type=content_type
        )

        try:
            async with self._client() as client:
                response = await client.post(
                    "/pinning/pinFileToIPFS",
                    files={"file": (filename, content, content_type)},
                    data={
                        "pinataOptions": json.dumps(PINATA_OPTIONS),
                        "pinataMetadata": json.dumps(pinata_metadata),
                    },
                )
        except httpx.TimeoutException as e:
            raise IPFSError(
                f"Request timeout after {self.timeout}s: {e}", "IPFS_NETWORK_ERROR", context
            ) from e
        except httpx.HTTPError as e:
            raise IPFSError(f"Network error: {e}", "IPFS_NETWORK_ERROR", context) from e

        self._classify_response(response, context)

        try:
            cid = response.json()["IpfsHash"]
        except (ValueError, KeyError, TypeError) as e:
            raise IPFSError(
                "Pinata response did not include IpfsHash", "IPFS_UPLOAD_FAILED", context
            ) from e

        result = UploadResult(
            content_identifier=cid,
            size=len(content),
            gateway_url=self.get_gateway_url(cid),
            uploaded_at=uploaded_at,
        )
        logger.info(
            "ipfs.upload.succeeded",
            filename=filename,
            cid=cid,
            size=len(content),
            gateway_url=result.gateway_url,
        )
        return result

    async def upload_batch(self, items: list[UploadItem]) -> BatchUploadResult:
        """Upload items in sequential groups of max_concurrent_uploads.

        Partial failures are returned alongside successes.

        Raises:
            IPFSError: BATCH_UPLOAD_FAILED when every item failed
        """
        batch = BatchUploadResult()
        logger.info("ipfs.batch.started", file_count=len(items))

        for start in range(0, len(items), self.max_concurrent_uploads):
            group = items[start : start + self.max_concurrent_uploads]
            outcomes = await asyncio.gather(*(self._upload_captured(item) for item in group))
            for outcome in outcomes:
                if isinstance(outcome, IPFSError):
                    batch.errors.append(outcome)
                else:
                    batch.results.append(outcome)

        logger.info(
            "ipfs.batch.completed",
            total_files=len(items),
            successful=len(batch.results),
            failed=len(batch.errors),
        )

        if batch.errors and not batch.results:
            raise IPFSError(
                "All files in batch upload failed",
                "BATCH_UPLOAD_FAILED",
                {"total_files": len(items), "error_codes": [e.code for e in batch.errors]},
            )
        return batch

    async def _upload_captured(self, item: UploadItem) -> UploadResult | IPFSError:
        try:
            return await self.upload(item.content, item.filename, item.metadata)
        except IPFSError as e:
            logger.error(
                "ipfs.batch.item_failed", filename=item.filename, code=e.code, error=e.message
            )
            return e

    async def _request(
        self, method: str, path: str, error_code: str, context: dict[str, Any], **kwargs
    ) -> httpx.Response:
        """Send a pin-management request; any failure is raised as error_code."""
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise IPFSError(f"Network error: {e}", error_code, context) from e

        if not response.is_success:
            raise IPFSError(
                f"Pinata request failed ({response.status_code}): {response.text}",
                error_code,
                {**context, "status_code": response.status_code},
            )
        return response

    async def pin_by_hash(self, cid: str) -> None:
        """Ask Pinata to pin content that already exists on IPFS.

        Raises:
            IPFSError: IPFS_PIN_FAILED
        """
        logger.info("ipfs.pin.started", cid=cid)
        await self._request(
            "POST",
            "/pinning/pinByHash",
            "IPFS_PIN_FAILED",
            {"cid": cid},
            json={
                "hashToPin": cid,
                "pinataMetadata": {
                    "name": f"pinned_{cid}",
                    "keyvalues": {
                        **PROJECT_KEYVALUES,
                        "pinnedAt": utcnow().isoformat(),
                        "pinType": "manual",
                    },
                },
            },
        )
        logger.info("ipfs.pin.succeeded", cid=cid)

    async def _pin_list(self, error_code: str, context: dict[str, Any], **params) -> dict:
        response = await self._request(
            "GET", "/data/pinList", error_code, context, params=params
        )
        try:
            return response.json()
        except ValueError as e:
            raise IPFSError("Invalid pin list response", error_code, context) from e

    async def check_pin_status(self, cid: str) -> PinStatus:
        """Report whether content is pinned. Never raises; errors report unpinned."""
        try:
            pin_list = await self._pin_list(
                "IPFS_PIN_STATUS_FAILED",
                {"cid": cid},
                hashContains=cid,
                status="pinned",
                pageLimit=1,
            )
        except IPFSError as e:
            logger.error("ipfs.pin_status_failed", cid=cid, error=e.message)
            return PinStatus(content_identifier=cid, is_pinned=False)

        rows = pin_list.get("rows") or []
        if not pin_list.get("count") or not rows:
            return PinStatus(content_identifier=cid, is_pinned=False)

        return PinStatus(
            content_identifier=cid,
            is_pinned=True,
            pin_date=_parse_pin_date(rows[0].get("date_pinned")),
            node_id="pinata",
        )

    async def get_pin_info(self, cid: str) -> dict:
        """Return Pinata's pin record for a CID.

        Raises:
            IPFSError: CONTENT_NOT_FOUND if Pinata has no record, PIN_INFO_FAILED otherwise
        """
        pin_list = await self._pin_list(
            "PIN_INFO_FAILED", {"cid": cid}, hashContains=cid, pageLimit=1
        )
        rows = pin_list.get("rows") or []
        if not pin_list.get("count") or not rows:
            raise IPFSError(f"Content {cid} not found on Pinata", "CONTENT_NOT_FOUND", {"cid": cid})
        return rows[0]

    async def unpin(self, cid: str) -> None:
        """Remove a pin.

        Raises:
            IPFSError: IPFS_UNPIN_FAILED
        """
        logger.warning("ipfs.unpin.started", cid=cid)
        await self._request("DELETE", f"/pinning/unpin/{cid}", "IPFS_UNPIN_FAILED", {"cid": cid})
        logger.warning("ipfs.unpin.succeeded", cid=cid)

    async def get_usage_stats(self) -> UsageStats:
        """Count pinned items and their total size (first 1000 pins).

        Raises:
            IPFSError: USAGE_STATS_FAILED
        """
        pin_list = await self._pin_list(
            "USAGE_STATS_FAILED", {}, status="pinned", pageLimit=1000, pageOffset=0
        )
        try:
            stats = UsageStats(
                total_pins=int(pin_list.get("count") or 0),
                total_size=sum(int(row.get("size") or 0) for row in pin_list.get("rows") or []),
            )
        except (TypeError, ValueError) as e:
            raise IPFSError("Invalid pin list response", "USAGE_STATS_FAILED") from e

        logger.info("ipfs.usage_stats", total_pins=stats.total_pins, total_size=stats.total_size)
        return stats

    async def health_check(self) -> bool:
        """Verify credentials against /data/testAuthentication. Any failure returns False."""
        try:
            async with self._client() as client:
                response = await client.get("/data/testAuthentication")
        except httpx.HTTPError as e:
            logger.error("ipfs.health_check_failed", error=str(e))
            return False

        authenticated = response.is_success
        logger.debug(
            "ipfs.health_check", authenticated=authenticated, status_code=response.status_code
        )
        return authenticated
