"""Content downloader for URLs cited by attestations.

Validates URLs against SSRF targets before any network call, streams the body to a
staging file with a hard size cap, then reads it back and derives metadata
(content type, extension, SHA-256).
"""

import asyncio
import hashlib
import ipaddress
import mimetypes
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

import httpx
import structlog

from ecocert_archiver.core.config import Settings
from ecocert_archiver.core.timezone import utcnow
from ecocert_archiver.services.exceptions import ContentError

logger = structlog.get_logger()

USER_AGENT = "GainForest-Archiver/1.0"
STAGED_FILE_PREFIX = "download_"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_STAGED_FILE_PATTERN = re.compile(rf"^{STAGED_FILE_PREFIX}(\d+)_")

_PRIVATE_HOST_PATTERNS = (
    re.compile(r"^localhost$"),
    re.compile(r"^127\."),
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[01])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^169\.254\."),
    re.compile(r"^::1$"),
)

_PRIVATE_IPV6_NETWORKS = (
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
)


@dataclass
class ContentMetadata:
    """Metadata derived from a downloaded payload."""

    original_url: str
    content_type: str
    file_size: int
    content_hash: str
    downloaded_at: datetime = field(default_factory=utcnow)
    file_extension: str | None = None


@dataclass
class DownloadResult:
    content: bytes
    metadata: ContentMetadata
    http_status: int
    headers: dict[str, str]


def is_private_host(hostname: str) -> bool:
    """Check whether a hostname names a loopback, private or link-local address."""
    host = hostname.lower().rstrip(".")
    if any(pattern.match(host) for pattern in _PRIVATE_HOST_PATTERNS):
        return True

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return is_private_host(str(address.ipv4_mapped))
        return any(address in network for network in _PRIVATE_IPV6_NETWORKS)
    return False


def build_metadata(url: str, content_type_header: str | None, content: bytes) -> ContentMetadata:
    """Derive content metadata from the URL, the response content type and the payload.

    Content type: response header (parameters stripped), else a MIME lookup on the
    URL, else application/octet-stream. Extension: URL path suffix, else derived
    from the content type.
    """
    raw_type = content_type_header or mimetypes.guess_type(url)[0] or DEFAULT_CONTENT_TYPE
    content_type = raw_type.split(";")[0].strip().lower() or DEFAULT_CONTENT_TYPE

    file_extension: str | None = PurePosixPath(urlsplit(url).path).suffix.lower()
    if not file_extension or len(file_extension) > 10:
        file_extension = mimetypes.guess_extension(content_type)

    return ContentMetadata(
        original_url=url,
        content_type=content_type,
        file_size=len(content),
        content_hash=hashlib.sha256(content).hexdigest(),
        file_extension=file_extension,
    )


class ContentDownloader:
    """Bounded streaming downloader with SSRF protection.

    Args:
        settings: Application settings (staging directory, size cap, timeout,
            redirect limit, batch concurrency, production mode)
        transport: Optional httpx transport (tests inject httpx.MockTransport)
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.download_directory = Path(settings.download_directory)
        self.max_file_size = settings.max_file_size_bytes
        self.timeout = settings.request_timeout_ms / 1000
        self.max_redirects = settings.max_redirects
        self.max_concurrent = settings.max_concurrent_downloads
        self.https_only = settings.is_production and settings.require_https
        self.transport = transport

        self.ensure_download_directory()

    def ensure_download_directory(self) -> None:
        """Create the staging directory if missing.

        Raises:
            ContentError: DOWNLOAD_DIR_FAILED if it cannot be created
        """
        try:
            self.download_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "download.directory_failed", path=str(self.download_directory), error=str(e)
            )
            raise ContentError(
                "Failed to create download directory",
                "DOWNLOAD_DIR_FAILED",
                context={"path": str(self.download_directory)},
            ) from e

    def validate_url(self, url: str) -> None:
        """Reject URLs that must never be fetched.

        Raises:
            ContentError: INVALID_URL, INVALID_PROTOCOL, HTTPS_REQUIRED or
                PRIVATE_ADDRESS_BLOCKED
        """
        try:
            parsed = urlsplit(url)
            hostname = parsed.hostname
        except ValueError as e:
            raise ContentError(f"Invalid URL: {url}", "INVALID_URL", url) from e

        if not parsed.scheme:
            raise ContentError(f"Invalid URL: {url}", "INVALID_URL", url)

        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https"):
            raise ContentError(f"Unsupported protocol: {scheme}:", "INVALID_PROTOCOL", url)

        if self.https_only and scheme != "https":
            raise ContentError("HTTPS required in production", "HTTPS_REQUIRED", url)

        if not hostname:
            raise ContentError(f"Invalid URL: {url}", "INVALID_URL", url)

        if is_private_host(hostname):
            raise ContentError(
                "Private/local addresses not allowed",
                "PRIVATE_ADDRESS_BLOCKED",
                url,
                {"hostname": hostname},
            )

        # urlsplit is lenient; httpx rejects bad IDNA hosts and control characters
        try:
            httpx.URL(url)
        except httpx.InvalidURL as e:
            raise ContentError(f"Invalid URL: {url}", "INVALID_URL", url, {"error": str(e)}) from e

    async def _check_request(self, request: httpx.Request) -> None:
        # Runs for the initial request and for every redirect hop
        self.validate_url(str(request.url))

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            max_redirects=self.max_redirects,
            headers={"User-Agent": USER_AGENT},
            event_hooks={"request": [self._check_request]},
            transport=self.transport,
        )

    def _staging_path(self) -> Path:
        name = f"{STAGED_FILE_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(5)}"
        return self.download_directory / name

    async def download(self, url: str) -> DownloadResult:
        """Download content from a URL.

        Args:
            url: http(s) URL to fetch

        Returns:
            DownloadResult with the full payload and derived metadata

        Raises:
            ContentError: Validation, size, I/O or transport failure (see error codes)
        """
        logger.info("download.started", url=url)
        self.validate_url(url)

        staged_path = self._staging_path()
        try:
            try:
                # httpx timeouts are per phase; this bounds the whole transfer
                async with asyncio.timeout(self.timeout):
                    async with self._build_client() as client:
                        async with client.stream("GET", url) as response:
                            self._validate_response(response, url)
                            await self._stream_to_file(response, staged_path, url)
                            http_status = response.status_code
                            headers = dict(response.headers)
            except TimeoutError as e:
                raise ContentError(
                    f"Download timed out after {self.timeout}s: {url}",
                    "DOWNLOAD_FAILED",
                    url,
                    {"timeout_seconds": self.timeout, "error_type": "TimeoutError"},
                ) from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise ContentError(
                    f"Failed to download content from {url}",
                    "DOWNLOAD_FAILED",
                    url,
                    {"error": str(e), "error_type": type(e).__name__},
                ) from e

            content = self._read_staged_file(staged_path, url)
        except ContentError as e:
            logger.warning("download.failed", url=url, code=e.code, error=e.message)
            raise
        finally:
            self._remove_staged_file(staged_path)

        metadata = build_metadata(url, headers.get("content-type"), content)
        logger.info(
            "download.completed",
            url=url,
            size=metadata.file_size,
            content_type=metadata.content_type,
        )
        return DownloadResult(
            content=content, metadata=metadata, http_status=http_status, headers=headers
        )

    def _validate_response(self, response: httpx.Response, url: str) -> None:
        if not response.is_success:
            raise ContentError(
                f"Failed to download content from {url}: HTTP {response.status_code}",
                "DOWNLOAD_FAILED",
                url,
                {"status_code": response.status_code},
            )

        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_file_size:
            raise ContentError(
                f"Content-Length {content_length} exceeds maximum {self.max_file_size}",
                "CONTENT_TOO_LARGE",
                url,
                {"content_length": int(content_length), "max_size": self.max_file_size},
            )

        if "content-type" not in response.headers:
            logger.warning("download.missing_content_type", url=url)

    async def _stream_to_file(self, response: httpx.Response, path: Path, url: str) -> None:
        """Write the response body to the staging file, aborting once it exceeds the cap."""
        downloaded = 0
        try:
            with path.open("wb") as staged:
                async for chunk in response.aiter_bytes():
                    downloaded += len(chunk)
                    if downloaded > self.max_file_size:
                        raise ContentError(
                            f"File size exceeds limit of {self.max_file_size} bytes",
                            "FILE_TOO_LARGE",
                            url,
                            {"downloaded_size": downloaded, "max_size": self.max_file_size},
                        )
                    staged.write(chunk)
        except httpx.HTTPError as e:
            raise ContentError(
                "Download stream error", "STREAM_ERROR", url, {"error": str(e)}
            ) from e
        except OSError as e:
            raise ContentError(
                "File write error", "WRITE_ERROR", url, {"path": str(path), "error": str(e)}
            ) from e

    def _read_staged_file(self, path: Path, url: str) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise ContentError(
                "Failed to read downloaded file",
                "READ_ERROR",
                url,
                {"path": str(path), "error": str(e)},
            ) from e

    def _remove_staged_file(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("download.cleanup_failed", path=str(path), error=str(e))

    async def download_batch(self, urls: list[str]) -> list[DownloadResult | ContentError]:
        """Download URLs in sequential groups of max_concurrent, concurrently within a group.

        A failing URL yields its ContentError in its slot; siblings are unaffected.
        Result order matches input order.
        """
        logger.info(
            "download.batch_started", url_count=len(urls), max_concurrent=self.max_concurrent
        )
        results: list[DownloadResult | ContentError] = []

        for start in range(0, len(urls), self.max_concurrent):
            group = urls[start : start + self.max_concurrent]
            group_results = await asyncio.gather(*(self._download_captured(url) for url in group))
            results.extend(group_results)
            logger.debug(
                "download.batch_group_completed",
                group_index=start // self.max_concurrent + 1,
                urls_in_group=len(group),
                failed=sum(isinstance(r, ContentError) for r in group_results),
            )

        successful = sum(not isinstance(r, ContentError) for r in results)
        logger.info(
            "download.batch_completed",
            total_urls=len(urls),
            successful=successful,
            failed=len(results) - successful,
        )
        return results

    async def _download_captured(self, url: str) -> DownloadResult | ContentError:
        try:
            return await self.download(url)
        except ContentError as e:
            return e

    def cleanup_stale_files(self, max_age_seconds: float = 3600) -> int:
        """Remove staged files older than max_age_seconds.

        Age comes from the timestamp embedded in the staged file name. Failures to
        remove individual files are logged and skipped.

        Returns:
            Number of files removed
        """
        if not self.download_directory.is_dir():
            return 0

        now_ms = time.time() * 1000
        removed = 0
        for path in self.download_directory.iterdir():
            match = _STAGED_FILE_PATTERN.match(path.name)
            if not match or now_ms - int(match.group(1)) < max_age_seconds * 1000:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("download.cleanup_failed", path=str(path), error=str(e))

        if removed:
            logger.info("download.cleanup_completed", files_removed=removed)
        return removed
