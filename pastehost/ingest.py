"""Upload normalisation.

Multipart files, raw bodies, inline JSON content and JSON URL fetches all end
up as one :class:`NormalizedUpload` before any retention or storage decision
is made.
"""

import ipaddress
import os
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import unquote, urljoin, urlparse

import magic
import requests
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .config import max_upload_bytes
from .errors import (
    ContentTooLarge,
    FetchFailed,
    FetchStatusError,
    ValidationError,
)
from .logs import get_logger, sanitize_log_value
from .models import APIKey


logger = get_logger("ingest")

CHUNK_SIZE_BYTES = 64 * 1024
MAX_FILENAME_LENGTH = 255
DEFAULT_FILENAME = "paste"
SNIFF_SAMPLE_BYTES = 2048
MAX_REDIRECTS = 5
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
_EXTENSION_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_+-]{0,15}$")

GENERIC_CONTENT_TYPES = {
    "",
    "application/octet-stream",
    "application/x-www-form-urlencoded",
    "multipart/form-data",
    "binary/octet-stream",
}

DANGEROUS_CONTENT_TYPES = {
    "application/x-executable",
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-bat",
    "application/x-apple-diskimage",
    "application/vnd.microsoft.portable-executable",
    "application/x-sharedlib",
    "application/x-elf",
    "application/x-dosexec",
}

BLOCKED_HOSTNAMES = {
    "localhost",
    "metadata.google.internal",
    "instance-data",
}


@dataclass(frozen=True)
class UploadOptions:
    extension: Optional[str] = None
    expires_in: Optional[str] = None
    private: bool = False
    filename: Optional[str] = None


@dataclass(frozen=True)
class MultipartUpload:
    file: FileStorage
    fields: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RawUpload:
    body: bytes
    content_type: Optional[str] = None


@dataclass(frozen=True)
class JSONContent:
    content: str


@dataclass(frozen=True)
class JSONURL:
    url: str


Upload = Union[MultipartUpload, RawUpload, JSONContent, JSONURL]


@dataclass(frozen=True)
class NormalizedUpload:
    data: bytes
    filename: str
    mime_type: str
    extension: str
    options: UploadOptions
    caller: Optional[APIKey] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FetchedContent:
    data: bytes
    content_type: Optional[str]
    filename: Optional[str]


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def parse_json_upload(payload: Any) -> Tuple[Upload, UploadOptions]:
    """Split a JSON upload body into its variant and options.

    Exactly one of ``content`` and ``url`` must be present.
    """

    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON")

    content = payload.get("content")
    url = payload.get("url")
    has_content = content not in (None, "")
    has_url = url not in (None, "")
    if has_content and has_url:
        raise ValidationError("Provide either content or url, not both")
    if not has_content and not has_url:
        raise ValidationError("Either content or url must be provided")

    for name in ("filename", "extension", "expires_in"):
        value = payload.get(name)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")

    options = UploadOptions(
        extension=payload.get("extension") or None,
        expires_in=payload.get("expires_in") or None,
        private=parse_bool(payload.get("private", False)),
        filename=payload.get("filename") or None,
    )
    if has_url:
        if not isinstance(url, str):
            raise ValidationError("url must be a string")
        return JSONURL(url.strip()), options
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    return JSONContent(content), options


def base_content_type(value: Optional[str]) -> str:
    return (value or "").split(";", 1)[0].strip().lower()


def sniff_mime_type(data: bytes) -> str:
    sample = data[:SNIFF_SAMPLE_BYTES]
    detected = magic.from_buffer(sample, mime=True) or "application/octet-stream"
    if detected == "text/plain":
        first_line = sample.split(b"\n", 1)[0]
        if first_line.startswith((b"# ", b"## ")):
            return "text/markdown"
    return detected


def is_safe_url(url: str) -> Tuple[bool, Optional[str]]:
    """Validate a fetch target so uploads cannot reach internal services."""

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False, f"Unsupported URL scheme: {parsed.scheme or 'none'}"

    hostname = parsed.hostname
    if not hostname:
        return False, "Invalid URL: missing hostname"

    hostname_lower = hostname.lower()
    for blocked in BLOCKED_HOSTNAMES:
        if hostname_lower == blocked or hostname_lower.endswith("." + blocked):
            return False, f"Access to hostname '{hostname}' is not allowed"

    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror as error:
        return False, f"Could not resolve hostname '{hostname}': {error}"
    except OSError as error:
        return False, f"Network error resolving hostname '{hostname}': {error}"

    for _, _, _, _, sockaddr in addr_info:
        try:
            ip = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            return False, f"Access to address {ip} is not allowed"

    return True, None


class URLFetcher:
    """Bounded-time download used by the JSON URL upload path.

    ``timeout`` bounds each socket read and the fetch as a whole. Redirects
    are followed by hand so every hop goes through the same address checks
    as the submitted URL.
    """

    def __init__(self, timeout: float, max_bytes: int, block_private: bool = True) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.block_private = block_private

    def _check_target(self, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("url must be an absolute http or https URL")

        if self.block_private:
            is_safe, reason = is_safe_url(url)
            if not is_safe:
                logger.warning(
                    "url_blocked url=%s reason=%s", sanitize_log_value(url), reason
                )
                raise ValidationError(f"URL blocked for security reasons: {reason}")

    def _check_deadline(self, url: str, deadline: float) -> None:
        if time.monotonic() > deadline:
            logger.warning("url_fetch_deadline_exceeded url=%s", sanitize_log_value(url))
            raise FetchFailed(f"Timed out fetching {url}")

    def _open(self, url: str, deadline: float) -> Tuple[str, requests.Response]:
        current = url
        for _ in range(MAX_REDIRECTS + 1):
            self._check_target(current)
            response = requests.get(
                current, timeout=self.timeout, stream=True, allow_redirects=False
            )
            location = response.headers.get("location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                return current, response
            response.close()
            current = urljoin(current, location)
            logger.debug("url_fetch_redirect location=%s", sanitize_log_value(current))
            self._check_deadline(url, deadline)
        raise FetchFailed(f"Too many redirects fetching {url}")

    def fetch(self, url: str) -> FetchedContent:
        self._check_target(url)
        deadline = time.monotonic() + self.timeout

        response = None
        try:
            final_url, response = self._open(url, deadline)
            if not 200 <= response.status_code < 300:
                raise FetchStatusError(
                    f"Remote server responded with HTTP {response.status_code}",
                    response.status_code,
                )

            content_length = response.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
                raise ContentTooLarge(
                    f"Remote content ({int(content_length)} bytes) exceeds maximum allowed size ({self.max_bytes} bytes)"
                )

            chunks = []
            total_size = 0
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE_BYTES):
                self._check_deadline(url, deadline)
                if not chunk:
                    continue
                total_size += len(chunk)
                if total_size > self.max_bytes:
                    raise ContentTooLarge(
                        f"Remote content exceeds maximum allowed size ({self.max_bytes} bytes)"
                    )
                chunks.append(chunk)

            filename = os.path.basename(unquote(urlparse(final_url).path or "")) or None
            return FetchedContent(
                data=b"".join(chunks),
                content_type=response.headers.get("content-type"),
                filename=filename,
            )
        except requests.Timeout as error:
            logger.warning("url_fetch_timeout url=%s", sanitize_log_value(url))
            raise FetchFailed(f"Timed out fetching {url}") from error
        except requests.RequestException as error:
            logger.warning(
                "url_fetch_failed url=%s error=%s", sanitize_log_value(url), error
            )
            raise FetchFailed(f"Failed to fetch {url}: {error}") from error
        finally:
            if response is not None:
                response.close()


class Normalizer:
    def __init__(self, config: Dict[str, Any], fetcher: Optional[URLFetcher] = None) -> None:
        self.max_bytes = max_upload_bytes(config)
        self.fetcher = fetcher or URLFetcher(
            timeout=float(config["url_fetch_timeout_seconds"]),
            max_bytes=self.max_bytes,
            block_private=bool(config["block_private_urls"]),
        )

    def _read_file(self, upload: FileStorage) -> bytes:
        chunks = []
        total = 0
        try:
            while True:
                chunk = upload.stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                total += len(chunk)
                if total > self.max_bytes:
                    raise ContentTooLarge(
                        f"Upload exceeds maximum allowed size ({self.max_bytes} bytes)"
                    )
                chunks.append(chunk)
        finally:
            upload.close()
        return b"".join(chunks)

    def _extract(self, upload: Upload) -> Tuple[bytes, Optional[str], Optional[str]]:
        """Return raw bytes, the source filename and the declared MIME type."""

        if isinstance(upload, MultipartUpload):
            return self._read_file(upload.file), upload.file.filename, upload.file.content_type
        if isinstance(upload, RawUpload):
            return bytes(upload.body), None, upload.content_type
        if isinstance(upload, JSONContent):
            return upload.content.encode("utf-8"), None, None
        if isinstance(upload, JSONURL):
            fetched = self.fetcher.fetch(upload.url)
            return fetched.data, fetched.filename, fetched.content_type
        raise ValidationError(f"Unsupported upload type: {type(upload).__name__}")

    @staticmethod
    def _clean_filename(*candidates: Optional[str]) -> str:
        for candidate in candidates:
            if not candidate:
                continue
            if "\x00" in candidate:
                raise ValidationError("Filename contains invalid characters")
            cleaned = secure_filename(candidate)
            if not cleaned:
                continue
            if len(cleaned) > MAX_FILENAME_LENGTH:
                raise ValidationError(
                    f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters"
                )
            return cleaned
        return DEFAULT_FILENAME

    @staticmethod
    def _clean_extension(explicit: Optional[str], filename: str) -> str:
        if explicit:
            extension = explicit.strip().lstrip(".").lower()
            if not _EXTENSION_PATTERN.match(extension):
                raise ValidationError(f"Invalid extension: {explicit!r}")
            return extension
        _, suffix = os.path.splitext(filename)
        extension = suffix.lstrip(".").lower()
        return extension if _EXTENSION_PATTERN.match(extension or "") else ""

    def normalize(
        self,
        upload: Upload,
        options: Optional[UploadOptions] = None,
        caller: Optional[APIKey] = None,
    ) -> NormalizedUpload:
        options = options or UploadOptions()
        data, source_filename, declared_type = self._extract(upload)

        if len(data) > self.max_bytes:
            raise ContentTooLarge(
                f"Upload exceeds maximum allowed size ({self.max_bytes} bytes)"
            )
        if not data:
            raise ValidationError("Empty content")

        filename = self._clean_filename(options.filename, source_filename)
        extension = self._clean_extension(options.extension, filename)

        declared = base_content_type(declared_type)
        mime_type = declared if declared not in GENERIC_CONTENT_TYPES else sniff_mime_type(data)
        if mime_type in DANGEROUS_CONTENT_TYPES:
            logger.warning(
                "upload_blocked_dangerous_content filename=%s content_type=%s",
                sanitize_log_value(filename),
                mime_type,
            )
            raise ValidationError(f"Executable content type '{mime_type}' is not allowed")

        logger.debug(
            "upload_normalized source=%s filename=%s size=%d mime_type=%s",
            type(upload).__name__,
            sanitize_log_value(filename),
            len(data),
            mime_type,
        )
        return NormalizedUpload(
            data=data,
            filename=filename,
            mime_type=mime_type,
            extension=extension,
            options=options,
            caller=caller,
        )
