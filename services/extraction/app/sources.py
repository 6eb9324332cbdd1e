"""
Inbound envelopes and source downloads.

- parse_envelope(): bytes from the queue -> InboundEnvelope (or a categorized error)
- filename_from_reference(): human-readable, decoded filename for records/storage
- open_url(): WebHDFS OPEN URL with the filename percent-encoded exactly once
- Downloader: stage the referenced bytes in a local directory
"""

import asyncio
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, unquote, urlsplit

import aioboto3
import aiofiles
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    InvalidEnvelopeError,
    MissingReferenceError,
    ResourceExhaustionError,
    StorageIOError,
    UnsupportedSourceTypeError,
)
from .storage import safe_filename

logger = logging.getLogger("extraction.sources")


class SourceKind(str, Enum):
    HDFS = "HDFS"  # WebHDFS URL
    FILE = "FILE"  # file:// URI or local path
    S3 = "S3"      # S3/MinIO object, {"bucket", "key"} or an s3:// url


@dataclass(frozen=True)
class InboundEnvelope:
    type: SourceKind
    url: str
    input_stream: Optional[str] = None
    output_stream: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def s3_location(self) -> Tuple[str, str]:
        """(bucket, key) of an S3 reference."""
        parts = urlsplit(self.url)
        return parts.netloc, unquote(parts.path.lstrip("/"))


def _s3_reference(data: Dict[str, Any]) -> str:
    bucket, key = data.get("bucket"), data.get("key")
    if isinstance(bucket, str) and bucket.strip() and isinstance(key, str) and key.strip():
        return f"s3://{bucket.strip()}/{quote(key.strip().lstrip('/'), safe='/')}"
    url = data.get("url")
    if isinstance(url, str) and url.strip():
        parts = urlsplit(url.strip())
        if parts.scheme != "s3" or not parts.netloc or not parts.path.strip("/"):
            raise MissingReferenceError(f"S3 url must look like s3://bucket/key, got {url!r}")
        return url.strip()
    raise MissingReferenceError("Missing 'bucket'/'key' fields for S3 type")


def parse_envelope(body: bytes) -> InboundEnvelope:
    """
    Decode {"type": ..., "url": ..., "inputStream": ..., "outputStream": ...}.
    S3 envelopes may carry {"bucket": ..., "key": ...} instead of a url; the
    reference is then s3://bucket/key.
    The source type is checked before the reference so unsupported kinds fail fast.
    """
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidEnvelopeError(f"Message is not valid JSON: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise InvalidEnvelopeError("Message must be a JSON object")

    declared = str(data.get("type") or "")
    try:
        kind = SourceKind(declared.upper())
    except ValueError:
        raise UnsupportedSourceTypeError(f"Unsupported file source type: {declared!r}") from None

    if kind is SourceKind.S3:
        url = _s3_reference(data)
    else:
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            raise MissingReferenceError(f"Missing or empty 'url' field for {kind.value} type")

    return InboundEnvelope(
        type=kind,
        url=url.strip(),
        input_stream=data.get("inputStream"),
        output_stream=data.get("outputStream"),
        raw=data,
    )


# -----------------------------------------------------------------------------
# Reference helpers
# -----------------------------------------------------------------------------
def _last_segment(reference: str) -> str:
    path = urlsplit(reference).path if "://" in reference else reference.split("?", 1)[0]
    return path.rstrip("/").rsplit("/", 1)[-1]


def filename_from_reference(reference: str) -> str:
    """Last path segment, percent-decoded, e.g. ".../my%20doc.pdf?op=OPEN" -> "my doc.pdf"."""
    return unquote(_last_segment(reference)) or "unnamed"


# sub-delims a client may leave unescaped inside an already encoded segment
_SEGMENT_SAFE = "!$&'()*+,;=:@"


def _is_encoded(segment: str) -> bool:
    # "my%20doc.pdf" decodes to something else and re-encodes to itself;
    # "100% done.pdf" does neither
    decoded = unquote(segment)
    return decoded != segment and quote(decoded, safe=_SEGMENT_SAFE) == segment


def open_url(reference: str) -> str:
    """
    Rebuild a WebHDFS reference for download: encode the filename only if it
    is not encoded already, and make sure op=OPEN is present.
    """
    base, sep, query = reference.partition("?")
    head, _, filename = base.rpartition("/")
    encoded = filename if _is_encoded(filename) else quote(filename, safe="")
    params = [p for p in query.split("&") if p] if sep else []
    if not any(p.lower().startswith("op=") for p in params):
        params.append("op=OPEN")
    return f"{head}/{encoded}?{'&'.join(params)}"


def local_path(reference: str) -> str:
    if reference.startswith("file://"):
        return unquote(urlsplit(reference).path)
    return reference


# -----------------------------------------------------------------------------
# Downloads
# -----------------------------------------------------------------------------
class Downloader:
    """
    Copy the referenced document into a staging directory.
    Download size is capped at max_bytes; the caller owns staging cleanup.
    """

    def __init__(self, *, timeout: float = 60.0, max_bytes: int = 100 * 1024 * 1024,
                 client: Optional[httpx.AsyncClient] = None,
                 s3_endpoint: str = "", s3_region: str = "us-east-1",
                 s3_access_key: str = "", s3_secret_key: str = "",
                 s3_session: Optional[aioboto3.Session] = None):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._client = client
        self.s3_endpoint = s3_endpoint
        self.s3_region = s3_region
        self._s3_access_key = s3_access_key
        self._s3_secret_key = s3_secret_key
        self._s3_session = s3_session

    async def fetch(self, envelope: InboundEnvelope, staging_dir: str) -> str:
        filename = safe_filename(filename_from_reference(envelope.url))
        dest_path = os.path.join(staging_dir, filename)
        if envelope.type is SourceKind.HDFS:
            await self._download_http(open_url(envelope.url), dest_path)
        elif envelope.type is SourceKind.S3:
            bucket, key = envelope.s3_location()
            await self._download_s3(bucket, key, dest_path)
        else:
            await self._copy_local(local_path(envelope.url), dest_path)
        return dest_path

    def _s3_client(self):
        """Scoped async S3 client context manager (MinIO when S3_ENDPOINT is set)."""
        session = self._s3_session or aioboto3.Session()
        return session.client(
            "s3",
            endpoint_url=self.s3_endpoint or None,
            region_name=self.s3_region,
            # empty credentials fall back to the default AWS credential chain
            aws_access_key_id=self._s3_access_key or None,
            aws_secret_access_key=self._s3_secret_key or None,
        )

    async def _download_s3(self, bucket: str, key: str, dest_path: str) -> None:
        logger.info("Downloading S3 object %s/%s", bucket, key)
        try:
            async with self._s3_client() as s3:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                declared = resp.get("ContentLength")
                if declared is not None and declared > self.max_bytes:
                    raise ResourceExhaustionError(
                        f"s3://{bucket}/{key} exceeds the maximum document size of {self.max_bytes} bytes"
                    )
                data = await resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise StorageIOError(f"Failed to download s3://{bucket}/{key}: {code}", cause=exc) from exc
        except BotoCoreError as exc:
            raise StorageIOError(f"Failed to reach S3 for s3://{bucket}/{key}: {exc}", cause=exc) from exc

        if len(data) > self.max_bytes:
            raise ResourceExhaustionError(
                f"s3://{bucket}/{key} exceeds the maximum document size of {self.max_bytes} bytes"
            )
        async with aiofiles.open(dest_path, "wb") as f:
            await f.write(data)
        logger.info("Downloaded %s bytes to %s", len(data), dest_path)

    async def _download_http(self, url: str, dest_path: str) -> None:
        """
        Stream the document from 'url' and write it to 'dest_path' in small chunks.
        Streaming avoids loading the whole file in memory.
        """
        logger.info("Downloading %s", url)
        if self._client is not None:
            await self._stream(self._client, url, dest_path)
            return
        async with httpx.AsyncClient() as client:
            await self._stream(client, url, dest_path)

    async def _stream(self, client: httpx.AsyncClient, url: str, dest_path: str) -> None:
        received = 0
        async with client.stream("GET", url, follow_redirects=True, timeout=self.timeout) as r:
            if r.status_code != 200:
                raise StorageIOError(f"Failed to download file from {url}: HTTP {r.status_code}")
            with open(dest_path, "wb") as f:
                async for chunk in r.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise ResourceExhaustionError(
                            f"{url} exceeds the maximum document size of {self.max_bytes} bytes"
                        )
                    f.write(chunk)
        logger.info("Downloaded %s bytes to %s", received, dest_path)

    async def _copy_local(self, source: str, dest_path: str) -> None:
        if not os.path.isfile(source):
            raise StorageIOError(f"Source file not found: {source}")
        size = os.path.getsize(source)
        if size > self.max_bytes:
            raise ResourceExhaustionError(f"{source} exceeds the maximum document size of {self.max_bytes} bytes")
        await asyncio.wait_for(asyncio.to_thread(shutil.copyfile, source, dest_path), self.timeout)
        logger.info("Copied %s bytes from %s to %s", size, source, dest_path)
