"""
Durable store adapters.

The processor only needs five operations (exists/write/delete/mkdir/read) and
a way to turn a stored path into a reference for downstream consumers
(url_for). Paths are plain, decoded, slash-separated names such as
"/processed_files/report 1.pdf.txt"; each adapter encodes them for its own
wire format exactly once.

- WebHdfsStore: WebHDFS REST API over httpx
- LocalDirectoryStore: a directory on local disk (standalone mode, tests)
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

import aiofiles
import httpx

from .errors import StorageIOError

logger = logging.getLogger("extraction.storage")


class StoreNotFoundError(StorageIOError):
    pass


class DurableStore(Protocol):
    async def exists(self, path: str) -> bool: ...

    async def write(self, path: str, content: bytes) -> None: ...

    async def delete(self, path: str, recursive: bool = False) -> bool: ...

    async def mkdir(self, path: str) -> bool: ...

    async def read(self, path: str) -> bytes: ...

    def url_for(self, path: str) -> str: ...


def safe_filename(filename: str) -> str:
    """Flatten path separators so a decoded name stays a single path segment."""
    safe = filename.replace("/", "_").replace("\\", "_").strip()
    return safe or "unnamed"


def join_path(directory: str, *names: str) -> str:
    return "/".join([directory.rstrip("/")] + [n.strip("/") for n in names])


# -----------------------------------------------------------------------------
# WebHDFS
# -----------------------------------------------------------------------------
class WebHdfsStore:
    """
    WebHDFS adapter.
    base_url is the REST root, e.g. http://namenode:9870/webhdfs/v1
    """

    def __init__(self, base_url: str, *, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def url_for(self, path: str) -> str:
        return self.base_url + quote("/" + path.lstrip("/"), safe="/")

    def _op_url(self, path: str, op: str, **params) -> str:
        query = "&".join([f"op={op}"] + [f"{k}={v}" for k, v in params.items()])
        return f"{self.url_for(path)}?{query}"

    async def exists(self, path: str) -> bool:
        try:
            r = await self._http().get(self._op_url(path, "GETFILESTATUS"))
            return r.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Error checking if %s exists: %s", path, e)
            return False

    async def write(self, path: str, content: bytes) -> None:
        url = self._op_url(path, "CREATE", overwrite="true")
        logger.info("Writing %s bytes to HDFS: %s", len(content), url)
        try:
            r = await self._http().put(url, content=content, headers={"Content-Type": "application/octet-stream"})
        except httpx.HTTPError as e:
            raise StorageIOError(f"Failed to write {path} to HDFS: {e}", cause=e) from e
        if r.status_code not in (200, 201):
            raise StorageIOError(f"Failed to write to HDFS. Response code: {r.status_code}, Error: {r.text[:500]}")

    async def delete(self, path: str, recursive: bool = False) -> bool:
        url = self._op_url(path, "DELETE", recursive=str(recursive).lower())
        logger.info("Attempting to delete %s", url)
        try:
            r = await self._http().delete(url)
        except httpx.HTTPError as e:
            logger.error("Error deleting %s from HDFS: %s", path, e)
            return False
        if r.status_code == 200:
            logger.info("Successfully deleted %s from HDFS", path)
            return True
        logger.warning("Failed to delete %s. Response code: %s", path, r.status_code)
        return False

    async def mkdir(self, path: str) -> bool:
        if await self.exists(path):
            logger.debug("Directory %s already exists", path)
            return True
        url = self._op_url(path, "MKDIRS")
        logger.info("Creating directory: %s", url)
        try:
            r = await self._http().put(url)
        except httpx.HTTPError as e:
            logger.error("Error creating %s in HDFS: %s", path, e)
            return False
        if r.status_code == 200:
            return True
        logger.warning("Failed to create %s. Response code: %s", path, r.status_code)
        return False

    async def read(self, path: str) -> bytes:
        try:
            r = await self._http().get(self._op_url(path, "OPEN"))
        except httpx.HTTPError as e:
            raise StorageIOError(f"Failed to read {path} from HDFS: {e}", cause=e) from e
        if r.status_code == 404:
            raise StoreNotFoundError(f"{path} not found in HDFS")
        if r.status_code != 200:
            raise StorageIOError(f"Failed to read {path} from HDFS. Response code: {r.status_code}")
        return r.content


# -----------------------------------------------------------------------------
# Local directory
# -----------------------------------------------------------------------------
class LocalDirectoryStore:
    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root.resolve() not in (target, *target.parents):
            raise StorageIOError(f"{path} escapes store root {self.root}")
        return target

    def url_for(self, path: str) -> str:
        return self._resolve(path).as_uri()

    async def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    async def write(self, path: str, content: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "wb") as f:
                await f.write(content)
        except OSError as e:
            raise StorageIOError(f"Failed to write {target}: {e}", cause=e) from e
        logger.info("Wrote %s bytes to %s", len(content), target)

    async def delete(self, path: str, recursive: bool = False) -> bool:
        target = self._resolve(path)
        try:
            if target.is_dir():
                if recursive:
                    await asyncio.to_thread(shutil.rmtree, target)
                else:
                    target.rmdir()
            elif target.exists():
                target.unlink()
            else:
                # WebHDFS also answers 200 for a missing path
                logger.debug("Nothing to delete at %s", target)
            return True
        except OSError as e:
            logger.error("Error deleting %s: %s", target, e)
            return False

    async def mkdir(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            os.makedirs(target, exist_ok=True)
            return True
        except OSError as e:
            logger.error("Error creating %s: %s", target, e)
            return False

    async def read(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise StoreNotFoundError(f"{target} not found")
        async with aiofiles.open(target, "rb") as f:
            return await f.read()


def build_store(s) -> DurableStore:
    if s.store_backend == "local":
        return LocalDirectoryStore(s.local_store_root)
    if s.store_backend == "webhdfs":
        return WebHdfsStore(s.hdfs_base_url, timeout=s.store_timeout)
    raise ValueError(f"Unsupported STORE_BACKEND: {s.store_backend}")
