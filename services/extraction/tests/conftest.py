"""
Shared fakes for the extraction service tests.

- MemoryTransport / MemoryBinding: an in-memory queue with the same
  consume/pause/settle surface as the AMQP transport
- StubExtractor: returns fixed page texts (or raises) for any staged file
- StubS3Session: aioboto3-shaped session serving objects from a dict
- test_settings: isolated Settings pointing at tmp_path
"""

import asyncio
import json
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from botocore.exceptions import ClientError

from common.config import Settings
from common.events import OutboundMessage
from app.processor import DocumentProcessor
from app.splitter import ChunkSplitter
from app.sources import Downloader
from app.storage import LocalDirectoryStore
from app.tracker import DedupTracker, ProcessingRegistry


# -----------------------------------------------------------------------------
# In-memory transport
# -----------------------------------------------------------------------------
class FakeMessage:
    def __init__(self, body: bytes, redelivered: bool = False, transport: "MemoryTransport" = None):
        self.body = body
        self.redelivered = redelivered
        self._transport = transport
        self.outcome: Optional[str] = None

    async def ack(self):
        self.outcome = "ack"
        self._settle()

    async def nack(self, requeue: bool = True):
        self.outcome = "requeue" if requeue else "reject"
        self._settle()
        if requeue and self._transport is not None:
            self._transport.enqueue(self.body, redelivered=True)

    async def reject(self, requeue: bool = False):
        await self.nack(requeue=requeue)

    def _settle(self):
        if self._transport is not None:
            self._transport.settled.append(self)


class MemoryBinding:
    def __init__(self, name: str, transport: "MemoryTransport", handler: Callable):
        self.name = name
        self.transport = transport
        self.handler = handler
        self.running = False
        self.calls: List[str] = []
        self._task: Optional[asyncio.Task] = None

    async def resume(self):
        self.calls.append("resume")
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._deliver())

    async def pause(self):
        self.calls.append("pause")
        self.running = False
        if self._task is not None:
            # deliveries already in the handler finish first
            await self._task
            self._task = None

    async def status(self):
        return "running" if self.running else "stopped"

    async def _deliver(self):
        while self.running:
            msg = self.transport.take()
            if msg is None:
                await asyncio.sleep(0.01)
                continue
            await self.handler(msg)


class MemoryTransport:
    mode = "stream"

    def __init__(self):
        self._lock = threading.Lock()
        self._queue = deque()
        self.published: List[OutboundMessage] = []
        self.settled: List[FakeMessage] = []
        self.bindings: List[MemoryBinding] = []
        self.connected = False

    async def connect(self):
        self.connected = True

    async def close(self):
        for b in self.bindings:
            await b.pause()
        self.connected = False

    def enqueue(self, body, redelivered: bool = False) -> FakeMessage:
        if isinstance(body, dict):
            body = json.dumps(body).encode("utf-8")
        msg = FakeMessage(body, redelivered, self)
        with self._lock:
            self._queue.append(msg)
        return msg

    def take(self) -> Optional[FakeMessage]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def depth(self) -> int:
        with self._lock:
            return len(self._queue)

    async def publish(self, message: OutboundMessage):
        self.published.append(message)

    def binding(self, name: str, handler: Callable) -> MemoryBinding:
        b = MemoryBinding(name, self, handler)
        self.bindings.append(b)
        return b

    async def pending(self):
        return {"mode": self.mode, "queueDepth": self.depth(), "status": "ok"}


# -----------------------------------------------------------------------------
# Extraction stub
# -----------------------------------------------------------------------------
class StubExtractor:
    def __init__(self, pages: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.pages = pages if pages is not None else ["Hello world. This is a test document."]
        self.error = error
        self.calls: List[str] = []

    def extract(self, path: str, content_type: Optional[str] = None) -> List[str]:
        self.calls.append(path)
        if self.error is not None:
            raise self.error
        return list(self.pages)


# -----------------------------------------------------------------------------
# S3 stub
# -----------------------------------------------------------------------------
class _S3Body:
    def __init__(self, data: bytes):
        self._data = data

    async def read(self) -> bytes:
        return self._data


class _S3Client:
    def __init__(self, session: "StubS3Session"):
        self._session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get_object(self, Bucket: str, Key: str):
        self._session.calls.append((Bucket, Key))
        if (Bucket, Key) not in self._session.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "not found"}}, "GetObject")
        data = self._session.objects[(Bucket, Key)]
        return {"Body": _S3Body(data), "ContentLength": len(data)}


class StubS3Session:
    """Stands in for aioboto3.Session: serves objects from a dict keyed by (bucket, key)."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.calls = []
        self.client_kwargs = []

    def client(self, service_name: str, **kwargs):
        self.client_kwargs.append((service_name, kwargs))
        return _S3Client(self)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def file_envelope(path: Path, **extra) -> dict:
    env = {"type": "FILE", "url": path.resolve().as_uri()}
    env.update(extra)
    return env


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll a condition from a sync test while the app loop works in its own thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        store_backend="local",
        local_store_root=str(tmp_path / "store"),
        staging_dir=str(tmp_path / "staging"),
        startup_stop_delay=0.05,
        control_settle_timeout=2.0,
        chunk_size_bytes=256 * 1024,
        standalone_input_dir=str(tmp_path / "in"),
        standalone_output_dir=str(tmp_path / "out"),
        standalone_error_dir=str(tmp_path / "err"),
        standalone_processed_dir=str(tmp_path / "done"),
        standalone_poll_interval=0.05,
    )


@pytest.fixture
def docs_dir(tmp_path):
    d = tmp_path / "docs"
    d.mkdir()
    return d


@pytest.fixture
def transport():
    return MemoryTransport()


@pytest.fixture
def make_processor(test_settings, transport):
    """
    Build a DocumentProcessor wired to a local store and the memory transport.
    Returns (processor, tracker, registry, store).
    """
    def _make(extractor=None, **overrides):
        s = test_settings
        store = LocalDirectoryStore(s.local_store_root)
        tracker = DedupTracker()
        registry = ProcessingRegistry()
        kwargs = dict(
            store=store,
            extractor=extractor or StubExtractor(),
            splitter=ChunkSplitter.from_settings(s),
            downloader=Downloader(timeout=5.0, max_bytes=s.max_file_size_bytes),
            tracker=tracker,
            registry=registry,
            publish=transport.publish,
            processed_files_path=s.processed_files_path,
            staging_dir=s.staging_dir,
        )
        kwargs.update(overrides)
        return DocumentProcessor(**kwargs), tracker, registry, store

    return _make
