"""
Standalone (directory) mode.

Instead of a broker queue, documents are picked up from an input directory:
- every regular file in STANDALONE_INPUT_DIR becomes one FILE envelope
- ack moves the file to STANDALONE_PROCESSED_DIR
- reject moves it to STANDALONE_ERROR_DIR
- nack(requeue=True) leaves it in place; the next poll delivers it as redelivered
- outbound messages are appended to <STANDALONE_OUTPUT_DIR>/outbox.jsonl

DirectoryBinding is a ConsumptionController, so the control plane pauses the
poller exactly like a queue consumer: while stopped, files stay where they are.
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiofiles

from common.events import OutboundMessage, now_iso

logger = logging.getLogger("extraction.standalone")

OUTBOX_NAME = "outbox.jsonl"


class DirectoryMessage:
    """Delivery wrapper for one input file (same settle API as an AMQP message)."""

    def __init__(self, path: Path, redelivered: bool, transport: "DirectoryTransport"):
        self.path = path
        self.redelivered = redelivered
        self._transport = transport
        self.body = json.dumps({"type": "FILE", "url": path.resolve().as_uri()}).encode("utf-8")
        self.settled: Optional[str] = None

    async def ack(self) -> None:
        self._transport._move(self.path, self._transport.processed_dir)
        self.settled = "ack"

    async def nack(self, requeue: bool = True) -> None:
        if requeue:
            self._transport._redelivered.add(self.path.name)
            self.settled = "requeue"
        else:
            await self.reject(requeue=False)

    async def reject(self, requeue: bool = False) -> None:
        if requeue:
            await self.nack(requeue=True)
            return
        self._transport._move(self.path, self._transport.error_dir)
        self.settled = "reject"


class DirectoryTransport:
    mode = "standalone"

    def __init__(self, input_dir: str, processed_dir: str, error_dir: str, output_dir: str,
                 *, poll_interval: float = 5.0):
        self.input_dir = Path(input_dir)
        self.processed_dir = Path(processed_dir)
        self.error_dir = Path(error_dir)
        self.output_dir = Path(output_dir)
        self.poll_interval = poll_interval
        self._redelivered: Set[str] = set()
        self._bindings: List["DirectoryBinding"] = []

    @property
    def outbox_path(self) -> Path:
        return self.output_dir / OUTBOX_NAME

    async def connect(self) -> None:
        for d in (self.input_dir, self.processed_dir, self.error_dir, self.output_dir):
            d.mkdir(parents=True, exist_ok=True)
        logger.info("Standalone directories ready (input=%s output=%s)", self.input_dir, self.output_dir)

    async def close(self) -> None:
        for b in self._bindings:
            await b.shutdown()

    def binding(self, name: str, handler: Callable[[Any], Awaitable[None]]) -> "DirectoryBinding":
        b = DirectoryBinding(name, self, handler)
        self._bindings.append(b)
        return b

    async def publish(self, message: OutboundMessage) -> None:
        line = {
            "message_id": message.message_id,
            "timestamp": now_iso(),
            "headers": message.headers,
            "body": message.body,
        }
        self.output_dir.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.outbox_path, "a", encoding="utf-8") as f:
            await f.write(json.dumps(line, ensure_ascii=False) + "\n")
        logger.info("Outbound message %s appended to %s", message.message_id, self.outbox_path)

    def list_input(self) -> List[Path]:
        if not self.input_dir.is_dir():
            return []
        return sorted(
            p for p in self.input_dir.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )

    async def pending(self) -> Dict[str, Any]:
        try:
            files = [p.name for p in self.list_input()]
        except OSError as e:
            logger.warning("Could not list %s: %s", self.input_dir, e)
            return {"mode": self.mode, "count": -1, "status": "unavailable", "reason": str(e)}
        return {"mode": self.mode, "count": len(files), "files": files, "status": "ok"}

    def _move(self, path: Path, target_dir: Path) -> None:
        target_dir.mkdir(parents=True, exist_ok=True)
        self._redelivered.discard(path.name)
        if path.exists():
            shutil.move(str(path), str(target_dir / path.name))
            logger.info("Moved %s to %s", path.name, target_dir)


class DirectoryBinding:
    """
    Polls the input directory while running.

    pause() only raises a flag: the file being handled finishes and is
    settled, then the loop exits. resume() before that point simply clears the
    flag and keeps the same loop.
    """

    def __init__(self, name: str, transport: DirectoryTransport, handler: Callable[[Any], Awaitable[None]]):
        self.name = name
        self._transport = transport
        self._handler = handler
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def resume(self) -> None:
        self._stopping.clear()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll(), name=f"poll-{self.name}")
            logger.info("Binding %s polling %s", self.name, self._transport.input_dir)

    async def pause(self) -> None:
        self._stopping.set()

    async def status(self) -> str:
        running = self._task is not None and not self._task.done() and not self._stopping.is_set()
        return "running" if running else "stopped"

    async def shutdown(self) -> None:
        self._stopping.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, self._transport.poll_interval + 1)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

    async def _poll(self) -> None:
        while not self._stopping.is_set():
            for path in self._transport.list_input():
                if self._stopping.is_set():
                    break
                msg = DirectoryMessage(path, path.name in self._transport._redelivered, self._transport)
                try:
                    await self._handler(msg)
                except Exception:
                    logger.exception("Handler failed for %s", path.name)
                    if msg.settled is None:
                        await msg.reject(requeue=False)
            try:
                await asyncio.wait_for(self._stopping.wait(), self._transport.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Binding %s stopped polling", self.name)
