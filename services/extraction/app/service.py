"""
Process root.

ProcessingService owns everything that lives for the whole process: the
control state, the dedup tracker, the record registry, the durable store,
the processor and the binding controller for the configured transport. The
HTTP layer only ever talks to this object.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.events import AmqpTransport
from .binding import RUNNING, STOPPED, ConsumptionBindingController
from .consumer import make_handler
from .errors import ProcessingError
from .extractor import DocumentExtractor, Extractor
from .processor import EMIT_CHUNKS, DocumentProcessor
from .sources import Downloader
from .standalone import DirectoryTransport
from .state import ProcessingControlState, StateSnapshot, ToggleResult
from .storage import (
    DurableStore,
    LocalDirectoryStore,
    StoreNotFoundError,
    build_store,
    join_path,
    safe_filename,
)
from .tracker import DedupTracker, ProcessingRegistry

logger = logging.getLogger("extraction.service")

CONSUMING = "CONSUMING"
IDLE = "IDLE"
UNKNOWN = "UNKNOWN"

_CONSUMER_STATUS = {RUNNING: CONSUMING, STOPPED: IDLE}


@dataclass(frozen=True)
class ResetResult:
    store_cleared: bool
    directory_recreated: bool


def build_transport(s):
    if s.mode == "standalone":
        return DirectoryTransport(
            s.standalone_input_dir,
            s.standalone_processed_dir,
            s.standalone_error_dir,
            s.standalone_output_dir,
            poll_interval=s.standalone_poll_interval,
        )
    if s.mode == "stream":
        return AmqpTransport(s.rabbitmq_url, s.input_queue, s.output_queue, prefetch_count=s.prefetch_count)
    raise ValueError(f"Unsupported PROCESSOR_MODE: {s.mode}")


def build_default_store(s) -> DurableStore:
    # standalone mode keeps processed text next to the other standalone directories
    if s.mode == "standalone":
        return LocalDirectoryStore(s.standalone_output_dir)
    return build_store(s)


class ProcessingService:
    def __init__(
        self,
        settings,
        *,
        transport=None,
        store: Optional[DurableStore] = None,
        extractor: Optional[Extractor] = None,
        downloader: Optional[Downloader] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport if transport is not None else build_transport(settings)
        self.store = store if store is not None else build_default_store(settings)
        self.state = ProcessingControlState()
        self.tracker = DedupTracker()
        self.registry = ProcessingRegistry()
        self.processor = DocumentProcessor.from_settings(
            settings,
            store=self.store,
            extractor=extractor or DocumentExtractor(),
            tracker=self.tracker,
            registry=self.registry,
            publish=self.transport.publish,
            downloader=downloader,
        )
        self.binding = self.transport.binding(
            settings.binding_name,
            make_handler(self.processor, requeue_on_failure=settings.requeue_on_failure),
        )
        self.controller = ConsumptionBindingController(
            self.binding, self.state, startup_delay=settings.startup_stop_delay
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def startup(self) -> None:
        try:
            await self.transport.connect()
        except Exception as e:
            # the channel is reopened lazily on the first publish/resume
            logger.error("Transport not available at startup: %s", e)
        if not await self.store.mkdir(self.settings.processed_files_path):
            logger.warning("Could not create %s in the durable store", self.settings.processed_files_path)
        await self.controller.start()
        if self.settings.binding_auto_startup:
            # mirrors a transport that starts its consumers on its own;
            # the controller forces it back to stopped after the startup delay
            logger.info("Binding %s auto-started by transport", self.binding.name)
            await self.binding.resume()
        logger.info("Processing service ready (mode=%s, enabled=%s)", self.settings.mode, self.state.enabled)

    async def shutdown(self) -> None:
        await self.controller.close()
        try:
            await self.binding.pause()
        except Exception as e:
            logger.warning("Failed to pause binding on shutdown: %s", e)
        await self.processor.drain()
        await self.transport.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    # -------------------------------------------------------------------------
    # Control operations
    # -------------------------------------------------------------------------
    async def _settle(self) -> None:
        await self.controller.settle(self.settings.control_settle_timeout)

    async def start_processing(self) -> bool:
        changed = self.state.start()
        if changed:
            await self._settle()
        return changed

    async def stop_processing(self) -> bool:
        changed = self.state.stop()
        if changed:
            await self._settle()
        return changed

    async def toggle(self) -> ToggleResult:
        result = self.state.toggle()
        await self._settle()
        return result

    async def reset(self) -> ResetResult:
        """
        Stop, forget everything processed so far and recreate the store
        output directory. Delete always runs before mkdir.
        """
        logger.info("Resetting processing state")
        await self.stop_processing()
        self.registry.clear()
        self.tracker.clear()

        path = self.settings.processed_files_path
        try:
            cleared = await self.store.delete(path, recursive=True)
        except ProcessingError as e:
            logger.error("Failed to clear %s: %s", path, e)
            cleared = False
        try:
            recreated = await self.store.mkdir(path)
        except ProcessingError as e:
            logger.error("Failed to recreate %s: %s", path, e)
            recreated = False
        logger.info("Reset complete (store_cleared=%s, directory_recreated=%s)", cleared, recreated)
        return ResetResult(store_cleared=cleared, directory_recreated=recreated)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def snapshot(self) -> StateSnapshot:
        return self.state.state()

    async def consumer_status(self) -> str:
        return _CONSUMER_STATUS.get(await self.controller.status(), UNKNOWN)

    async def pending(self) -> Dict[str, Any]:
        return await self.transport.pending()

    async def health(self) -> Dict[str, Any]:
        try:
            directory_exists = await self.store.exists(self.settings.processed_files_path)
        except ProcessingError as e:
            logger.warning("Store health check failed: %s", e)
            directory_exists = False
        return {
            "status": "ok" if directory_exists else "DEGRADED",
            "service": self.settings.service_name,
            "mode": self.settings.mode,
            "processingState": self.snapshot().status,
            "consumerRunning": await self.controller.is_running(),
            "storeDirectoryExists": directory_exists,
            "processedCount": len(self.tracker),
        }

    async def processed_text(self, filename: str) -> str:
        """Stored text for a processed file; raises StoreNotFoundError if absent."""
        name = safe_filename(filename)
        base = self.settings.processed_files_path
        if self.settings.emit_mode != EMIT_CHUNKS:
            data = await self.store.read(join_path(base, name + ".txt"))
            return data.decode("utf-8")

        record = self.registry.get(filename)
        if record is None or record.chunk_count == 0:
            raise StoreNotFoundError(f"No stored chunks for {filename}")
        parts = []
        for i in range(record.chunk_count):
            data = await self.store.read(join_path(base, name, f"chunk-{i:04d}.txt"))
            parts.append(data.decode("utf-8"))
        return "\n\n".join(parts)
