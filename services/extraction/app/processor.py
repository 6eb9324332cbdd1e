"""
Per-document processing.

One inbound envelope goes through:
  RECEIVED -> DOWNLOADING -> EXTRACTING -> CHUNKING -> PERSISTING -> COMPLETED
with SKIPPED on a dedup hit (or when a reset overtook the attempt) and FAILED
from any working state.

DocumentProcessor.process() never raises: every failure is categorized,
logged, recorded on the ProcessingRecord and returned as a FAILED outcome so
the consumer can decide between ack, requeue and reject.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from common.events import OutboundMessage
from .errors import EmptyExtractionError, ErrorCategory, ProcessingError, categorize
from .extractor import Extractor, guess_content_type
from .sources import Downloader, InboundEnvelope, filename_from_reference, parse_envelope
from .splitter import ChunkSplitter, TextChunk
from .storage import DurableStore, join_path, safe_filename
from .tracker import DedupTracker, ProcessingRecord, ProcessingRegistry, RecordStatus, document_key

logger = logging.getLogger("extraction.processor")

EMIT_DOCUMENT = "document"
EMIT_CHUNKS = "chunks"

Publish = Callable[[OutboundMessage], Awaitable[None]]


class Stage(str, Enum):
    RECEIVED = "RECEIVED"
    DOWNLOADING = "DOWNLOADING"
    EXTRACTING = "EXTRACTING"
    CHUNKING = "CHUNKING"
    PERSISTING = "PERSISTING"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ProcessingOutcome:
    stage: Stage
    reference: Optional[str] = None
    filename: Optional[str] = None
    chunk_count: int = 0
    output_url: Optional[str] = None
    error: Optional[ProcessingError] = None

    @property
    def ok(self) -> bool:
        return self.stage in (Stage.COMPLETED, Stage.SKIPPED)

    @property
    def retriable(self) -> bool:
        return self.error is not None and self.error.retriable


def _remove_after_thread(staging: str, fut: asyncio.Future) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        logger.info("Abandoned extraction for %s ended with: %s", staging, fut.exception())
    shutil.rmtree(staging, ignore_errors=True)
    logger.info("Removed staging %s after abandoned extraction exited", staging)


@dataclass
class _Persisted:
    path: str
    url: str
    text_length: int
    # one stored url per chunk object in chunk emit mode
    chunk_urls: List[str]


class DocumentProcessor:
    def __init__(
        self,
        *,
        store: DurableStore,
        extractor: Extractor,
        splitter: ChunkSplitter,
        downloader: Downloader,
        tracker: DedupTracker,
        registry: ProcessingRegistry,
        publish: Publish,
        processed_files_path: str = "/processed_files",
        emit_mode: str = EMIT_DOCUMENT,
        download_timeout: float = 60.0,
        extraction_timeout: float = 120.0,
        staging_dir: Optional[str] = None,
    ) -> None:
        if emit_mode not in (EMIT_DOCUMENT, EMIT_CHUNKS):
            raise ValueError(f"Unsupported EMIT_MODE: {emit_mode}")
        self.store = store
        self.extractor = extractor
        self.splitter = splitter
        self.downloader = downloader
        self.tracker = tracker
        self.registry = registry
        self.publish = publish
        self.processed_files_path = processed_files_path
        self.emit_mode = emit_mode
        self.download_timeout = download_timeout
        self.extraction_timeout = extraction_timeout
        self.staging_dir = staging_dir or None
        self._emitters: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------
    async def process(self, body: bytes) -> ProcessingOutcome:
        try:
            envelope = parse_envelope(body)
        except ProcessingError as e:
            logger.error("Rejected message [%s]: %s", e.category.value, e.message)
            return ProcessingOutcome(stage=Stage.FAILED, error=e)

        reference = envelope.url
        filename = filename_from_reference(reference)
        key = document_key(reference)
        self.registry.set_stream_names(envelope.input_stream, envelope.output_stream)

        if self.tracker.contains(key):
            logger.info("File already processed, skipping: %s", filename)
            return ProcessingOutcome(stage=Stage.SKIPPED, reference=reference, filename=filename)

        logger.info("Processing new file: %s (source=%s)", filename, envelope.type.value)
        generation = self.registry.put(ProcessingRecord(
            filename=filename,
            reference=reference,
            chunk_size_config=self.splitter.chunk_size_bytes,
            content_type=guess_content_type(filename) or "application/octet-stream",
            input_stream=self.registry.input_stream,
            output_stream=self.registry.output_stream,
        ))

        staging = None
        extraction = None
        stage = Stage.RECEIVED
        try:
            if self.staging_dir:
                os.makedirs(self.staging_dir, exist_ok=True)
            staging = tempfile.mkdtemp(prefix="extract-", dir=self.staging_dir)
            stage = Stage.DOWNLOADING
            local_file = await asyncio.wait_for(
                self.downloader.fetch(envelope, staging), self.download_timeout
            )
            file_size = os.path.getsize(local_file)

            stage = Stage.EXTRACTING
            extraction = asyncio.ensure_future(
                asyncio.to_thread(self.extractor.extract, local_file, guess_content_type(filename))
            )
            # shielded: a timeout stops the wait, the thread itself runs on
            pages = await asyncio.wait_for(asyncio.shield(extraction), self.extraction_timeout)
            if not any(p and p.strip() for p in pages):
                raise EmptyExtractionError(f"Extracted text is empty for file: {filename}")

            stage = Stage.CHUNKING
            chunks = await asyncio.to_thread(self.splitter.split, pages)

            stage = Stage.PERSISTING
            persisted = await self._persist(filename, chunks)
            if not self.registry.is_current(generation):
                return await self._discard(filename, reference, persisted)
            messages = self._outbound(envelope, persisted, chunks)

            # the first message is part of the attempt; a failed publish leaves the
            # reference unmarked so a redelivery can complete it
            await self.publish(messages[0])
        except Exception as e:
            err = categorize(e)
            logger.error(
                "Failed to process %s during %s [%s]: %s",
                filename, stage.value, err.category.value, err.message,
                exc_info=err.category is ErrorCategory.UNKNOWN,
            )
            self.registry.update(
                filename,
                generation=generation,
                status=RecordStatus.FAILED,
                error_category=err.category.value,
                error_message=err.message,
            )
            return ProcessingOutcome(stage=Stage.FAILED, reference=reference, filename=filename, error=err)
        finally:
            self._remove_staging(staging, extraction)

        # no await between the record update and the dedup mark: a reset lands
        # either before both or after both
        completed = self.registry.update(
            filename,
            generation=generation,
            status=RecordStatus.COMPLETED,
            chunk_count=len(chunks),
            file_size_bytes=file_size,
            output_url=persisted.url,
        )
        if completed is None:
            return await self._discard(filename, reference, persisted)
        self.tracker.mark_processed(key)
        if len(messages) > 1:
            self._emit_in_background(filename, messages[1:])

        logger.info("Successfully processed %s -> %s (%s chunks)", filename, persisted.url, len(chunks))
        return ProcessingOutcome(
            stage=Stage.COMPLETED,
            reference=reference,
            filename=filename,
            chunk_count=len(chunks),
            output_url=persisted.url,
        )

    @staticmethod
    def _remove_staging(staging: Optional[str], extraction: Optional[asyncio.Future]) -> None:
        if not staging:
            return
        if extraction is not None and not extraction.done():
            # a worker thread cannot be interrupted; the parser may still hold the file
            logger.warning("Extraction thread abandoned after timeout; %s is removed once it exits", staging)
            extraction.add_done_callback(lambda fut: _remove_after_thread(staging, fut))
            return
        shutil.rmtree(staging, ignore_errors=True)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    async def _persist(self, filename: str, chunks: List[TextChunk]) -> _Persisted:
        name = safe_filename(filename)
        if self.emit_mode == EMIT_CHUNKS:
            directory = join_path(self.processed_files_path, name)
            urls = []
            for chunk in chunks:
                path = join_path(directory, f"chunk-{chunk.index:04d}.txt")
                await self.store.write(path, chunk.text.encode("utf-8"))
                urls.append(self.store.url_for(path))
            text_length = sum(len(c.text) for c in chunks)
            return _Persisted(path=directory, url=self.store.url_for(directory),
                              text_length=text_length, chunk_urls=urls)

        text = "\n\n".join(c.text for c in chunks)
        path = join_path(self.processed_files_path, name + ".txt")
        await self.store.write(path, text.encode("utf-8"))
        logger.info("Text file written to store: %s", path)
        return _Persisted(path=path, url=self.store.url_for(path), text_length=len(text), chunk_urls=[])

    async def _discard(self, filename: str, reference: str, persisted: _Persisted) -> ProcessingOutcome:
        """
        The registry was reset while this attempt was in flight: keep no trace
        of it, unless a newer attempt for the same file already owns the output.
        """
        logger.warning("Processing state was reset while %s was in flight; discarding its output", filename)
        if self.registry.get(filename) is None:
            try:
                await self.store.delete(persisted.path, recursive=True)
            except ProcessingError as e:
                logger.warning("Could not remove stale output %s: %s", persisted.path, e)
        return ProcessingOutcome(stage=Stage.SKIPPED, reference=reference, filename=filename)

    # -------------------------------------------------------------------------
    # Outbound messages
    # -------------------------------------------------------------------------
    def _outbound(self, envelope: InboundEnvelope, persisted: _Persisted,
                  chunks: List[TextChunk]) -> List[OutboundMessage]:
        if self.emit_mode == EMIT_DOCUMENT:
            return [self._message(envelope, persisted.url, persisted.text_length)]

        messages = []
        for chunk, url in zip(chunks, persisted.chunk_urls):
            msg = self._message(envelope, url, len(chunk.text))
            msg.headers["chunkIndex"] = chunk.index
            msg.headers["totalChunks"] = chunk.total
            messages.append(msg)
        return messages

    @staticmethod
    def _message(envelope: InboundEnvelope, url: str, text_length: int) -> OutboundMessage:
        body = {
            "type": envelope.type.value,
            "url": url,
            "processed": True,
            "originalFile": envelope.url,
        }
        if envelope.input_stream:
            body["inputStream"] = envelope.input_stream
        if envelope.output_stream:
            body["outputStream"] = envelope.output_stream
        headers = {
            "originalFile": envelope.url,
            "processedFileUrl": url,
            "extractedTextLength": text_length,
        }
        return OutboundMessage(body=body, headers=headers)

    def _emit_in_background(self, filename: str, messages: List[OutboundMessage]) -> None:
        task = asyncio.create_task(self._emit_all(filename, messages), name=f"emit-{filename}")
        self._emitters.add(task)
        task.add_done_callback(self._emitters.discard)

    async def _emit_all(self, filename: str, messages: List[OutboundMessage]) -> None:
        # sequential, so chunk messages leave in index order
        for msg in messages:
            try:
                await self.publish(msg)
            except Exception as e:
                logger.error(
                    "Failed to emit chunk %s/%s for %s: %s",
                    msg.headers.get("chunkIndex"), msg.headers.get("totalChunks"), filename, e,
                )
                return

    async def drain(self) -> None:
        """Wait for background chunk emission to finish."""
        if self._emitters:
            await asyncio.gather(*list(self._emitters), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------
    @classmethod
    def from_settings(cls, s, *, store: DurableStore, extractor: Extractor, tracker: DedupTracker,
                      registry: ProcessingRegistry, publish: Publish,
                      downloader: Optional[Downloader] = None) -> "DocumentProcessor":
        return cls(
            store=store,
            extractor=extractor,
            splitter=ChunkSplitter.from_settings(s),
            downloader=downloader or Downloader(
                timeout=s.download_timeout,
                max_bytes=s.max_file_size_bytes,
                s3_endpoint=s.s3_endpoint,
                s3_region=s.s3_region,
                s3_access_key=s.s3_access_key,
                s3_secret_key=s.s3_secret_key,
            ),
            tracker=tracker,
            registry=registry,
            publish=publish,
            processed_files_path=s.processed_files_path,
            emit_mode=s.emit_mode,
            download_timeout=s.download_timeout,
            extraction_timeout=s.extraction_timeout,
            staging_dir=s.staging_dir,
        )
