import asyncio
import json
import threading
import time
from pathlib import Path

import pytest

from app.errors import ErrorCategory, ExtractionParseError
from app.processor import EMIT_CHUNKS, Stage
from app.service import ProcessingService
from app.sources import Downloader
from app.tracker import RecordStatus, document_key
from conftest import StubExtractor, StubS3Session, file_envelope


def _body(envelope: dict) -> bytes:
    return json.dumps(envelope).encode("utf-8")


def _long_pages(n: int = 2000):
    return ["".join(f"Paragraph {i} describes the extraction service in detail.\n" for i in range(n))]


@pytest.mark.asyncio
async def test_doc_42_is_processed_marked_and_emitted(make_processor, transport, docs_dir):
    """
    doc-42.pdf at the default 256 KB chunk setting: one more processed file,
    at least one chunk, and the tracker knows its key.
    """
    pdf = docs_dir / "doc-42.pdf"
    pdf.write_bytes(b"%PDF-1.4 fake body")
    processor, tracker, registry, store = make_processor(
        extractor=StubExtractor(pages=["Page one of doc 42.", "Page two of doc 42."])
    )
    env = file_envelope(pdf, inputStream="files-in", outputStream="text-out")
    before = len(registry.all())

    outcome = await processor.process(_body(env))

    assert outcome.stage is Stage.COMPLETED
    assert outcome.chunk_count >= 1
    records = registry.all()
    assert len(records) == before + 1
    record = registry.get("doc-42.pdf")
    assert record.status is RecordStatus.COMPLETED
    assert record.chunk_count >= 1
    assert record.chunk_size_config == 256 * 1024
    assert record.file_size_bytes == len(b"%PDF-1.4 fake body")
    assert record.content_type == "application/pdf"
    assert tracker.contains(document_key(env["url"]))

    stored = (await store.read("/processed_files/doc-42.pdf.txt")).decode("utf-8")
    assert "Page one of doc 42." in stored and "Page two of doc 42." in stored

    assert len(transport.published) == 1
    msg = transport.published[0]
    assert msg.body["type"] == "FILE"
    assert msg.body["processed"] is True
    assert msg.body["originalFile"] == env["url"]
    assert msg.body["url"] == store.url_for("/processed_files/doc-42.pdf.txt")
    assert msg.body["inputStream"] == "files-in"
    assert msg.headers["processedFileUrl"] == msg.body["url"]
    assert msg.headers["extractedTextLength"] == len(stored)
    print("[TEST] doc-42.pdf processed ✅")


@pytest.mark.asyncio
async def test_duplicate_reference_is_skipped(make_processor, transport, docs_dir):
    doc = docs_dir / "a.txt"
    doc.write_text("Some text.", encoding="utf-8")
    extractor = StubExtractor()
    processor, tracker, registry, _ = make_processor(extractor=extractor)

    first = await processor.process(_body(file_envelope(doc)))
    second = await processor.process(_body(file_envelope(doc)))

    assert first.stage is Stage.COMPLETED
    assert second.stage is Stage.SKIPPED
    assert second.ok
    assert len(extractor.calls) == 1
    assert len(transport.published) == 1
    assert len(registry.all()) == 1


@pytest.mark.asyncio
async def test_failed_reference_is_reprocessed(make_processor, transport, docs_dir):
    doc = docs_dir / "broken.pdf"
    doc.write_bytes(b"%PDF-1.4")
    extractor = StubExtractor(error=ExtractionParseError("bad xref table"))
    processor, tracker, registry, _ = make_processor(extractor=extractor)
    env = file_envelope(doc)

    failed = await processor.process(_body(env))
    assert failed.stage is Stage.FAILED
    assert failed.error.category is ErrorCategory.EXTRACTION_PARSE_ERROR
    assert not failed.retriable
    record = registry.get("broken.pdf")
    assert record.status is RecordStatus.FAILED
    assert record.error_category == "EXTRACTION_PARSE_ERROR"
    assert not tracker.contains(document_key(env["url"]))
    assert transport.published == []

    # same reference again once the backend recovers
    extractor.error = None
    retried = await processor.process(_body(env))
    assert retried.stage is Stage.COMPLETED
    assert registry.get("broken.pdf").status is RecordStatus.COMPLETED
    assert tracker.contains(document_key(env["url"]))


@pytest.mark.asyncio
async def test_blank_extraction_is_a_soft_failure(make_processor, transport, docs_dir):
    doc = docs_dir / "scanned.pdf"
    doc.write_bytes(b"%PDF-1.4")
    processor, tracker, registry, _ = make_processor(extractor=StubExtractor(pages=["", "   \n"]))

    outcome = await processor.process(_body(file_envelope(doc)))

    assert outcome.stage is Stage.FAILED
    assert outcome.error.category is ErrorCategory.EXTRACTION_EMPTY_RESULT
    assert registry.get("scanned.pdf").status is RecordStatus.FAILED
    assert len(tracker) == 0
    assert transport.published == []


@pytest.mark.asyncio
async def test_invalid_envelopes_create_no_record(make_processor):
    processor, _, registry, _ = make_processor()

    unsupported = await processor.process(b'{"type": "FTP", "url": "ftp://host/a.pdf"}')
    missing = await processor.process(b'{"type": "FILE"}')

    assert unsupported.error.category is ErrorCategory.UNSUPPORTED_SOURCE_TYPE
    assert missing.error.category is ErrorCategory.MISSING_REFERENCE
    assert registry.all() == []


@pytest.mark.asyncio
async def test_missing_source_is_retriable_io_error(make_processor, docs_dir):
    processor, tracker, registry, _ = make_processor()
    outcome = await processor.process(_body(file_envelope(docs_dir / "vanished.txt")))

    assert outcome.stage is Stage.FAILED
    assert outcome.error.category is ErrorCategory.IO_ERROR
    assert outcome.retriable
    assert len(tracker) == 0


@pytest.mark.asyncio
async def test_extraction_timeout(make_processor, docs_dir):
    doc = docs_dir / "slow.txt"
    doc.write_text("slow", encoding="utf-8")

    class SlowExtractor(StubExtractor):
        def extract(self, path, content_type=None):
            time.sleep(0.5)
            return ["too late"]

    processor, tracker, _, _ = make_processor(extractor=SlowExtractor(), extraction_timeout=0.05)
    outcome = await processor.process(_body(file_envelope(doc)))

    assert outcome.error.category is ErrorCategory.TIMEOUT
    assert outcome.retriable
    assert len(tracker) == 0


@pytest.mark.asyncio
async def test_staging_is_removed_on_every_path(make_processor, test_settings, docs_dir):
    good = docs_dir / "good.txt"
    good.write_text("Fine.", encoding="utf-8")
    bad = docs_dir / "bad.txt"
    bad.write_text("Broken.", encoding="utf-8")

    ok_processor, _, _, _ = make_processor()
    await ok_processor.process(_body(file_envelope(good)))
    failing, _, _, _ = make_processor(extractor=StubExtractor(error=RuntimeError("boom")))
    outcome = await failing.process(_body(file_envelope(bad)))

    assert outcome.error.category is ErrorCategory.UNKNOWN
    assert list(Path(test_settings.staging_dir).iterdir()) == []


@pytest.mark.asyncio
async def test_publish_failure_leaves_reference_unmarked(make_processor, docs_dir):
    doc = docs_dir / "a.txt"
    doc.write_text("text", encoding="utf-8")

    async def broken_publish(message):
        raise ConnectionError("broker gone")

    processor, tracker, registry, _ = make_processor(publish=broken_publish)
    outcome = await processor.process(_body(file_envelope(doc)))

    assert outcome.stage is Stage.FAILED
    assert outcome.error.category is ErrorCategory.IO_ERROR
    assert registry.get("a.txt").status is RecordStatus.FAILED
    assert len(tracker) == 0


@pytest.mark.asyncio
async def test_chunk_mode_emits_every_chunk_in_order(make_processor, transport, docs_dir):
    doc = docs_dir / "long.txt"
    doc.write_text("placeholder", encoding="utf-8")
    processor, _, registry, store = make_processor(
        extractor=StubExtractor(pages=_long_pages()),
        emit_mode=EMIT_CHUNKS,
    )

    outcome = await processor.process(_body(file_envelope(doc)))
    await processor.drain()

    assert outcome.stage is Stage.COMPLETED
    assert outcome.chunk_count > 1
    assert len(transport.published) == outcome.chunk_count
    assert [m.headers["chunkIndex"] for m in transport.published] == list(range(outcome.chunk_count))
    assert all(m.headers["totalChunks"] == outcome.chunk_count for m in transport.published)

    first = await store.read("/processed_files/long.txt/chunk-0000.txt")
    assert first.decode("utf-8").startswith("Paragraph 0")
    assert registry.get("long.txt").output_url == store.url_for("/processed_files/long.txt")


@pytest.mark.asyncio
async def test_concurrent_documents(make_processor, transport, docs_dir):
    processor, tracker, registry, _ = make_processor()
    docs = []
    for i in range(5):
        p = docs_dir / f"doc-{i}.txt"
        p.write_text(f"Document {i}.", encoding="utf-8")
        docs.append(p)

    outcomes = await asyncio.gather(*(processor.process(_body(file_envelope(p))) for p in docs))

    assert all(o.stage is Stage.COMPLETED for o in outcomes)
    assert len(tracker) == 5
    assert len(transport.published) == 5


class GatedExtractor(StubExtractor):
    """Blocks inside extract() until the test opens the gate."""

    def __init__(self, pages=None):
        super().__init__(pages=pages)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def extract(self, path, content_type=None):
        self.entered.set()
        self.gate.wait(5)
        return super().extract(path, content_type)


@pytest.mark.asyncio
async def test_reset_during_inflight_document_leaves_no_trace(test_settings, transport, docs_dir):
    """
    A document still extracting when reset runs finishes without a record,
    a dedup key, an outbound message or stored text; the same reference is
    processed normally afterwards.
    """
    doc = docs_dir / "late.txt"
    doc.write_text("Finished after the reset.", encoding="utf-8")
    env = file_envelope(doc)
    extractor = GatedExtractor(pages=["Finished after the reset."])
    service = ProcessingService(test_settings, transport=transport, extractor=extractor)

    inflight = asyncio.create_task(service.processor.process(_body(env)))
    assert await asyncio.to_thread(extractor.entered.wait, 5)
    await service.reset()
    extractor.gate.set()
    outcome = await inflight

    assert outcome.stage is Stage.SKIPPED
    assert service.registry.all() == []
    assert not service.tracker.contains(document_key(env["url"]))
    assert transport.published == []
    assert not await service.store.exists("/processed_files/late.txt.txt")

    again = await service.processor.process(_body(env))
    assert again.stage is Stage.COMPLETED
    assert service.tracker.contains(document_key(env["url"]))
    assert service.registry.get("late.txt").status is RecordStatus.COMPLETED
    assert len(transport.published) == 1
    print("[TEST] reset during in-flight document ✅")


@pytest.mark.asyncio
async def test_abandoned_extraction_keeps_staging_until_its_thread_exits(make_processor, test_settings, docs_dir):
    doc = docs_dir / "stuck.txt"
    doc.write_text("stuck", encoding="utf-8")
    extractor = GatedExtractor()
    processor, tracker, _, _ = make_processor(extractor=extractor, extraction_timeout=0.05)

    outcome = await processor.process(_body(file_envelope(doc)))
    assert outcome.error.category is ErrorCategory.TIMEOUT
    assert len(tracker) == 0

    staging = Path(test_settings.staging_dir)
    # the parser thread still holds its staged file
    assert len(list(staging.iterdir())) == 1

    extractor.gate.set()
    for _ in range(250):
        if not list(staging.iterdir()):
            break
        await asyncio.sleep(0.02)
    assert list(staging.iterdir()) == []


@pytest.mark.asyncio
async def test_s3_envelope_is_downloaded_and_processed(make_processor, transport):
    session = StubS3Session({("docs", "in/report.txt"): b"Report stored in MinIO."})
    processor, tracker, registry, _ = make_processor(
        extractor=StubExtractor(pages=["Report stored in MinIO."]),
        downloader=Downloader(s3_session=session),
    )

    outcome = await processor.process(b'{"type": "S3", "bucket": "docs", "key": "in/report.txt"}')

    assert outcome.stage is Stage.COMPLETED
    assert session.calls == [("docs", "in/report.txt")]
    record = registry.get("report.txt")
    assert record.reference == "s3://docs/in/report.txt"
    assert record.file_size_bytes == len(b"Report stored in MinIO.")
    assert tracker.contains(document_key("s3://docs/in/report.txt"))
    msg = transport.published[0]
    assert msg.body["type"] == "S3"
    assert msg.body["originalFile"] == "s3://docs/in/report.txt"
