import asyncio

import httpx
import pytest

from app.consumer import make_handler, should_requeue
from app.errors import (
    ErrorCategory,
    ExtractionParseError,
    ProcessingError,
    StorageIOError,
    categorize,
)
from app.processor import ProcessingOutcome, Stage
from conftest import FakeMessage


class FixedProcessor:
    def __init__(self, outcome: ProcessingOutcome):
        self.outcome = outcome

    async def process(self, body: bytes) -> ProcessingOutcome:
        return self.outcome


def _failed(error: ProcessingError) -> ProcessingOutcome:
    return ProcessingOutcome(stage=Stage.FAILED, filename="a.pdf", error=error)


@pytest.mark.parametrize(
    "exc, category",
    [
        (asyncio.TimeoutError(), ErrorCategory.TIMEOUT),
        (httpx.ReadTimeout("slow"), ErrorCategory.TIMEOUT),
        (httpx.ConnectError("refused"), ErrorCategory.IO_ERROR),
        (FileNotFoundError("gone"), ErrorCategory.IO_ERROR),
        (MemoryError(), ErrorCategory.RESOURCE_EXHAUSTION),
        (ValueError("odd"), ErrorCategory.UNKNOWN),
    ],
)
def test_categorize_foreign_exceptions(exc, category):
    assert categorize(exc).category is category


def test_categorize_keeps_processing_errors():
    err = ExtractionParseError("bad pdf")
    assert categorize(err) is err


def test_requeue_decision():
    retriable = _failed(StorageIOError("hdfs down"))
    permanent = _failed(ExtractionParseError("bad pdf"))

    assert should_requeue(retriable, redelivered=False, requeue_on_failure=True)
    assert not should_requeue(retriable, redelivered=True, requeue_on_failure=True)
    assert not should_requeue(retriable, redelivered=False, requeue_on_failure=False)
    assert not should_requeue(permanent, redelivered=False, requeue_on_failure=True)


@pytest.mark.asyncio
async def test_success_and_skip_are_acked():
    for stage in (Stage.COMPLETED, Stage.SKIPPED):
        handler = make_handler(FixedProcessor(ProcessingOutcome(stage=stage)))
        msg = FakeMessage(b"{}")
        await handler(msg)
        assert msg.outcome == "ack"


@pytest.mark.asyncio
async def test_retriable_failure_is_requeued_once():
    handler = make_handler(FixedProcessor(_failed(StorageIOError("hdfs down"))))

    first = FakeMessage(b"{}", redelivered=False)
    await handler(first)
    assert first.outcome == "requeue"

    again = FakeMessage(b"{}", redelivered=True)
    await handler(again)
    assert again.outcome == "reject"


@pytest.mark.asyncio
async def test_permanent_failure_is_rejected():
    handler = make_handler(FixedProcessor(_failed(ExtractionParseError("bad pdf"))))
    msg = FakeMessage(b"{}")
    await handler(msg)
    assert msg.outcome == "reject"
