"""
Inbound delivery handler: run the processor and settle the delivery.

- COMPLETED / SKIPPED -> ack
- FAILED, retriable, requeue enabled, first delivery -> nack(requeue=True)
- any other FAILED -> reject(requeue=False) (dead-lettered if the broker is set up for it)
"""

import logging
from typing import Awaitable, Callable

from aio_pika.abc import AbstractIncomingMessage

from .processor import DocumentProcessor, ProcessingOutcome

logger = logging.getLogger("extraction.consumer")


def should_requeue(outcome: ProcessingOutcome, redelivered: bool, requeue_on_failure: bool) -> bool:
    return requeue_on_failure and outcome.retriable and not redelivered


def make_handler(
    processor: DocumentProcessor, *, requeue_on_failure: bool = True
) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
    async def handle(message: AbstractIncomingMessage) -> None:
        outcome = await processor.process(message.body)
        if outcome.ok:
            await message.ack()
            return

        if should_requeue(outcome, bool(message.redelivered), requeue_on_failure):
            logger.warning("Requeueing %s after %s", outcome.filename, outcome.error.category.value)
            await message.nack(requeue=True)
        else:
            logger.warning(
                "Rejecting %s after %s (redelivered=%s)",
                outcome.filename or "message", outcome.error.category.value, message.redelivered,
            )
            await message.reject(requeue=False)

    return handle
