"""
Failure taxonomy for document processing.

Every failure that can end a processing attempt is expressed as a
ProcessingError subclass carrying an ErrorCategory. The processor catches
them at its boundary and turns them into a FAILED outcome; categorize() maps
foreign exceptions (httpx, OS, timeouts) onto the same categories.
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorCategory(str, Enum):
    UNSUPPORTED_SOURCE_TYPE = "UNSUPPORTED_SOURCE_TYPE"
    MISSING_REFERENCE = "MISSING_REFERENCE"
    INVALID_ENVELOPE = "INVALID_ENVELOPE"
    EXTRACTION_PARSE_ERROR = "EXTRACTION_PARSE_ERROR"
    EXTRACTION_EMPTY_RESULT = "EXTRACTION_EMPTY_RESULT"
    IO_ERROR = "IO_ERROR"
    RESOURCE_EXHAUSTION = "RESOURCE_EXHAUSTION"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


# Categories worth a transport-level redelivery: the same input may succeed later.
RETRIABLE_CATEGORIES = frozenset({
    ErrorCategory.IO_ERROR,
    ErrorCategory.TIMEOUT,
    ErrorCategory.UNKNOWN,
})


class ProcessingError(Exception):
    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def retriable(self) -> bool:
        return self.category in RETRIABLE_CATEGORIES


class UnsupportedSourceTypeError(ProcessingError):
    category = ErrorCategory.UNSUPPORTED_SOURCE_TYPE


class MissingReferenceError(ProcessingError):
    category = ErrorCategory.MISSING_REFERENCE


class InvalidEnvelopeError(ProcessingError):
    category = ErrorCategory.INVALID_ENVELOPE


class ExtractionParseError(ProcessingError):
    category = ErrorCategory.EXTRACTION_PARSE_ERROR


class EmptyExtractionError(ProcessingError):
    category = ErrorCategory.EXTRACTION_EMPTY_RESULT


class StorageIOError(ProcessingError):
    category = ErrorCategory.IO_ERROR


class ResourceExhaustionError(ProcessingError):
    category = ErrorCategory.RESOURCE_EXHAUSTION


class ProcessingTimeoutError(ProcessingError):
    category = ErrorCategory.TIMEOUT


def categorize(exc: BaseException) -> ProcessingError:
    """
    Wrap any exception into a ProcessingError.
    ProcessingErrors pass through untouched.
    """
    if isinstance(exc, ProcessingError):
        return exc
    # httpx.TimeoutException must be checked before the broader httpx.HTTPError
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ProcessingTimeoutError(f"timed out: {exc}", cause=exc)
    if isinstance(exc, MemoryError):
        return ResourceExhaustionError("out of memory", cause=exc)
    if isinstance(exc, (httpx.HTTPError, OSError)):
        return StorageIOError(f"I/O failure: {exc}", cause=exc)
    return ProcessingError(f"unexpected failure: {exc!r}", cause=exc)
