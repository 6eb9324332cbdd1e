"""
In-memory bookkeeping shared by the consumers and the HTTP surface:

- document_key(): stable SHA-256 key for a document reference
- DedupTracker: keys of references that completed successfully
- ProcessingRegistry: one ProcessingRecord per filename, plus last stream names

Both containers take a short internal lock per call; callers never need to
coordinate with each other.
"""

import hashlib
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set


def document_key(reference: str) -> str:
    """Hex SHA-256 of the reference's UTF-8 bytes."""
    return hashlib.sha256(reference.encode("utf-8")).hexdigest()


class RecordStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class ProcessingRecord:
    filename: str
    reference: str
    chunk_size_config: int
    status: RecordStatus = RecordStatus.PROCESSING
    file_size_bytes: int = 0
    chunk_count: int = 0
    content_type: Optional[str] = None
    processed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    input_stream: str = "default-input"
    output_stream: str = "default-output"
    output_url: Optional[str] = None
    error_category: Optional[str] = None
    error_message: Optional[str] = None


class DedupTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: Set[str] = set()

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def mark_processed(self, key: str) -> None:
        with self._lock:
            self._keys.add(key)

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class ProcessingRegistry:
    """
    Records keyed by filename. Reads return copies so API serialization never
    races with a consumer updating the same record.

    Every clear() starts a new generation. put() returns the generation the
    record was created in; an update() pinned to an older generation finds
    nothing, so an attempt that straddles a reset cannot write back.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, ProcessingRecord] = {}
        self._generation = 0
        self.input_stream = "default-input"
        self.output_stream = "default-output"

    def put(self, record: ProcessingRecord) -> int:
        with self._lock:
            self._records[record.filename] = record
            return self._generation

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def update(self, filename: str, *, generation: Optional[int] = None, **changes) -> Optional[ProcessingRecord]:
        with self._lock:
            if generation is not None and generation != self._generation:
                return None
            current = self._records.get(filename)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._records[filename] = updated
            return replace(updated)

    def get(self, filename: str) -> Optional[ProcessingRecord]:
        with self._lock:
            rec = self._records.get(filename)
            return replace(rec) if rec else None

    def all(self) -> List[ProcessingRecord]:
        with self._lock:
            return [replace(r) for r in self._records.values()]

    def set_stream_names(self, input_stream: Optional[str], output_stream: Optional[str]) -> None:
        if input_stream:
            self.input_stream = input_stream
        if output_stream:
            self.output_stream = output_stream

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._generation += 1

    def stats(self) -> Dict:
        records = self.all()
        return {
            "totalFiles": len(records),
            "totalSize": sum(r.file_size_bytes for r in records),
            "totalChunks": sum(r.chunk_count for r in records),
            "statusCounts": dict(Counter(r.status.value for r in records)),
            "typeCounts": dict(Counter(r.content_type or "unknown" for r in records)),
            "inputStream": self.input_stream,
            "outputStream": self.output_stream,
        }
