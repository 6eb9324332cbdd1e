"""
Token-bounded text splitting.

Operators configure a chunk size in bytes; tokenizers work in tokens. The
byte figure is divided by BYTES_PER_TOKEN and then clamped into a safe token
range, so a 10 MB setting cannot turn a whole document into one "chunk".

Splitting works on the UTF-8 bytes of each page together with the byte span
of every tiktoken token, so every cut lands on a real position of the
original text and nothing is re-encoded or lost between chunks.
"""

import logging
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from functools import lru_cache
from itertools import accumulate
from typing import List, Optional, Sequence, Tuple

import tiktoken  # Model-aligned tokenizer for token counts

from .errors import ResourceExhaustionError

logger = logging.getLogger("extraction.splitter")

ENCODING_NAME = "cl100k_base"

# A chunk may end right after one of these (sentence or line end).
SEPARATORS = (b".", b"!", b"?", b"\n")


@lru_cache(maxsize=None)
def _encoder(name: str = ENCODING_NAME) -> tiktoken.Encoding:
    enc = tiktoken.get_encoding(name)
    logger.info("tiktoken '%s' loaded for chunking", name)
    return enc


def tokens_for_bytes(
    chunk_size_bytes: int,
    bytes_per_token: int = 4,
    min_tokens: int = 1000,
    max_tokens: int = 2000,
) -> int:
    """Byte-oriented chunk size -> clamped token target."""
    raw = chunk_size_bytes // max(bytes_per_token, 1)
    return max(min_tokens, min(max_tokens, raw))


@dataclass(frozen=True)
class TextChunk:
    index: int         # 0-based position within the document
    total: int         # number of chunks in the document
    text: str
    segment: int       # index of the page/segment the chunk came from
    token_count: int


def _char_start(raw: bytes, pos: int) -> int:
    """Move pos back onto the first byte of a UTF-8 character."""
    while 0 < pos < len(raw) and (raw[pos] & 0xC0) == 0x80:
        pos -= 1
    return pos


def _char_end(raw: bytes, pos: int) -> int:
    """Move pos forward past any UTF-8 continuation bytes."""
    while pos < len(raw) and (raw[pos] & 0xC0) == 0x80:
        pos += 1
    return pos


class ChunkSplitter:
    def __init__(
        self,
        chunk_size_bytes: int,
        *,
        bytes_per_token: int = 4,
        min_tokens: int = 1000,
        max_tokens: int = 2000,
        keep_separator: bool = True,
        max_num_chunks: int = 10000,
        encoding_name: str = ENCODING_NAME,
    ) -> None:
        self.chunk_size_bytes = chunk_size_bytes
        self.chunk_tokens = tokens_for_bytes(chunk_size_bytes, bytes_per_token, min_tokens, max_tokens)
        # small fractions of the target keep degenerate chunks out
        self.min_chunk_chars = max(1, self.chunk_tokens // 4)
        self.min_emit_chars = max(1, self.chunk_tokens // 100)
        self.keep_separator = keep_separator
        self.max_num_chunks = max_num_chunks
        self.encoding_name = encoding_name
        logger.info(
            "Chunk splitter: %s bytes -> %s tokens (min_chunk_chars=%s min_emit_chars=%s keep_separator=%s)",
            chunk_size_bytes, self.chunk_tokens, self.min_chunk_chars, self.min_emit_chars, keep_separator
        )

    @classmethod
    def from_settings(cls, s) -> "ChunkSplitter":
        return cls(
            s.chunk_size_bytes,
            bytes_per_token=s.bytes_per_token,
            min_tokens=s.min_chunk_tokens,
            max_tokens=s.max_chunk_tokens,
            keep_separator=s.keep_separator,
            max_num_chunks=s.max_num_chunks,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def split(self, segments: Sequence[str]) -> List[TextChunk]:
        """
        Split each segment independently and number the result 0..n-1.
        A chunk never spans two segments.
        """
        pieces: List[Tuple[int, str, int]] = []
        for seg_idx, segment in enumerate(segments):
            if not segment or not segment.strip():
                continue
            for text, n_tokens in self._split_segment(segment):
                pieces.append((seg_idx, text, n_tokens))
                if len(pieces) > self.max_num_chunks:
                    raise ResourceExhaustionError(
                        f"document exceeds {self.max_num_chunks} chunks at {self.chunk_tokens} tokens each"
                    )

        total = len(pieces)
        chunks = [
            TextChunk(index=i, total=total, text=text, segment=seg_idx, token_count=n_tokens)
            for i, (seg_idx, text, n_tokens) in enumerate(pieces)
        ]
        if chunks:
            total_tokens = sum(c.token_count for c in chunks)
            logger.info(
                "Created %s chunks from %s segments (~%st each, total %s tokens, avg %.1ft/chunk)",
                total, len(segments), self.chunk_tokens, total_tokens, total_tokens / total
            )
        return chunks

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    def _split_segment(self, segment: str) -> List[Tuple[str, int]]:
        enc = _encoder(self.encoding_name)
        # lone surrogates cannot be encoded; replace them up front
        segment = segment.encode("utf-8", "replace").decode("utf-8")
        raw = segment.encode("utf-8")
        tokens = enc.encode(segment, disallowed_special=())
        ends = list(accumulate(len(enc.decode_single_token_bytes(t)) for t in tokens))
        starts = [0] + ends[:-1]

        windows: List[Tuple[bytes, int]] = []
        start = 0
        while start < len(raw):
            first = bisect_right(starts, start) - 1
            last = first + self.chunk_tokens  # exclusive
            if last >= len(tokens):
                end = len(raw)
            else:
                end = ends[last - 1]
                if self.keep_separator:
                    cut = self._last_separator(raw, start + self.min_chunk_chars, end)
                    if cut is not None:
                        end = cut
                end = _char_start(raw, end)
                if end <= start:
                    end = _char_end(raw, start + 1)
            n_tokens = max(1, bisect_left(starts, end) - first)
            windows.append((raw[start:end], n_tokens))
            start = end

        return self._finalize(windows)

    @staticmethod
    def _last_separator(raw: bytes, lo: int, hi: int) -> Optional[int]:
        """Position just after the last separator in raw[lo:hi], if any."""
        if lo >= hi:
            return None
        best = max(raw.rfind(sep, lo, hi) for sep in SEPARATORS)
        return best + 1 if best >= 0 else None

    def _finalize(self, windows: List[Tuple[bytes, int]]) -> List[Tuple[str, int]]:
        """
        Decode, normalise separators and fold windows that are too short to be
        worth emitting into their neighbour. Text is merged, never dropped.
        """
        merged: List[Tuple[str, int]] = []
        for data, n_tokens in windows:
            text = data.decode("utf-8")
            if not text.strip():
                if merged:
                    prev, prev_tokens = merged[-1]
                    merged[-1] = (prev + text, prev_tokens)
                continue
            if merged and len(text.strip()) < self.min_emit_chars:
                prev, prev_tokens = merged[-1]
                merged[-1] = (prev + text, prev_tokens + n_tokens)
                continue
            merged.append((text, n_tokens))

        if len(merged) > 1 and len(merged[0][0].strip()) < self.min_emit_chars:
            (head, head_tokens), (nxt, nxt_tokens) = merged[0], merged[1]
            merged[:2] = [(head + nxt, head_tokens + nxt_tokens)]

        out: List[Tuple[str, int]] = []
        for text, n_tokens in merged:
            if not self.keep_separator:
                text = text.replace("\r\n", " ").replace("\n", " ")
            out.append((text.strip(), n_tokens))
        return out
