"""
Responsible for "extraction":
- Take a staged local file (downloaded by the processor)
- Extract page text with pdfplumber for PDFs
- Decode text-like files as UTF-8
- Return one string per page/segment; the splitter keeps segments apart

We keep this module I/O-only and stateless; orchestration lives in processor.py.
"""

import logging
import mimetypes
from typing import List, Optional, Protocol

import pdfplumber  # Extract text from PDF pages

from .errors import ExtractionParseError

logger = logging.getLogger("extraction")

PDF_TYPES = {"application/pdf", "application/x-pdf"}
TEXT_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/csv",
}


class Extractor(Protocol):
    def extract(self, path: str, content_type: Optional[str] = None) -> List[str]: ...


def guess_content_type(filename: str) -> Optional[str]:
    ctype, _ = mimetypes.guess_type(filename)
    return ctype


def _looks_like_pdf(path: str) -> bool:
    with open(path, "rb") as f:
        return f.read(5) == b"%PDF-"


class DocumentExtractor:
    """
    Default extraction backend.
    Parse failures are raised as ExtractionParseError; an empty list (or blank
    pages) is a valid result that the processor treats as a soft failure.
    """

    def extract(self, path: str, content_type: Optional[str] = None) -> List[str]:
        logger.info("Extracting text from file: %s (content_type=%s)", path, content_type)
        if content_type in PDF_TYPES or _looks_like_pdf(path):
            return self._extract_pdf(path)
        if content_type and not (content_type.startswith("text/") or content_type in TEXT_TYPES):
            logger.debug("Unknown content type %s, trying UTF-8 text", content_type)
        return self._extract_text(path)

    def _extract_pdf(self, path: str) -> List[str]:
        pages: List[str] = []
        try:
            with pdfplumber.open(path) as pdf:
                for page in pdf.pages:
                    pages.append(page.extract_text() or "")  # Some pages may be images (no text)
        except Exception as e:
            raise ExtractionParseError(f"PDF parsing failed for {path}: {e}", cause=e) from e
        logger.debug("Extracted %s pages from %s", len(pages), path)
        return pages

    def _extract_text(self, path: str) -> List[str]:
        with open(path, "rb") as f:
            data = f.read()
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ExtractionParseError(f"{path} is neither a PDF nor UTF-8 text", cause=e) from e
        # form feeds separate pages in plain-text exports
        return text.split("\f")
