# knowledge_index/extract.py
"""
Text extraction adapter. Turns an uploaded file into plain text, optionally
paginated. Blocking; callers run it in a worker thread.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional

from pypdf import PdfReader

from knowledge_index.chunking import PageText, SectionText
from knowledge_index.exceptions import ExtractionFailure

logger = logging.getLogger(__name__)

TEXT_TYPES = ("txt", "md")
SUPPORTED_TYPES = ("pdf",) + TEXT_TYPES

_SPACE_RUN_RE = re.compile(r"[ \t]+")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass
class ExtractedText:
    text: str
    pages: List[PageText] = field(default_factory=list)
    sections: List[SectionText] = field(default_factory=list)


def clean_text(text: Optional[str]) -> str:
    """Collapse horizontal whitespace, drop control characters, squash blank-line runs."""
    if not text:
        return ""
    text = _SPACE_RUN_RE.sub(" ", text)
    text = _CONTROL_RE.sub("", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def detect_file_type(filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lower().lstrip(".")
    return ext or "txt"


def extract_text_from_pdf(path: str) -> List[PageText]:
    """
    Extract text by page from a PDF (1-based page numbers).
    Pages that fail to extract are kept as empty strings to preserve numbering.
    """
    reader = PdfReader(path)
    pages: List[PageText] = []
    for i, page in enumerate(reader.pages):
        try:
            text = page.extract_text() or ""
        except Exception as e:
            logger.warning("Failed to extract text from page %s of %s: %s", i + 1, path, e)
            text = ""
        pages.append(PageText(page_number=i + 1, text=text))
    return pages


def read_text_file(path: str) -> str:
    with open(path, "rb") as f:
        raw = f.read()
    # utf-8-sig drops a leading BOM
    return raw.decode("utf-8-sig", errors="replace")


def extract_file(path: str, file_type: Optional[str] = None) -> ExtractedText:
    file_type = (file_type or detect_file_type(path)).lower().lstrip(".")
    if file_type not in SUPPORTED_TYPES:
        raise ExtractionFailure(f"Unsupported file type: {file_type}", details={"path": path})

    try:
        if file_type == "pdf":
            pages = [PageText(p.page_number, clean_text(p.text)) for p in extract_text_from_pdf(path)]
            text = "\n\n".join(p.text for p in pages if p.text)
        else:
            pages = []
            text = clean_text(read_text_file(path))
    except Exception as e:
        raise ExtractionFailure(f"Could not read {os.path.basename(path)}: {e}") from e

    if not text:
        raise ExtractionFailure("No text could be extracted from the document", details={"path": path})
    logger.info("Extracted %d characters (%d pages) from %s", len(text), len(pages), path)
    return ExtractedText(text=text, pages=pages)
