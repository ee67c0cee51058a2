# knowledge_index/chunking.py
"""
Boundary-aware chunking:
 - normalize line endings and collapse runs of blank lines
 - slide a window of `chunk_size` characters over the text
 - pull the right edge back to the best separator past the window midpoint
 - advance by `window_end - overlap` so adjacent chunks share context

Pure functions only; no I/O. Page and section variants keep a single,
continuous chunk index across the whole document.
"""
import math
import re
from dataclasses import dataclass, asdict
from typing import Dict, Any, Iterable, List, Optional, Sequence, Tuple

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP = 200
# priority order: paragraph, line, sentence ends (CJK + latin), clause, word
DEFAULT_SEPARATORS: Tuple[str, ...] = ("\n\n", "\n", "。", ". ", "! ", "? ", "; ", ", ", " ")
MAX_CHUNK_CHARS = 10000

WIDE_TOKEN_WEIGHT = 0.7
NARROW_TOKEN_WEIGHT = 0.25

_CRLF_RE = re.compile(r"\r\n?")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_WIDE_CHAR_RE = re.compile(r"[\u1100-\u11ff\u3040-\u30ff\u3130-\u318f\u4e00-\u9fff\uac00-\ud7af]")


@dataclass
class Chunk:
    content: str
    index: int
    char_start: int                  # source window in the normalized text
    char_end: int
    page_number: Optional[int] = None
    section_title: Optional[str] = None
    token_count: int = 0

    @property
    def char_len(self) -> int:
        return len(self.content)


@dataclass
class PageText:
    page_number: int
    text: str


@dataclass
class SectionText:
    title: str
    text: str


@dataclass
class ChunkStats:
    total_chunks: int = 0
    total_characters: int = 0
    avg_chunk_size: int = 0
    min_chunk_size: int = 0
    max_chunk_size: int = 0
    estimated_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_text(text: str) -> str:
    if not text:
        return ""
    text = _CRLF_RE.sub("\n", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def estimate_token_count(text: str) -> int:
    """
    Rough token estimate: wide (CJK / Hangul / kana) characters weigh more than
    narrow-script characters. Used for reporting only.
    """
    if not text:
        return 0
    wide = len(_WIDE_CHAR_RE.findall(text))
    narrow = len(text) - wide
    return math.ceil(wide * WIDE_TOKEN_WEIGHT + narrow * NARROW_TOKEN_WEIGHT)


def _check_params(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")


def _windows(text: str, chunk_size: int, overlap: int,
             separators: Sequence[str]) -> Iterable[Tuple[int, int]]:
    """Yield (start, end) source windows over already-normalized text."""
    n = len(text)
    start = 0
    min_split = chunk_size * 0.5
    while start < n:
        end = min(start + chunk_size, n)
        if end < n:
            window = text[start:end]
            for sep in separators:
                pos = window.rfind(sep)
                if pos > min_split:
                    end = start + pos + len(sep)
                    break
        yield start, end
        if end >= n:
            return
        next_start = max(end - overlap, 0)
        if next_start <= start:
            next_start = end
        start = next_start


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_OVERLAP,
               separators: Sequence[str] = DEFAULT_SEPARATORS, start_index: int = 0,
               page_number: Optional[int] = None,
               section_title: Optional[str] = None) -> List[Chunk]:
    """
    Split `text` into overlapping chunks of at most `chunk_size` characters.

    Empty (or whitespace-only) input returns an empty list. Windows whose
    trimmed content is empty are skipped without consuming an index.
    """
    _check_params(chunk_size, overlap)
    text = normalize_text(text)
    if not text:
        return []

    chunks: List[Chunk] = []
    index = start_index
    for start, end in _windows(text, chunk_size, overlap, separators):
        content = text[start:end].strip()
        if not content:
            continue
        chunks.append(Chunk(
            content=content,
            index=index,
            char_start=start,
            char_end=end,
            page_number=page_number,
            section_title=section_title,
            token_count=estimate_token_count(content),
        ))
        index += 1
    return chunks


def chunk_pages(pages: Sequence[PageText], chunk_size: int = DEFAULT_CHUNK_SIZE,
                overlap: int = DEFAULT_OVERLAP,
                separators: Sequence[str] = DEFAULT_SEPARATORS) -> List[Chunk]:
    """Chunk each page independently; indices continue across pages."""
    all_chunks: List[Chunk] = []
    for page in pages:
        all_chunks.extend(chunk_text(page.text, chunk_size, overlap, separators,
                                     start_index=len(all_chunks), page_number=page.page_number))
    return all_chunks


def chunk_sections(sections: Sequence[SectionText], chunk_size: int = DEFAULT_CHUNK_SIZE,
                   overlap: int = DEFAULT_OVERLAP,
                   separators: Sequence[str] = DEFAULT_SEPARATORS) -> List[Chunk]:
    """Chunk each titled section independently; indices continue across sections."""
    all_chunks: List[Chunk] = []
    for section in sections:
        all_chunks.extend(chunk_text(section.text, chunk_size, overlap, separators,
                                     start_index=len(all_chunks), section_title=section.title))
    return all_chunks


def validate_chunks(chunks: Sequence[Chunk]) -> Tuple[bool, List[str]]:
    issues: List[str] = []
    if not chunks:
        issues.append("No chunks generated")
    for chunk in chunks:
        if not chunk.content.strip():
            issues.append(f"Chunk {chunk.index} is empty")
        elif len(chunk.content) > MAX_CHUNK_CHARS:
            issues.append(f"Chunk {chunk.index} is too large ({len(chunk.content)} characters)")
    return not issues, issues


def get_chunk_stats(chunks: Sequence[Chunk]) -> ChunkStats:
    if not chunks:
        return ChunkStats()
    sizes = [len(c.content) for c in chunks]
    total = sum(sizes)
    return ChunkStats(
        total_chunks=len(chunks),
        total_characters=total,
        avg_chunk_size=round(total / len(chunks)),
        min_chunk_size=min(sizes),
        max_chunk_size=max(sizes),
        estimated_tokens=sum(c.token_count or estimate_token_count(c.content) for c in chunks),
    )
