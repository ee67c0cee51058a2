# knowledge_index/search.py
import logging
import re
from typing import Dict, List, Optional

from knowledge_index.config import settings
from knowledge_index.embeddings import EmbeddingBatcher
from knowledge_index.schemas import ContextResponse, SearchResultItem
from knowledge_index.vector_store import VectorStore

logger = logging.getLogger(__name__)

SIMILARITY_PRECISION = 4


class SearchService:
    """Embed the query, ask the store, round the scores. No extra ranking."""

    def __init__(self, batcher: EmbeddingBatcher, store: VectorStore,
                 default_threshold: Optional[float] = None, default_limit: Optional[int] = None,
                 max_limit: Optional[int] = None, context_limit: Optional[int] = None):
        self.batcher = batcher
        self.store = store
        self.default_threshold = (settings.search_default_threshold
                                  if default_threshold is None else default_threshold)
        self.default_limit = default_limit or settings.search_default_limit
        self.max_limit = max_limit or settings.search_max_limit
        self.context_limit = context_limit or settings.context_default_limit

    async def search(self, query: str, category: Optional[str] = None,
                     threshold: Optional[float] = None,
                     limit: Optional[int] = None) -> List[SearchResultItem]:
        query = (query or "").strip()
        if not query:
            raise ValueError("query must not be empty")
        threshold = self.default_threshold if threshold is None else threshold
        limit = min(limit or self.default_limit, self.max_limit)

        vector = await self.batcher.embed_query(query)
        hits = await self.store.search(vector, category=category, threshold=threshold, limit=limit)
        logger.info("Search returned %d results (category=%s, threshold=%.2f, limit=%d)",
                    len(hits), category, threshold, limit)
        return [
            SearchResultItem(
                content=h.content,
                document_title=h.document_title,
                document_id=h.document_id,
                category=h.category,
                chunk_index=h.chunk_index,
                page_number=h.page_number,
                section_title=h.section_title,
                similarity=round(h.similarity, SIMILARITY_PRECISION),
            )
            for h in hits
        ]

    async def build_context(self, query: str, category: Optional[str] = None,
                            threshold: Optional[float] = None,
                            limit: Optional[int] = None) -> ContextResponse:
        """
        Retrieve chunks for `query` and render them as a prompt block grouped
        by document. Small talk skips the search and yields an empty context.
        """
        if not should_search_knowledge(query):
            logger.info("Skipping knowledge search for small talk")
            return ContextResponse(query=query, should_search=False, result_count=0,
                                   avg_similarity=0.0, sources=[], context="")

        results = await self.search(query, category=category, threshold=threshold,
                                    limit=limit or self.context_limit)
        sources = list(dict.fromkeys(r.document_title for r in results))
        avg = sum(r.similarity for r in results) / len(results) if results else 0.0
        return ContextResponse(
            query=query,
            should_search=True,
            result_count=len(results),
            avg_similarity=round(avg, 2),
            sources=sources,
            context=render_context_block(results, sources),
        )


def format_results_as_context(results: List[SearchResultItem]) -> str:
    """
    Group results by document (first-seen order), order each group by chunk
    index, and tag every excerpt with its page, section and relevance.
    """
    groups: Dict[str, List[SearchResultItem]] = {}
    for r in results:
        groups.setdefault(str(r.document_id), []).append(r)

    lines: List[str] = []
    for items in groups.values():
        first = items[0]
        header = f"### {first.document_title}"
        if first.category:
            header += f" ({first.category})"
        lines.append(header)
        for r in sorted(items, key=lambda r: r.chunk_index):
            tag = ""
            if r.page_number is not None:
                tag += f" [p.{r.page_number}]"
            if r.section_title:
                tag += f" - {r.section_title}"
            lines.append(f"{tag} (relevance: {round(r.similarity * 100)}%)".lstrip())
            lines.append(r.content)
            lines.append("")
    return "\n".join(lines)


def render_context_block(results: List[SearchResultItem], sources: List[str]) -> str:
    if not results:
        return ""
    return ("\n\n[Knowledge Base]\n"
            f"Sources: {', '.join(sources)}\n"
            "---\n"
            f"{format_results_as_context(results)}"
            "---\n")


# greetings, thanks and short acknowledgements (English and Korean)
_SKIP_PATTERNS = [
    re.compile(r"^(hi|hello|hey|good (morning|afternoon|evening))\b", re.IGNORECASE),
    re.compile(r"^(thanks|thank you|thx|ok|okay|yes|no|yep|nope|sure)\b", re.IGNORECASE),
    re.compile("^(안녕|하이|헬로|감사|고마워|땡큐)"),
    re.compile("^(네|아니|예|응|음)"),
    re.compile("^(ㅋ+|ㅎ+|ㅠ+)"),
]

_QUESTION_INDICATORS = [
    "?",
    "how", "what", "when", "where", "why", "who", "which", "explain", "procedure", "required",
    "어떻게", "무엇", "뭐", "언제", "어디", "왜", "누가",
    "얼마", "방법", "절차", "필요", "가능", "해야",
    "하려면", "알려", "설명", "질문",
]

MIN_QUERY_LENGTH = 5


def should_search_knowledge(message: str) -> bool:
    """Cheap heuristic: skip small talk, search anything that reads like a question."""
    text = (message or "").strip()
    if any(p.search(text) for p in _SKIP_PATTERNS):
        return False
    if len(text) < MIN_QUERY_LENGTH:
        return False
    lowered = text.lower()
    return any(word in lowered for word in _QUESTION_INDICATORS)
