"""
Hybrid search over a user's screenshots.

Up to four strategies run concurrently against separate sessions:

* text     - Postgres full-text search over OCR text (confidence 0.8)
* visual   - case-insensitive substring over the visual description (0.7)
* elements - substring over the flattened detected elements (0.6)
* vector   - cosine similarity of the query embedding (the similarity itself)

Results are merged by screenshot id keeping the highest confidence. A
screenshot found by strategies with different match types becomes `hybrid`.
"""
import os
import re
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple
from prometheus_client import Counter
from pydantic import ValidationError
from app.api.schemas import DetectedElements
from app.db import repository
from app.db.database import AsyncSessionLocal
from app.db.models import Screenshot, ScreenshotContent, SearchType
from app.services.embeddings import embeddings_service
from app.utils.logger import logger

TEXT_CONFIDENCE = 0.8
VISUAL_CONFIDENCE = 0.7
ELEMENT_CONFIDENCE = 0.6

ELEMENT_SCAN_CAP = 100
VECTOR_MATCH_THRESHOLD = 0.7

SEARCH_STRATEGY_TIMEOUT = float(os.getenv("SEARCH_STRATEGY_TIMEOUT", "10"))

HIGHLIGHT_BEFORE = 50
HIGHLIGHT_AFTER = 100

SUGGESTION_LIMIT = 10
SUGGESTION_TEXT_SAMPLE = 50
SUGGESTION_WORDS_PER_TEXT = 5
SUGGESTION_MIN_WORD_LENGTH = 5

SEARCH_STRATEGY_RESULTS = Counter(
    "screenshot_search_strategy_results_total",
    "Hits returned per search strategy",
    ["strategy"]
)

SEARCH_STRATEGY_FAILURES = Counter(
    "screenshot_search_strategy_failures_total",
    "Search strategies that errored or timed out",
    ["strategy", "reason"]
)


@dataclass
class SearchHit:
    screenshot: Screenshot
    confidence: float
    match_type: str
    highlighted_text: Optional[str] = None

    @property
    def screenshot_id(self) -> str:
        return self.screenshot.id

    @property
    def content(self) -> Optional[ScreenshotContent]:
        return self.screenshot.content


def merge_hits(strategy_results: Iterable[List[SearchHit]]) -> List[SearchHit]:
    """Combine per-strategy hits into one entry per screenshot."""
    merged: Dict[str, SearchHit] = {}
    for hits in strategy_results:
        for hit in hits:
            existing = merged.get(hit.screenshot_id)
            if existing is None:
                merged[hit.screenshot_id] = SearchHit(hit.screenshot, hit.confidence, hit.match_type)
                continue
            existing.confidence = max(existing.confidence, hit.confidence)
            if existing.match_type != hit.match_type:
                existing.match_type = SearchType.HYBRID.value
    return list(merged.values())


def rank_hits(hits: List[SearchHit], limit: int) -> List[SearchHit]:
    # sorted() is stable, so equal confidences keep merge order
    return sorted(hits, key=lambda h: h.confidence, reverse=True)[:limit]


def highlight(text: Optional[str], query: str) -> Optional[str]:
    """Snippet around the first case-insensitive occurrence of `query`."""
    if not text or not query:
        return None
    match = re.search(re.escape(query), text, re.IGNORECASE)
    if match is None:
        return None
    start = max(0, match.start() - HIGHLIGHT_BEFORE)
    end = min(len(text), match.start() + len(query) + HIGHLIGHT_AFTER)
    return f"...{text[start:end]}..."


def flattened_elements(content: Optional[ScreenshotContent]) -> str:
    if content is None or not content.detected_elements:
        return ""
    try:
        return DetectedElements.model_validate(content.detected_elements).flatten()
    except ValidationError:
        return ""


class SearchService:
    def __init__(self, session_factory=None, embeddings=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.embeddings = embeddings or embeddings_service

    async def _text_strategy(self, user_id: str, query: str, limit: int) -> List[SearchHit]:
        async with self.session_factory() as session:
            rows = await repository.full_text_search(session, user_id, query, limit * 2)
        return [SearchHit(s, TEXT_CONFIDENCE, SearchType.TEXT.value) for s in rows]

    async def _visual_strategy(self, user_id: str, query: str, limit: int) -> List[SearchHit]:
        async with self.session_factory() as session:
            rows = await repository.pattern_search(session, user_id, query, limit * 2)
        return [SearchHit(s, VISUAL_CONFIDENCE, SearchType.VISUAL.value) for s in rows]

    async def _element_strategy(self, user_id: str, query: str, limit: int) -> List[SearchHit]:
        async with self.session_factory() as session:
            rows = await repository.element_candidates(session, user_id, ELEMENT_SCAN_CAP)
        needle = query.lower()
        matched = [s for s in rows if needle in flattened_elements(s.content)]
        return [SearchHit(s, ELEMENT_CONFIDENCE, SearchType.VISUAL.value) for s in matched[:limit]]

    async def _vector_strategy(self, user_id: str, query: str, limit: int) -> List[SearchHit]:
        embedding = await asyncio.to_thread(self.embeddings.embed_query, query)
        if embedding is None:
            return []
        async with self.session_factory() as session:
            rows = await repository.vector_neighbor_search(
                session, user_id, embedding, VECTOR_MATCH_THRESHOLD, limit * 2
            )
        # Vector matches are tagged hybrid even when no other strategy found them
        return [SearchHit(s, similarity, SearchType.HYBRID.value) for s, similarity in rows]

    async def _strategies(
        self, user_id: str, query: str, search_type: SearchType, limit: int
    ) -> List[Tuple[str, Awaitable[List[SearchHit]]]]:
        strategies = []
        if search_type in (SearchType.TEXT, SearchType.HYBRID):
            strategies.append(("text", self._text_strategy(user_id, query, limit)))
        if search_type in (SearchType.VISUAL, SearchType.HYBRID):
            strategies.append(("visual", self._visual_strategy(user_id, query, limit)))
        if search_type == SearchType.HYBRID:
            strategies.append(("elements", self._element_strategy(user_id, query, limit)))
        if search_type == SearchType.HYBRID and await asyncio.to_thread(self.embeddings.is_available):
            strategies.append(("vector", self._vector_strategy(user_id, query, limit)))
        return strategies

    async def _run_strategy(self, name: str, strategy: Awaitable[List[SearchHit]]) -> List[SearchHit]:
        extra = {"search_type": name}
        try:
            hits = await asyncio.wait_for(strategy, timeout=SEARCH_STRATEGY_TIMEOUT)
        except asyncio.TimeoutError:
            SEARCH_STRATEGY_FAILURES.labels(strategy=name, reason="timeout").inc()
            logger.warning("Search strategy timed out after %ss", SEARCH_STRATEGY_TIMEOUT, extra=extra)
            return []
        except Exception as e:
            SEARCH_STRATEGY_FAILURES.labels(strategy=name, reason="error").inc()
            logger.error("Search strategy error: %s", e, extra=extra)
            return []

        SEARCH_STRATEGY_RESULTS.labels(strategy=name).inc(len(hits))
        return hits

    async def search(self, user_id: str, query: str, search_type: SearchType, limit: int) -> List[SearchHit]:
        async with self.session_factory() as session:
            record = await repository.create_search_record(session, user_id, query, search_type.value)
            record_id = record.id

        strategies = await self._strategies(user_id, query, search_type, limit)
        outputs = await asyncio.gather(*(self._run_strategy(name, s) for name, s in strategies))
        results = rank_hits(merge_hits(outputs), limit)

        for hit in results:
            if hit.match_type == SearchType.VISUAL.value or hit.content is None:
                continue
            hit.highlighted_text = highlight(hit.content.ocr_text, query)

        logger.info("Search returned %s result(s)", len(results), extra={"search_type": search_type.value})

        summary: List[Dict[str, Any]] = [
            {"screenshot_id": h.screenshot_id, "confidence": h.confidence, "match_type": h.match_type}
            for h in results
        ]
        async with self.session_factory() as session:
            await repository.update_search_record(session, record_id, summary, len(results))

        return results

    async def suggestions(self, user_id: str) -> List[str]:
        """Recent queries first, then longer words from the user's OCR text."""
        async with self.session_factory() as session:
            history = await repository.recent_queries(session, user_id, SUGGESTION_LIMIT)
            texts = await repository.ocr_text_sample(session, user_id, SUGGESTION_TEXT_SAMPLE)

        suggestions: List[str] = []
        seen = set()

        def add(value: str) -> None:
            if value and value not in seen:
                seen.add(value)
                suggestions.append(value)

        for query in history:
            add(query)
        for text in texts:
            words = [w for w in text.split() if len(w) >= SUGGESTION_MIN_WORD_LENGTH]
            for word in words[:SUGGESTION_WORDS_PER_TEXT]:
                add(word.lower())

        return suggestions[:SUGGESTION_LIMIT]


search_service = SearchService()
