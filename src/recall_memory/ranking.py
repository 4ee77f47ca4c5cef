"""Archive result ranking: lexical scoring, vector normalization, hybrid fusion.

All scores live on a 0..100 scale, higher is better.

- Lexical: 100 for a case-insensitive exact phrase match, otherwise the
  share of whitespace-delimited query terms found in the content.
- Vector: raw distances are min-max normalized within one response,
  closest = 100, farthest = 0; equidistant candidates all score 100.
- Hybrid: ``100 * (vector_weight * vector/100 + text_weight * lexical/100)``.

Ranked lists are filtered by ``min_score``, stably sorted by descending
score (ties keep backend order) and truncated to ``limit``.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from loguru import logger

from .config import RetrievalConfig
from .models import LexicalHit, SearchMatches, SearchResult, VectorHit


class ArchiveRanker:
    """Turns raw backend hits into one normalized, ranked result list."""

    def __init__(self, config: RetrievalConfig | None = None):
        self._config = config or RetrievalConfig()

    @staticmethod
    def lexical_match(query: str, content: str) -> tuple[float, SearchMatches]:
        """Score ``content`` against ``query``.

        Query terms are the raw whitespace split, not deduplicated: a term
        repeated in the query counts once per repetition in both the
        numerator and the denominator.

        Returns:
            (score, matches) with score in 0..100
        """
        terms = query.split()
        if not terms:
            return 0.0, SearchMatches()

        haystack = content.lower()
        exact_phrase = query.lower() in haystack
        term_matches = [term for term in terms if term.lower() in haystack]

        if exact_phrase:
            score = 100.0
        else:
            score = 100.0 * len(term_matches) / len(terms)
        return score, SearchMatches(exact_phrase=exact_phrase, terms=term_matches)

    @staticmethod
    def normalize_distances(distances: Sequence[float]) -> list[float]:
        """Map raw distances to 0..100 within this candidate set."""
        if not distances:
            return []
        max_distance = max(distances)
        min_distance = min(distances)
        spread = max_distance - min_distance
        if spread == 0:
            return [100.0] * len(distances)
        return [100.0 * (max_distance - d) / spread for d in distances]

    def rank_lexical(
        self,
        query: str,
        hits: Sequence[LexicalHit],
        limit: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        results = []
        for hit in hits:
            score, matches = self.lexical_match(query, hit.entry.content)
            results.append(SearchResult(entry=hit.entry, score=score, matches=matches))
        return self._finalize(results, limit, min_score)

    def rank_vector(
        self,
        hits: Sequence[VectorHit],
        limit: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        scores = self.normalize_distances([hit.distance for hit in hits])
        results = [
            SearchResult(entry=hit.entry, score=score)
            for hit, score in zip(hits, scores)
        ]
        return self._finalize(results, limit, min_score)

    def rank_hybrid(
        self,
        query: str,
        vector_hits: Sequence[VectorHit],
        lexical_hits: Iterable[LexicalHit] = (),
        vector_weight: float | None = None,
        text_weight: float | None = None,
        limit: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Fuse vector and lexical evidence for the same query.

        Candidates are the vector hits in backend order followed by
        lexical-only hits, deduplicated by entry id. Lexical-only hits carry
        a vector score of 0.
        """
        vw = self._config.vector_weight if vector_weight is None else vector_weight
        tw = self._config.text_weight if text_weight is None else text_weight

        vector_scores = self.normalize_distances([hit.distance for hit in vector_hits])
        candidates = [
            (hit.entry, score) for hit, score in zip(vector_hits, vector_scores)
        ]
        seen_ids = {entry.id for entry, _ in candidates if entry.id is not None}
        lexical_only = 0
        for hit in lexical_hits:
            if hit.entry.id is not None and hit.entry.id in seen_ids:
                continue
            if hit.entry.id is not None:
                seen_ids.add(hit.entry.id)
            candidates.append((hit.entry, 0.0))
            lexical_only += 1

        results = []
        for entry, vector_score in candidates:
            text_score, matches = self.lexical_match(query, entry.content)
            final_score = 100.0 * (vw * vector_score / 100.0 + tw * text_score / 100.0)
            results.append(
                SearchResult(entry=entry, score=final_score, matches=matches)
            )

        logger.debug(
            f"Hybrid fusion: vector={len(vector_hits)}, "
            f"lexical_only={lexical_only}, weights=({vw}, {tw})"
        )
        return self._finalize(results, limit, min_score)

    def _finalize(
        self,
        results: list[SearchResult],
        limit: int | None,
        min_score: float | None,
    ) -> list[SearchResult]:
        limit = self._config.limit if limit is None else limit
        if min_score is None:
            min_score = self._config.min_score
        if min_score is not None:
            results = [r for r in results if r.score >= min_score]
        # sorted() is stable, so equal scores keep backend order
        results = sorted(results, key=lambda r: r.score, reverse=True)
        return results[:limit]
