"""Item resolution: vector similarity + lexical token overlap."""

from __future__ import annotations

import logging
from typing import Any

from .errors import Ambiguous, NotFound
from .models import CatalogItem, ScoredCandidate
from .text import token_similarity

logger = logging.getLogger("stockvoice.resolver")


class ItemResolver:
    """
    Maps a free-text item name to the most likely catalog entry.

    Pipeline:
    1. Embed the extracted name and fetch the top-K nearest catalog items
    2. Score each candidate: weighted embedding similarity + token overlap
    3. Accept the best candidate when its score clears the threshold,
       otherwise report the candidates as ambiguous
    """

    TOP_K = 5
    WEIGHT_EMBEDDING = 0.7
    WEIGHT_TOKENS = 0.3
    MATCH_THRESHOLD = 0.6

    def __init__(
        self,
        store: Any,
        top_k: int | None = None,
        embedding_weight: float | None = None,
        token_weight: float | None = None,
        match_threshold: float | None = None,
    ):
        self.store = store
        self.top_k = top_k or self.TOP_K
        self.embedding_weight = self.WEIGHT_EMBEDDING if embedding_weight is None else embedding_weight
        self.token_weight = self.WEIGHT_TOKENS if token_weight is None else token_weight
        self.match_threshold = self.MATCH_THRESHOLD if match_threshold is None else match_threshold

    def rank(self, extracted_name: str) -> list[ScoredCandidate]:
        """All vector candidates for *extracted_name*, best combined score first."""
        vector = self.store.embed(extracted_name)
        hits = self.store.find_similar(vector, self.top_k)
        logger.debug(
            "vector search returned %d candidates for %r", len(hits), extracted_name,
        )

        scored: list[ScoredCandidate] = []
        for item, embedding_sim in hits:
            token_sim = token_similarity(extracted_name, item.name)
            score = self.embedding_weight * embedding_sim + self.token_weight * token_sim
            scored.append(ScoredCandidate(
                item=item,
                embedding_similarity=embedding_sim,
                token_similarity=token_sim,
                score=score,
            ))
            logger.debug(
                "candidate %s: embedding=%.4f tokens=%.4f score=%.4f",
                item.name, embedding_sim, token_sim, score,
            )

        scored.sort(key=lambda c: c.score, reverse=True)
        return scored

    def resolve(self, extracted_name: str) -> CatalogItem:
        return self.resolve_with_candidates(extracted_name)[0]

    def resolve_with_candidates(
        self, extracted_name: str,
    ) -> tuple[CatalogItem, list[ScoredCandidate]]:
        """
        Resolve *extracted_name* to a catalog item, also returning every
        scored candidate (the confirmation policy looks at the runners-up).

        Raises
        ------
        NotFound
            The vector search returned nothing, or the winner disappeared
            before it could be re-read.
        Ambiguous
            The best combined score is below the match threshold.
        """
        if not extracted_name or not extracted_name.strip():
            raise NotFound(extracted_name or "")

        candidates = self.rank(extracted_name)
        if not candidates:
            logger.info("resolve: no candidates for %r", extracted_name)
            raise NotFound(extracted_name)

        best = candidates[0]
        if best.score < self.match_threshold:
            logger.info(
                "resolve: %r ambiguous (best=%s %.4f < %.2f)",
                extracted_name, best.item.name, best.score, self.match_threshold,
            )
            raise Ambiguous(extracted_name, [c.item.name for c in candidates])

        # Re-read so the caller works with the freshest quantity
        fresh = self.store.find_by_id(best.item.id)
        if fresh is None:
            raise NotFound(extracted_name)

        logger.info(
            "resolve: %r -> %s (score=%.4f)", extracted_name, fresh.name, best.score,
        )
        return fresh, candidates

    def suggest(self, extracted_name: str, limit: int = 3) -> list[str]:
        """Names worth offering when resolution failed (full-text search)."""
        return [item.name for item in self.store.search_text(extracted_name, k=limit)]
