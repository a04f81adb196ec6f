"""
Nearest-match recognition against a tenant's visual bank.

The matcher only ranks. It never applies acceptance thresholds; deciding
whether a ranking is confident, ambiguous or no match is the session's job.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .color_signature import ColorDescriptor
from .config import DEFAULT_TOP_K, PREFILTER_CANDIDATES, PREFILTER_THRESHOLD, MatchWeights
from .errors import EmptyBankError, TenantMismatchError
from .prefilter import shortlist
from .scoring import DistanceComponents, descriptor_distance, rank_candidates
from .tokens import VisualToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchCandidate:
    """Best-scoring token of one product, with the terms behind its score."""

    product_id: str
    token_id: str
    similarity: float
    color_distance: float
    spatial_distance: float
    lighting_distance: float
    distance: float
    registered_at: datetime
    token_count: int = 1

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "token_id": self.token_id,
            "similarity": round(self.similarity, 4),
            "color_distance": round(self.color_distance, 4),
            "spatial_distance": round(self.spatial_distance, 4),
            "lighting_distance": round(self.lighting_distance, 4),
            "distance": round(self.distance, 4),
            "registered_at": self.registered_at.isoformat(),
            "token_count": self.token_count,
        }


def match(descriptor: ColorDescriptor,
          bank: Sequence[VisualToken],
          top_k: int = DEFAULT_TOP_K,
          weights: Optional[MatchWeights] = None,
          require_non_empty: bool = False,
          tenant_id: Optional[str] = None,
          prefilter_threshold: int = PREFILTER_THRESHOLD,
          prefilter_candidates: int = PREFILTER_CANDIDATES) -> List[MatchCandidate]:
    """
    Rank the bank's products by similarity to a descriptor.

    Every token of a product is scored; the product's score is its best
    token's similarity (best angle wins).

    Args:
        descriptor: Descriptor of the captured frame.
        bank: Tokens of one tenant.
        top_k: Maximum number of candidates to return.
        weights: Distance term weights.
        require_non_empty: Raise EmptyBankError instead of returning [].
        tenant_id: When given, every token must belong to this tenant.
        prefilter_threshold: Banks with more tokens than this are narrowed
            with the FAISS prefilter before exact scoring.
        prefilter_candidates: Tokens kept by the prefilter.

    Returns:
        Up to top_k candidates, best first. An empty list means no match.

    Raises:
        ValueError: If top_k < 1.
        EmptyBankError: If the bank is empty and require_non_empty is set.
        TenantMismatchError: If a token belongs to another tenant.
    """
    if top_k < 1:
        raise ValueError(f"top_k must be at least 1, got {top_k}")

    tokens = list(bank)
    if not tokens:
        if require_non_empty:
            raise EmptyBankError(f"No registered tokens for tenant {tenant_id!r}")
        return []

    if tenant_id is not None:
        for token in tokens:
            if token.tenant_id != tenant_id:
                raise TenantMismatchError(
                    f"Token {token.token_id[:12]} of tenant {token.tenant_id!r} "
                    f"in bank of {tenant_id!r}"
                )

    if len(tokens) > prefilter_threshold:
        tokens = shortlist(descriptor, tokens, k=prefilter_candidates)

    weights = weights or MatchWeights()
    best: Dict[str, MatchCandidate] = {}
    counts: Dict[str, int] = {}

    for token in tokens:
        components = descriptor_distance(descriptor, token.descriptor, weights)
        candidate = _candidate(token, components)
        counts[token.product_id] = counts.get(token.product_id, 0) + 1

        current = best.get(token.product_id)
        if current is None or _beats(candidate, current):
            best[token.product_id] = candidate

    ranked = rank_candidates([
        _with_count(candidate, counts[product_id])
        for product_id, candidate in best.items()
    ])[:top_k]

    if ranked:
        logger.debug(
            f"Matched against {len(tokens)} tokens / {len(best)} products; "
            f"best {ranked[0].product_id!r} at {ranked[0].similarity:.3f}"
        )
    return ranked


def _candidate(token: VisualToken, components: DistanceComponents) -> MatchCandidate:
    return MatchCandidate(
        product_id=token.product_id,
        token_id=token.token_id,
        similarity=components.similarity,
        color_distance=components.color,
        spatial_distance=components.spatial,
        lighting_distance=components.lighting,
        distance=components.distance,
        registered_at=token.created_at,
    )


def _beats(challenger: MatchCandidate, current: MatchCandidate) -> bool:
    if challenger.similarity != current.similarity:
        return challenger.similarity > current.similarity
    return challenger.registered_at > current.registered_at


def _with_count(candidate: MatchCandidate, token_count: int) -> MatchCandidate:
    return replace(candidate, token_count=token_count)
