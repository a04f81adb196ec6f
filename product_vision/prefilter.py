"""
FAISS candidate prefilter for large banks.

Each descriptor is folded into a coarse 4x4x4 RGB histogram (cluster
weights dropped into the bin of their colour), L2-normalised, and searched
with an exact FlatL2 index. Only the nearest tokens go through the full
pairwise descriptor distance. Small banks skip this step entirely.
"""

import logging
from typing import List, Sequence, Tuple

import faiss
import numpy as np

from .color_signature import ColorDescriptor
from .config import PREFILTER_CANDIDATES
from .tokens import VisualToken

logger = logging.getLogger(__name__)

LEVELS_PER_CHANNEL = 4
HIST_DIM = LEVELS_PER_CHANNEL ** 3


def coarse_histogram(descriptor: ColorDescriptor) -> np.ndarray:
    """64-dim float32 L2-normalised weighted colour histogram."""
    hist = np.zeros(HIST_DIM, dtype=np.float32)
    step = 256 // LEVELS_PER_CHANNEL
    for cluster in descriptor.clusters:
        if cluster.weight <= 0:
            continue
        r, g, b = (min(int(c) // step, LEVELS_PER_CHANNEL - 1) for c in cluster.rgb)
        hist[(r * LEVELS_PER_CHANNEL + g) * LEVELS_PER_CHANNEL + b] += cluster.weight

    norm = np.linalg.norm(hist)
    if norm > 0:
        hist = hist / norm
    return hist.astype(np.float32)


def build_faiss_index(tokens: Sequence[VisualToken]) -> faiss.Index:
    vectors = np.vstack([coarse_histogram(t.descriptor) for t in tokens]).astype(np.float32)
    index = faiss.IndexFlatL2(HIST_DIM)
    index.add(vectors)
    return index


def search_faiss_index(index: faiss.Index,
                       query_histogram: np.ndarray,
                       k: int = PREFILTER_CANDIDATES) -> Tuple[np.ndarray, np.ndarray]:
    """
    Search a FAISS index for nearest neighbours to a query histogram.

    Returns:
        Tuple of (distances, indices) arrays, each shape (1, k).

    Raises:
        ValueError: If query dimensions don't match index.
    """
    query = query_histogram.astype(np.float32).reshape(1, -1)

    if query.shape[1] != index.d:
        raise ValueError(
            f"Query dimension {query.shape[1]} doesn't match "
            f"index dimension {index.d}"
        )

    k = min(k, index.ntotal)
    return index.search(query, k)


def shortlist(descriptor: ColorDescriptor,
              tokens: Sequence[VisualToken],
              k: int = PREFILTER_CANDIDATES) -> List[VisualToken]:
    """Return the k tokens whose coarse palette is nearest the query's."""
    if not tokens:
        return []
    index = build_faiss_index(tokens)
    _, indices = search_faiss_index(index, coarse_histogram(descriptor), k=k)
    selected = [tokens[i] for i in indices[0] if 0 <= i < len(tokens)]
    logger.debug(f"Prefilter kept {len(selected)} of {len(tokens)} tokens")
    return selected
