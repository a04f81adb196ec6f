"""
Descriptor distance and candidate ranking.

Two descriptors are compared cluster by cluster. Cluster order carries no
meaning across independent extractions, so clusters are first paired by
nearest weight (greedy), then three normalised terms are combined:

    colour    RGB distance of each pair, weighted by the pair's mean weight
    spatial   centroid distance of each pair, same weighting
    lighting  absolute difference of the lighting estimates

Each term lies in [0, 1]; their weighted sum is the distance and
1 - distance the similarity.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .color_signature import ColorDescriptor
from .config import MatchWeights

logger = logging.getLogger(__name__)

MAX_RGB_DISTANCE = 255.0 * math.sqrt(3.0)
MAX_CENTROID_DISTANCE = math.sqrt(2.0)


@dataclass(frozen=True)
class DistanceComponents:
    color: float
    spatial: float
    lighting: float
    distance: float

    @property
    def similarity(self) -> float:
        return float(min(max(1.0 - self.distance, 0.0), 1.0))


def pair_clusters(a: ColorDescriptor, b: ColorDescriptor) -> List[Tuple[int, int]]:
    """
    Greedy nearest-weight pairing of a's clusters with b's.

    Pairs are taken in order of weight difference, then colour distance,
    then centroid distance, then index, so identical clusters always pair
    with each other and results are reproducible.
    """
    rgb_a, w_a, c_a = a.as_arrays()
    rgb_b, w_b, c_b = b.as_arrays()

    weight_diff = np.abs(w_a[:, None] - w_b[None, :])
    color_dist = np.linalg.norm(rgb_a[:, None, :] - rgb_b[None, :, :], axis=2)
    spatial_dist = np.linalg.norm(c_a[:, None, :] - c_b[None, :, :], axis=2)
    ii, jj = np.indices(weight_diff.shape)

    order = np.lexsort((
        jj.ravel(), ii.ravel(),
        spatial_dist.ravel(), color_dist.ravel(), weight_diff.ravel(),
    ))

    used_a = set()
    used_b = set()
    pairs = []
    limit = min(len(w_a), len(w_b))
    for flat in order:
        i, j = int(ii.flat[flat]), int(jj.flat[flat])
        if i in used_a or j in used_b:
            continue
        pairs.append((i, j))
        used_a.add(i)
        used_b.add(j)
        if len(pairs) == limit:
            break
    return pairs


def descriptor_distance(a: ColorDescriptor,
                        b: ColorDescriptor,
                        weights: Optional[MatchWeights] = None) -> DistanceComponents:
    """
    Compute the weighted distance between two descriptors.

    Unpaired clusters (descriptors with different k) count as maximally
    distant for their half of the pair weight.

    Returns:
        DistanceComponents; identical descriptors give distance 0.0 and
        similarity 1.0 exactly.
    """
    weights = weights or MatchWeights()
    rgb_a, w_a, c_a = a.as_arrays()
    rgb_b, w_b, c_b = b.as_arrays()

    color = 0.0
    spatial = 0.0
    paired_a = set()
    paired_b = set()
    for i, j in pair_clusters(a, b):
        pair_weight = (w_a[i] + w_b[j]) / 2.0
        color += pair_weight * float(np.linalg.norm(rgb_a[i] - rgb_b[j])) / MAX_RGB_DISTANCE
        spatial += pair_weight * float(np.linalg.norm(c_a[i] - c_b[j])) / MAX_CENTROID_DISTANCE
        paired_a.add(i)
        paired_b.add(j)

    leftover = (
        sum(float(w_a[i]) for i in range(len(w_a)) if i not in paired_a)
        + sum(float(w_b[j]) for j in range(len(w_b)) if j not in paired_b)
    ) / 2.0
    color = min(color + leftover, 1.0)
    spatial = min(spatial + leftover, 1.0)
    lighting = min(abs(a.lighting - b.lighting), 1.0)

    distance = (
        weights.color * color
        + weights.spatial * spatial
        + weights.lighting * lighting
    )
    return DistanceComponents(
        color=float(color),
        spatial=float(spatial),
        lighting=float(lighting),
        distance=float(distance),
    )


def rank_candidates(candidates: list) -> list:
    """
    Sort match candidates by similarity (primary), registration time
    (newest first) and product id (final, deterministic tiebreaker).
    """
    return sorted(
        candidates,
        key=lambda c: (-c.similarity, -c.registered_at.timestamp(), c.product_id)
    )
