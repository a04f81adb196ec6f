"""
Colour signature extraction.

Reduces a captured frame to a fixed-size ColorDescriptor:
    - k dominant colours found by k-means over the RGB cube
    - the share of pixels each colour covers (weights sum to 1)
    - where in the frame each colour sits (normalised centroid)
    - one scalar lighting estimate (warm vs. cool cast)

Clustering is seeded from evenly spaced samples of the image's own colour
range instead of random state, so the same bytes always produce the same
descriptor. Registered tokens stay reproducible across devices and runs.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from .config import (
    DEFAULT_CLUSTERS, KMEANS_MAX_ITER, MAX_CLUSTERS, MIN_CLUSTERS, WEIGHT_EPSILON,
)
from .errors import EncodingError, InvalidImageError
from .preprocessing import (
    ImageInput, Rect, crop_region, limit_resolution, luminance, to_pixel_array,
)

logger = logging.getLogger(__name__)

# Stop iterating once no centre moves further than this (RGB units)
CONVERGENCE_SHIFT = 0.5

PAD_RGB = (0.0, 0.0, 0.0)
PAD_CENTROID = (0.5, 0.5)


@dataclass(frozen=True)
class ColorCluster:
    """One dominant colour: mean RGB, pixel share, and frame position."""

    rgb: Tuple[float, float, float]
    weight: float
    centroid: Tuple[float, float]

    @classmethod
    def padding(cls) -> "ColorCluster":
        return cls(rgb=PAD_RGB, weight=0.0, centroid=PAD_CENTROID)

    def sort_key(self):
        return (-self.weight, self.rgb, self.centroid)

    def to_dict(self) -> dict:
        return {"rgb": list(self.rgb), "weight": self.weight, "centroid": list(self.centroid)}

    @classmethod
    def from_dict(cls, data: dict) -> "ColorCluster":
        return cls(
            rgb=tuple(float(c) for c in data["rgb"]),
            weight=float(data["weight"]),
            centroid=tuple(float(c) for c in data["centroid"]),
        )


ClusterSpec = Union[ColorCluster, Tuple[Sequence[float], float, Sequence[float]]]


@dataclass(frozen=True)
class ColorDescriptor:
    """
    Fixed-size colour signature of one image.

    Clusters are kept in canonical order (heaviest first) and padded with
    zero-weight entries up to k.
    """

    clusters: Tuple[ColorCluster, ...]
    lighting: float

    @property
    def k(self) -> int:
        return len(self.clusters)

    @classmethod
    def from_clusters(cls,
                      clusters: Iterable[ClusterSpec],
                      lighting: float = 0.5,
                      k: int = DEFAULT_CLUSTERS) -> "ColorDescriptor":
        """
        Build a canonical, padded descriptor.

        Args:
            clusters: ColorCluster objects or (rgb, weight, centroid) tuples.
            lighting: Lighting estimate in [0, 1].
            k: Target cluster count; fewer clusters are padded.

        Raises:
            EncodingError: If more than k clusters are supplied.
        """
        built = []
        for spec in clusters:
            if isinstance(spec, ColorCluster):
                built.append(spec)
            else:
                rgb, weight, centroid = spec
                built.append(ColorCluster(
                    rgb=tuple(float(c) for c in rgb),
                    weight=float(weight),
                    centroid=tuple(float(c) for c in centroid),
                ))
        if len(built) > k:
            raise EncodingError(f"{len(built)} clusters supplied for k={k}")
        built.extend(ColorCluster.padding() for _ in range(k - len(built)))
        return cls(clusters=canonical_order(built), lighting=float(lighting))

    def canonical(self) -> "ColorDescriptor":
        return ColorDescriptor(clusters=canonical_order(self.clusters), lighting=self.lighting)

    def validate(self) -> None:
        """Raise EncodingError naming the first broken invariant."""
        if not MIN_CLUSTERS <= len(self.clusters) <= MAX_CLUSTERS:
            raise EncodingError(
                f"Descriptor has {len(self.clusters)} clusters, "
                f"expected {MIN_CLUSTERS}-{MAX_CLUSTERS}"
            )
        if not _finite(self.lighting) or not 0.0 <= self.lighting <= 1.0:
            raise EncodingError(f"Lighting {self.lighting} outside [0, 1]")

        total = 0.0
        for i, cluster in enumerate(self.clusters):
            if len(cluster.rgb) != 3 or len(cluster.centroid) != 2:
                raise EncodingError(f"Cluster {i} has malformed rgb or centroid")
            if not all(_finite(c) and 0.0 <= c <= 255.0 for c in cluster.rgb):
                raise EncodingError(f"Cluster {i} colour {cluster.rgb} outside [0, 255]")
            if not _finite(cluster.weight) or not 0.0 <= cluster.weight <= 1.0:
                raise EncodingError(f"Cluster {i} weight {cluster.weight} outside [0, 1]")
            if not all(_finite(c) and 0.0 <= c <= 1.0 for c in cluster.centroid):
                raise EncodingError(f"Cluster {i} centroid {cluster.centroid} outside [0, 1]")
            total += cluster.weight

        if abs(total - 1.0) > WEIGHT_EPSILON:
            raise EncodingError(f"Cluster weights sum to {total:.8f}, expected 1.0")

    def as_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (rgb (k, 3), weights (k,), centroids (k, 2)) float64 arrays."""
        rgb = np.array([c.rgb for c in self.clusters], dtype=np.float64)
        weights = np.array([c.weight for c in self.clusters], dtype=np.float64)
        centroids = np.array([c.centroid for c in self.clusters], dtype=np.float64)
        return rgb, weights, centroids

    def to_dict(self) -> dict:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "lighting": self.lighting,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ColorDescriptor":
        return cls(
            clusters=tuple(ColorCluster.from_dict(c) for c in data["clusters"]),
            lighting=float(data["lighting"]),
        )


def canonical_order(clusters: Iterable[ColorCluster]) -> Tuple[ColorCluster, ...]:
    """Heaviest cluster first; ties broken by colour, then position."""
    return tuple(sorted(clusters, key=ColorCluster.sort_key))


def extract(image: ImageInput,
            region_of_interest: Optional[Rect] = None,
            k: int = DEFAULT_CLUSTERS) -> ColorDescriptor:
    """
    Extract a ColorDescriptor from a decoded frame.

    Process:
        1. Validate the buffer and crop to the region of interest
        2. Bound the working resolution (INTER_AREA downscale)
        3. Drop transparent pixels for RGBA input
        4. Deterministically seeded k-means over opaque pixels
        5. Per-cluster weight and centroid, plus a lighting estimate

    Args:
        image: RawImage or HxWx3 / HxWx4 uint8 array (RGB order).
        region_of_interest: Optional crop, defaults to the full frame.
        k: Number of cluster slots (5-8).

    Returns:
        Canonically ordered descriptor with exactly k clusters.

    Raises:
        InvalidImageError: On malformed buffers or fully transparent frames.
        ValueError: If k is outside the supported range.
    """
    if not MIN_CLUSTERS <= k <= MAX_CLUSTERS:
        raise ValueError(f"k must be between {MIN_CLUSTERS} and {MAX_CLUSTERS}, got {k}")

    image_np, mask = to_pixel_array(image)
    image_np, mask = crop_region(image_np, mask, region_of_interest)
    image_np, mask = limit_resolution(image_np, mask)

    h, w = image_np.shape[:2]
    rows, cols = np.indices((h, w))
    if mask is None:
        pixels = image_np.reshape(-1, 3)
        xs = (cols.reshape(-1) + 0.5) / w
        ys = (rows.reshape(-1) + 0.5) / h
    else:
        if not np.any(mask):
            raise InvalidImageError("Image has no opaque pixels")
        pixels = image_np[mask]
        xs = (cols[mask] + 0.5) / w
        ys = (rows[mask] + 0.5) / h

    labels, centers = _cluster_colors(pixels, k)

    counts = np.bincount(labels, minlength=len(centers)).astype(np.float64)
    weights = counts / counts.sum()
    weights = weights / weights.sum()

    sum_x = np.bincount(labels, weights=xs, minlength=len(centers))
    sum_y = np.bincount(labels, weights=ys, minlength=len(centers))

    clusters = []
    for j in range(len(centers)):
        if counts[j] == 0:
            continue
        cx = float(sum_x[j] / counts[j])
        cy = float(sum_y[j] / counts[j])
        clusters.append(ColorCluster(
            rgb=tuple(float(np.clip(c, 0.0, 255.0)) for c in centers[j]),
            weight=float(weights[j]),
            centroid=(min(max(cx, 0.0), 1.0), min(max(cy, 0.0), 1.0)),
        ))

    descriptor = ColorDescriptor.from_clusters(
        clusters, lighting=estimate_lighting(pixels), k=k
    )
    logger.debug(
        f"Extracted {len(clusters)} clusters from {w}x{h} frame "
        f"({len(pixels)} pixels), lighting={descriptor.lighting:.3f}"
    )
    return descriptor


def estimate_lighting(pixels: np.ndarray) -> float:
    """
    Colour-temperature proxy in [0, 1].

    Luminance-weighted red mean over (red + blue) means: 0.5 is neutral,
    higher is a warm cast, lower a cool one.
    """
    lum = luminance(pixels)
    total = float(lum.sum())
    if total <= 0.0:
        return 0.5
    red = float((lum * pixels[:, 0]).sum()) / total
    blue = float((lum * pixels[:, 2]).sum()) / total
    if red + blue <= 0.0:
        return 0.5
    return red / (red + blue)


def _cluster_colors(pixels: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Cluster (N, 3) uint8 pixels into at most k colours.

    Works on the distinct colours weighted by their pixel counts, which is
    equivalent to clustering every pixel and much cheaper on flat product
    artwork.

    Returns:
        Tuple of (per-pixel labels (N,), centres (k', 3) float64).
    """
    colors, inverse, counts = np.unique(
        pixels, axis=0, return_inverse=True, return_counts=True
    )
    inverse = inverse.reshape(-1)
    colors = colors.astype(np.float64)
    counts = counts.astype(np.float64)

    # Few distinct colours: each one is its own cluster
    if len(colors) <= k:
        return inverse, colors

    # Seed from evenly spaced samples along the luminance-sorted palette
    lum = luminance(colors)
    order = np.lexsort((colors[:, 2], colors[:, 1], colors[:, 0], lum))
    seeds = np.linspace(0, len(colors) - 1, k).round().astype(int)
    centers = colors[order[seeds]].copy()

    for iteration in range(KMEANS_MAX_ITER):
        assignment = _assign(colors, centers)
        new_centers = _weighted_means(colors, counts, assignment, centers)
        shift = float(np.max(np.linalg.norm(new_centers - centers, axis=1)))
        centers = new_centers
        if shift <= CONVERGENCE_SHIFT:
            logger.debug(f"k-means converged after {iteration + 1} iterations")
            break

    assignment = _assign(colors, centers)
    centers = _weighted_means(colors, counts, assignment, centers)
    return assignment[inverse], centers


def _assign(colors: np.ndarray, centers: np.ndarray) -> np.ndarray:
    distances = ((colors[:, None, :] - centers[None, :, :]) ** 2).sum(axis=2)
    return np.argmin(distances, axis=1)


def _weighted_means(colors: np.ndarray,
                    counts: np.ndarray,
                    assignment: np.ndarray,
                    previous: np.ndarray) -> np.ndarray:
    k = len(previous)
    totals = np.bincount(assignment, weights=counts, minlength=k)
    sums = np.stack([
        np.bincount(assignment, weights=counts * colors[:, ch], minlength=k)
        for ch in range(3)
    ], axis=1)
    centers = previous.copy()
    filled = totals > 0
    centers[filled] = sums[filled] / totals[filled, None]
    return centers


def _finite(value) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False
