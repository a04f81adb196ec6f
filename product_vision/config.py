"""
Tunable defaults for extraction, matching and recognition sessions.

Every value can be set through an environment variable and overridden
explicitly by the caller. The numbers are starting points for a typical
retail catalog; validate them against your own captures.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

# Extraction
DEFAULT_CLUSTERS = int(os.environ.get("VISION_CLUSTERS", "6"))
MIN_CLUSTERS = 5
MAX_CLUSTERS = 8
KMEANS_MAX_ITER = int(os.environ.get("KMEANS_MAX_ITER", "10"))
EXTRACT_MAX_DIM = int(os.environ.get("EXTRACT_MAX_DIM", "128"))
WEIGHT_EPSILON = 1e-6

# Matching
DEFAULT_TOP_K = int(os.environ.get("MATCH_TOP_K", "5"))
PREFILTER_THRESHOLD = int(os.environ.get("PREFILTER_THRESHOLD", "1000"))
PREFILTER_CANDIDATES = int(os.environ.get("PREFILTER_CANDIDATES", "200"))


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_optional_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    return float(value) if value else None


@dataclass(frozen=True)
class MatchWeights:
    """
    Relative weight of each distance term. Colour dominates; the spatial
    and lighting terms separate products that share a palette.
    """

    color: float = field(default_factory=lambda: _env_float("MATCH_COLOR_W", "0.6"))
    spatial: float = field(default_factory=lambda: _env_float("MATCH_SPATIAL_W", "0.25"))
    lighting: float = field(default_factory=lambda: _env_float("MATCH_LIGHTING_W", "0.15"))

    def __post_init__(self):
        if min(self.color, self.spatial, self.lighting) < 0:
            raise ValueError("Match weights must be non-negative")
        total = self.color + self.spatial + self.lighting
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Match weights must sum to 1.0, got {total:.4f}")


@dataclass(frozen=True)
class Thresholds:
    """Decision bounds used to classify a ranked candidate list."""

    accept: float = field(default_factory=lambda: _env_float("ACCEPT_THRESHOLD", "0.75"))
    ambiguity_margin: float = field(default_factory=lambda: _env_float("AMBIGUITY_MARGIN", "0.05"))
    no_match: float = field(default_factory=lambda: _env_float("NO_MATCH_THRESHOLD", "0.4"))

    def __post_init__(self):
        if not 0.0 <= self.no_match <= self.accept <= 1.0:
            raise ValueError(
                f"Expected 0 <= no_match ({self.no_match}) <= accept "
                f"({self.accept}) <= 1"
            )
        if self.ambiguity_margin < 0:
            raise ValueError("ambiguity_margin must be non-negative")


@dataclass(frozen=True)
class SessionConfig:
    """Caller-facing knobs for a recognition session."""

    clusters: int = DEFAULT_CLUSTERS
    top_k: int = DEFAULT_TOP_K
    thresholds: Thresholds = field(default_factory=Thresholds)
    weights: MatchWeights = field(default_factory=MatchWeights)
    capture_timeout: float = field(default_factory=lambda: _env_float("CAPTURE_TIMEOUT", "5.0"))
    extraction_timeout: float = field(default_factory=lambda: _env_float("EXTRACTION_TIMEOUT", "5.0"))
    matching_timeout: float = field(default_factory=lambda: _env_float("MATCHING_TIMEOUT", "5.0"))
    auto_capture_interval: float = field(
        default_factory=lambda: _env_float("AUTO_CAPTURE_INTERVAL", "2.0"))
    max_consecutive_no_match: int = int(os.environ.get("MAX_CONSECUTIVE_NO_MATCH", "5"))
    # None loads the bank once per session
    bank_refresh_interval: Optional[float] = field(
        default_factory=lambda: _env_optional_float("BANK_REFRESH_INTERVAL"))
