"""
Capture quality signals.

Registration confidence is supplied to the token encoder by the caller;
these helpers give callers a consistent way to derive it from the frame
that is about to be registered.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from .preprocessing import ImageInput, Rect, crop_region, luminance, to_grayscale, to_pixel_array

logger = logging.getLogger(__name__)

# Laplacian variance at which a frame counts as fully in focus
FOCUS_NORMALIZER = float(os.environ.get("FOCUS_NORMALIZER", "300.0"))
SHADOW_LUMINANCE = 0.3


@dataclass(frozen=True)
class CaptureQuality:
    focus: float
    brightness: float
    shadow: float
    dominant_share: float
    score: float


def assess_capture(image: ImageInput,
                   region_of_interest: Optional[Rect] = None) -> CaptureQuality:
    """
    Score how suitable a frame is for registration.

    Starts from a neutral 0.5 and adjusts:
        +0.2 scaled by focus (Laplacian variance)
        +0.1 when mean brightness is in the 0.4-0.9 band
        +0.1 when one colour covers more than 30% of the frame
        -0.1 when more than half of the frame is in shadow

    Args:
        image: RawImage or RGB(A) uint8 array.
        region_of_interest: Optional crop.

    Returns:
        CaptureQuality with the individual signals and a score in [0, 1].
    """
    image_np, mask = to_pixel_array(image)
    image_np, mask = crop_region(image_np, mask, region_of_interest)

    gray = to_grayscale(image_np)
    focus_var = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    focus = min(focus_var / FOCUS_NORMALIZER, 1.0)

    pixels = image_np[mask] if mask is not None else image_np.reshape(-1, 3)
    if len(pixels) == 0:
        return CaptureQuality(focus=focus, brightness=0.0, shadow=1.0,
                              dominant_share=0.0, score=0.0)

    lum = luminance(pixels)
    brightness = float(lum.mean())
    shadow = float(np.mean(lum < SHADOW_LUMINANCE))

    # Coarse 4-level-per-channel palette; share of the most common bucket
    buckets = (pixels // 64).astype(np.int64)
    keys = buckets[:, 0] * 16 + buckets[:, 1] * 4 + buckets[:, 2]
    dominant_share = float(np.bincount(keys, minlength=64).max() / len(keys))

    score = 0.5 + 0.2 * focus
    if 0.4 < brightness < 0.9:
        score += 0.1
    if dominant_share > 0.3:
        score += 0.1
    if shadow > 0.5:
        score -= 0.1
    score = float(np.clip(score, 0.0, 1.0))

    logger.debug(
        f"Capture quality: focus={focus:.2f} brightness={brightness:.2f} "
        f"shadow={shadow:.2f} dominant={dominant_share:.2f} -> {score:.2f}"
    )
    return CaptureQuality(
        focus=focus,
        brightness=brightness,
        shadow=shadow,
        dominant_share=dominant_share,
        score=score,
    )


def frame_stability(previous: ImageInput, current: ImageInput) -> float:
    """
    Similarity of two consecutive frames in [0, 1].

    1.0 means no movement; frames of different sizes are compared after
    resizing the current frame to the previous one.
    """
    prev_np, _ = to_pixel_array(previous)
    cur_np, _ = to_pixel_array(current)
    prev_gray = to_grayscale(prev_np)
    cur_gray = to_grayscale(cur_np)
    if prev_gray.shape != cur_gray.shape:
        cur_gray = cv2.resize(cur_gray, (prev_gray.shape[1], prev_gray.shape[0]),
                              interpolation=cv2.INTER_AREA)
    diff = cv2.absdiff(prev_gray, cur_gray)
    return float(1.0 - diff.mean() / 255.0)
