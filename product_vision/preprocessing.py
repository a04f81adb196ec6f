"""
Image buffer handling for signature extraction.

Turns a caller-supplied buffer into a validated uint8 RGB array, applies
the optional region of interest, drops transparent pixels and bounds the
working resolution so extraction cost stays flat regardless of camera size.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .config import EXTRACT_MAX_DIM
from .errors import InvalidImageError

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = (3, 4)

# RGBA pixels at or below this alpha are treated as background
ALPHA_CUTOFF = 128


@dataclass(frozen=True)
class RawImage:
    """Decoded, row-major, channel-interleaved pixel buffer."""

    width: int
    height: int
    data: bytes
    channels: int = 3

    @classmethod
    def from_array(cls, image_np: np.ndarray) -> "RawImage":
        image_np = normalize_image(image_np)
        if image_np.ndim != 3:
            raise InvalidImageError(f"Expected HxWxC array, got shape {image_np.shape}")
        h, w, c = image_np.shape
        return cls(width=w, height=h, data=image_np.tobytes(), channels=c)


@dataclass(frozen=True)
class Rect:
    """Region of interest in pixel coordinates."""

    x: int
    y: int
    width: int
    height: int


ImageInput = Union[RawImage, np.ndarray]


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 format."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = image_np.astype(np.uint8)
    return image_np


def to_pixel_array(image: ImageInput) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Validate an input buffer and split it into RGB pixels and an opacity mask.

    Args:
        image: RawImage or HxWx3 / HxWx4 numpy array.

    Returns:
        Tuple of (HxWx3 uint8 RGB array, HxW boolean mask or None). The
        mask is only present for RGBA input.

    Raises:
        InvalidImageError: On zero dimensions, unsupported channel counts
            or a data length that does not match width*height*channels.
    """
    if isinstance(image, RawImage):
        if image.width <= 0 or image.height <= 0:
            raise InvalidImageError(
                f"Image dimensions must be positive, got {image.width}x{image.height}"
            )
        if image.channels not in SUPPORTED_CHANNELS:
            raise InvalidImageError(f"Unsupported channel count: {image.channels}")
        expected = image.width * image.height * image.channels
        if len(image.data) != expected:
            raise InvalidImageError(
                f"Pixel data has {len(image.data)} bytes, expected {expected} "
                f"({image.width}x{image.height}x{image.channels})"
            )
        array = np.frombuffer(image.data, dtype=np.uint8).reshape(
            image.height, image.width, image.channels
        )
    elif isinstance(image, np.ndarray):
        if image.ndim != 3 or image.shape[2] not in SUPPORTED_CHANNELS:
            raise InvalidImageError(f"Expected HxWx3 or HxWx4 array, got shape {image.shape}")
        if image.shape[0] == 0 or image.shape[1] == 0:
            raise InvalidImageError(f"Image dimensions must be positive, got {image.shape[:2]}")
        array = normalize_image(image)
    else:
        raise InvalidImageError(f"Unsupported image type: {type(image).__name__}")

    if array.shape[2] == 4:
        return np.ascontiguousarray(array[:, :, :3]), array[:, :, 3] > ALPHA_CUTOFF
    return np.ascontiguousarray(array), None


def crop_region(image_np: np.ndarray,
                mask: Optional[np.ndarray],
                region: Optional[Rect]) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Crop image and mask to the region, clamped to the frame."""
    if region is None:
        return image_np, mask

    h, w = image_np.shape[:2]
    x1 = max(0, region.x)
    y1 = max(0, region.y)
    x2 = min(w, region.x + region.width)
    y2 = min(h, region.y + region.height)

    if x2 <= x1 or y2 <= y1:
        raise InvalidImageError(f"Region {region} does not overlap the {w}x{h} frame")

    cropped = image_np[y1:y2, x1:x2]
    if mask is not None:
        mask = mask[y1:y2, x1:x2]
    return cropped, mask


def limit_resolution(image_np: np.ndarray,
                     mask: Optional[np.ndarray],
                     max_dim: int = EXTRACT_MAX_DIM
                     ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Downscale so the longer side is at most max_dim pixels.

    INTER_AREA averages source pixels, which is deterministic and keeps
    colour proportions close to the original frame.
    """
    h, w = image_np.shape[:2]
    scale = max_dim / max(h, w)
    if scale >= 1.0:
        return image_np, mask

    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    resized = cv2.resize(image_np, size, interpolation=cv2.INTER_AREA)
    if mask is not None:
        mask = cv2.resize(mask.astype(np.uint8), size, interpolation=cv2.INTER_NEAREST) > 0
    logger.debug(f"Downscaled {w}x{h} -> {size[0]}x{size[1]}")
    return resized, mask


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Per-pixel luma in [0, 1] for an (..., 3) RGB array."""
    pixels = pixels.astype(np.float64)
    return (pixels[..., 0] * 0.299 + pixels[..., 1] * 0.587 + pixels[..., 2] * 0.114) / 255.0


def to_grayscale(image_np: np.ndarray) -> np.ndarray:
    """uint8 grayscale view of an RGB array."""
    return cv2.cvtColor(image_np, cv2.COLOR_RGB2GRAY)
