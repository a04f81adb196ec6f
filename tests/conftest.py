"""Shared test fixtures for product recognition tests."""

import threading
import time
from datetime import datetime, timedelta, timezone

import cv2
import numpy as np
import pytest

from product_vision.bank import InMemoryBankStore
from product_vision.color_signature import ColorDescriptor
from product_vision.errors import CaptureError
from product_vision.session import Camera
from product_vision.tokens import encode

RED = (200, 30, 30)
WHITE = (255, 255, 255)
BLUE = (30, 30, 200)

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def red_can_frame(top=15, bottom=85):
    """100x100 red band on white; the band covers (bottom - top)% of the frame."""
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    img[top:bottom, :] = RED
    return img


def make_descriptor(*clusters, lighting=0.5, k=6):
    return ColorDescriptor.from_clusters(clusters, lighting=lighting, k=k)


def make_token(descriptor, product_id, tenant_id="shop-a", minutes=0, confidence=0.9):
    return encode(
        descriptor, tenant_id, product_id,
        captured_at=BASE_TIME + timedelta(minutes=minutes),
        registration_confidence=confidence,
    )


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = RED
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, BLUE, -1)
    return img


@pytest.fixture
def split_image():
    """100x100: left half red, right half white."""
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    img[:, :50] = RED
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def textured_image():
    """Generate a 200x200 checkerboard (sharp edges, high focus)."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 200
    for y in range(0, 200, 20):
        for x in range(0, 200, 20):
            if (x // 20 + y // 20) % 2 == 0:
                img[y:y+20, x:x+20] = [50, 50, 50]
    return img


@pytest.fixture
def soda_can_image():
    return red_can_frame()


@pytest.fixture
def red_can_descriptor():
    """Red 70% centred, white 30% around it, warm lighting."""
    return make_descriptor(
        (RED, 0.7, (0.5, 0.5)),
        (WHITE, 0.3, (0.5, 0.5)),
        lighting=0.7,
    )


@pytest.fixture
def blue_can_descriptor():
    return make_descriptor(
        (BLUE, 0.7, (0.5, 0.5)),
        (WHITE, 0.3, (0.5, 0.5)),
        lighting=0.3,
    )


@pytest.fixture
def store():
    return InMemoryBankStore()


class FakeCamera(Camera):
    """Serves frames from a list (cycled) and records its lifecycle."""

    def __init__(self, *frames, delay=0.0):
        self.frames = list(frames)
        self.delay = delay
        self.opened = False
        self.released = False
        self.captures = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def open(self):
        self.opened = True

    def capture(self):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            frame = self.frames[self.captures % len(self.frames)]
            self.captures += 1
            return frame
        finally:
            with self._lock:
                self.in_flight -= 1

    def release(self):
        self.released = True


class BrokenCamera(FakeCamera):
    def capture(self):
        raise CaptureError("device not ready")
