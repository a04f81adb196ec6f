"""
Recognition session controller.

One session owns one camera stream and walks a single cycle at a time:

    IDLE -> CAPTURING -> EXTRACTING -> MATCHING -> {CONFIDENT, AMBIGUOUS, NO_MATCH} -> IDLE

Capture, extraction and matching run on a single worker thread so each
step can be timed out or cancelled without blocking the caller forever. Every
exit path (success, error, timeout, cancellation) lands back in IDLE.
Recognition never writes to the bank; registration is a separate,
explicit call.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

import cv2
import numpy as np

from .bank import BankStore
from .color_signature import extract
from .config import SessionConfig, Thresholds
from .errors import (
    BankUnavailableError, CaptureError, EncodingError, InvalidImageError,
    RecognitionTimeoutError, SessionBusyError, VisionError,
)
from .matcher import MatchCandidate, match
from .preprocessing import ImageInput, Rect
from .quality import assess_capture
from .tokens import VisualToken, encode

logger = logging.getLogger(__name__)

# How often a waiting cycle checks for cancellation (seconds)
POLL_INTERVAL = 0.02

RECOVERABLE_ERRORS = (
    CaptureError, InvalidImageError, EncodingError,
    RecognitionTimeoutError, BankUnavailableError,
)


class SessionState(Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    EXTRACTING = "extracting"
    MATCHING = "matching"
    CONFIDENT = "confident"
    AMBIGUOUS = "ambiguous"
    NO_MATCH = "no_match"


class Outcome(Enum):
    CONFIDENT = "confident"
    AMBIGUOUS = "ambiguous"
    NO_MATCH = "no_match"
    ERROR = "error"
    CANCELLED = "cancelled"


_TERMINAL_STATES = {
    Outcome.CONFIDENT: SessionState.CONFIDENT,
    Outcome.AMBIGUOUS: SessionState.AMBIGUOUS,
    Outcome.NO_MATCH: SessionState.NO_MATCH,
}


@dataclass(frozen=True)
class RecognitionResult:
    """
    Outcome of one recognition cycle.

    NO_MATCH is a normal result (offer registration); ERROR carries the
    typed exception (try again). Callers must keep the two apart.
    """

    outcome: Outcome
    candidates: Tuple[MatchCandidate, ...] = ()
    elapsed_ms: float = 0.0
    error: Optional[VisionError] = None
    consecutive_no_match: int = 0
    prompt_registration: bool = False

    @property
    def confident(self) -> bool:
        return self.outcome is Outcome.CONFIDENT

    @property
    def best(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def recoverable(self) -> bool:
        return self.error is None or self.error.recoverable

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "confident": self.confident,
            "candidates": [c.to_dict() for c in self.candidates],
            "elapsed_ms": round(self.elapsed_ms, 1),
            "error": str(self.error) if self.error else None,
            "consecutive_no_match": self.consecutive_no_match,
            "prompt_registration": self.prompt_registration,
        }


def classify(candidates: Sequence[MatchCandidate],
             thresholds: Optional[Thresholds] = None) -> Outcome:
    """
    Turn a ranked candidate list into a decision.

        no candidates, or best below no_match          -> NO_MATCH
        runner-up within ambiguity_margin of the best  -> AMBIGUOUS
        best at or above accept                        -> CONFIDENT
        anything else (weak but clear leader)          -> AMBIGUOUS
    """
    thresholds = thresholds or Thresholds()
    if not candidates or candidates[0].similarity < thresholds.no_match:
        return Outcome.NO_MATCH
    if (len(candidates) > 1
            and candidates[0].similarity - candidates[1].similarity < thresholds.ambiguity_margin):
        return Outcome.AMBIGUOUS
    if candidates[0].similarity >= thresholds.accept:
        return Outcome.CONFIDENT
    return Outcome.AMBIGUOUS


class Camera(ABC):
    """Frame source owned by a session."""

    def open(self) -> None:
        """Acquire the device. Called once when the session starts."""

    @abstractmethod
    def capture(self) -> ImageInput:
        """Return one RGB frame; raise CaptureError when none is available."""

    def release(self) -> None:
        """Free the device. Called once on every session exit path."""


class OpenCVCamera(Camera):
    """cv2.VideoCapture adapter returning RGB frames."""

    def __init__(self, device_index: int = 0):
        self.device_index = device_index
        self._capture = None

    def open(self) -> None:
        self._capture = cv2.VideoCapture(self.device_index)
        if not self._capture.isOpened():
            self._capture.release()
            self._capture = None
            raise CaptureError(f"Camera {self.device_index} could not be opened")
        logger.info(f"Opened camera {self.device_index}")

    def capture(self) -> np.ndarray:
        if self._capture is None:
            raise CaptureError("Camera is not open")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CaptureError(f"Camera {self.device_index} returned no frame")
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Released camera {self.device_index}")


class _Cancelled(Exception):
    pass


class RecognitionSession:
    """
    Single-stream recognition state machine.

    Use as a context manager so the camera, the worker thread and the
    auto-capture timer are released on every exit path:

        with RecognitionSession(camera, store, "shop-1") as session:
            result = session.run_cycle()
    """

    def __init__(self,
                 camera: Camera,
                 store: BankStore,
                 tenant_id: str,
                 config: Optional[SessionConfig] = None,
                 region_of_interest: Optional[Rect] = None,
                 on_state_change: Optional[Callable[[SessionState], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.camera = camera
        self.store = store
        self.tenant_id = tenant_id
        self.config = config or SessionConfig()
        self.region_of_interest = region_of_interest
        self._on_state_change = on_state_change
        self._clock = clock

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._registering = False
        self._closed = False
        self._cancel_event = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recognition")
        # Step that timed out or was cancelled while already running
        self._abandoned: Optional[Future] = None

        self._bank_lock = threading.Lock()
        self._bank: Optional[Tuple[VisualToken, ...]] = None
        self._bank_loaded_at = 0.0

        self._consecutive_no_match = 0
        self._auto_thread: Optional[threading.Thread] = None
        self._auto_stop = threading.Event()

    # -- lifecycle -------------------------------------------------------

    def __enter__(self) -> "RecognitionSession":
        try:
            self.camera.open()
        except BaseException:
            self._executor.shutdown(wait=False)
            self._closed = True
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        """Stop auto capture, cancel in-flight work and release the camera."""
        if self._closed:
            return
        self._closed = True
        try:
            self._auto_stop.set()
            self.cancel()
            self.stop_auto_capture()
            self._executor.shutdown(wait=False)
        finally:
            self.camera.release()
        logger.info(f"Recognition session for tenant {self.tenant_id!r} closed")

    # -- state -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def consecutive_no_match(self) -> int:
        return self._consecutive_no_match

    def cancel(self) -> None:
        """Abort the in-flight cycle, if any. Safe from any thread."""
        with self._lock:
            if self._state is SessionState.IDLE:
                return
            self._cancel_event.set()
        logger.info("Recognition cycle cancellation requested")

    def _transition(self, state: SessionState, check_cancel: bool = True) -> None:
        if check_cancel and self._cancel_event.is_set():
            raise _Cancelled()
        with self._lock:
            self._state = state
        logger.debug(f"Session state -> {state.value}")
        if self._on_state_change is not None:
            self._on_state_change(state)

    # -- bank ------------------------------------------------------------

    def refresh_bank(self) -> Tuple[VisualToken, ...]:
        """Reload the tenant's bank snapshot from the store."""
        tokens = self.store.tokens_for(self.tenant_id)
        with self._bank_lock:
            self._bank = tokens
            self._bank_loaded_at = self._clock()
        logger.info(f"Loaded {len(tokens)} tokens for tenant {self.tenant_id!r}")
        return tokens

    def _current_bank(self) -> Tuple[VisualToken, ...]:
        with self._bank_lock:
            bank = self._bank
            age = self._clock() - self._bank_loaded_at
        interval = self.config.bank_refresh_interval
        if bank is None or (interval is not None and age >= interval):
            return self.refresh_bank()
        return bank

    # -- recognition -----------------------------------------------------

    def run_cycle(self) -> RecognitionResult:
        """
        Capture one frame and recognise it.

        Returns:
            RecognitionResult. Capture failures, invalid frames and
            timeouts come back as recoverable ERROR results; cancellation
            as CANCELLED.

        Raises:
            SessionBusyError: If a cycle or registration is in progress.
            TenantMismatchError: On a bank consistency fault.
        """
        with self._lock:
            if self._closed:
                raise SessionBusyError("Session is closed")
            if self._state is not SessionState.IDLE or self._registering:
                raise SessionBusyError(f"Session is {self._state.value}")
            self._cancel_event.clear()
            self._state = SessionState.CAPTURING

        started = time.perf_counter()
        cfg = self.config
        try:
            if self._on_state_change is not None:
                self._on_state_change(SessionState.CAPTURING)
            self._check_abandoned()
            frame = self._await(
                self._executor.submit(self.camera.capture), cfg.capture_timeout, "capture"
            )

            self._transition(SessionState.EXTRACTING)
            descriptor = self._await(
                self._executor.submit(extract, frame, self.region_of_interest, cfg.clusters),
                cfg.extraction_timeout, "extraction",
            )

            self._transition(SessionState.MATCHING)
            candidates = self._await(
                self._executor.submit(self._match, descriptor),
                cfg.matching_timeout, "matching",
            )

            outcome = classify(candidates, cfg.thresholds)
            self._transition(_TERMINAL_STATES[outcome])
            result = self._finish(outcome, candidates, started)

        except _Cancelled:
            logger.info("Recognition cycle cancelled")
            result = RecognitionResult(
                outcome=Outcome.CANCELLED,
                elapsed_ms=_elapsed_ms(started),
                consecutive_no_match=self._consecutive_no_match,
            )
        except RECOVERABLE_ERRORS as e:
            logger.warning(f"Recognition cycle failed: {e}")
            result = RecognitionResult(
                outcome=Outcome.ERROR,
                elapsed_ms=_elapsed_ms(started),
                error=e,
                consecutive_no_match=self._consecutive_no_match,
            )
        finally:
            self._transition(SessionState.IDLE, check_cancel=False)
            self._cancel_event.clear()

        return result

    def _match(self, descriptor) -> list:
        cfg = self.config
        return match(
            descriptor,
            self._current_bank(),
            top_k=cfg.top_k,
            weights=cfg.weights,
            tenant_id=self.tenant_id,
        )

    def _finish(self, outcome: Outcome, candidates, started: float) -> RecognitionResult:
        if outcome is Outcome.NO_MATCH:
            self._consecutive_no_match += 1
        else:
            self._consecutive_no_match = 0
        prompt = self._consecutive_no_match >= self.config.max_consecutive_no_match

        result = RecognitionResult(
            outcome=outcome,
            candidates=tuple(candidates),
            elapsed_ms=_elapsed_ms(started),
            consecutive_no_match=self._consecutive_no_match,
            prompt_registration=prompt,
        )
        best = result.best
        logger.info(
            f"Recognition {outcome.value} in {result.elapsed_ms:.0f}ms"
            + (f": {best.product_id!r} at {best.similarity:.3f}" if best else "")
        )
        return result

    def _await(self, future: Future, timeout: float, step: str):
        deadline = self._clock() + timeout
        while True:
            if self._cancel_event.is_set():
                self._abandon(future)
                raise _Cancelled()
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._abandon(future)
                raise RecognitionTimeoutError(f"{step} exceeded {timeout:.2f}s")
            done, _ = wait([future], timeout=min(remaining, POLL_INTERVAL))
            if done:
                return future.result()

    def _abandon(self, future: Future) -> None:
        if not future.cancel() and not future.done():
            self._abandoned = future

    def _check_abandoned(self) -> None:
        """
        Give a step abandoned by an earlier cycle up to capture_timeout to
        finish, then refuse to start while it still holds the worker.
        """
        stale = self._abandoned
        if stale is None:
            return
        done, _ = wait([stale], timeout=self.config.capture_timeout)
        if not done:
            raise CaptureError("Camera busy: a timed out or cancelled step is still running")
        self._abandoned = None

    # -- registration ----------------------------------------------------

    def register(self,
                 product_id: str,
                 image: ImageInput,
                 registration_confidence: Optional[float] = None) -> VisualToken:
        """
        Register a frame as a new token for product_id.

        Only allowed while idle. When no confidence is given it is derived
        from the frame's capture quality.
        """
        with self._lock:
            if self._closed:
                raise SessionBusyError("Session is closed")
            if self._state is not SessionState.IDLE or self._registering:
                raise SessionBusyError(f"Session is {self._state.value}")
            self._registering = True
        try:
            descriptor = extract(image, self.region_of_interest, self.config.clusters)
            if registration_confidence is None:
                registration_confidence = assess_capture(image, self.region_of_interest).score
            token = encode(
                descriptor, self.tenant_id, product_id,
                registration_confidence=registration_confidence,
            )
            self.store.bank(self.tenant_id).register(token)
            with self._bank_lock:
                if self._bank is not None:
                    self._bank = self._bank + (token,)
            self._consecutive_no_match = 0
            return token
        finally:
            with self._lock:
                self._registering = False

    # -- auto capture ----------------------------------------------------

    def start_auto_capture(self,
                           callback: Callable[[RecognitionResult], None],
                           interval: Optional[float] = None) -> None:
        """
        Run a cycle every interval seconds and pass each result to callback.

        The timer re-arms only after a cycle has returned to IDLE and its
        result was delivered, so capture requests never queue up and
        results arrive in capture order.
        """
        if self._auto_thread is not None and self._auto_thread.is_alive():
            raise SessionBusyError("Auto capture is already running")
        interval = self.config.auto_capture_interval if interval is None else interval
        self._auto_stop.clear()
        self._auto_thread = threading.Thread(
            target=self._auto_capture_loop,
            args=(callback, interval),
            name=f"auto-capture-{self.tenant_id}",
            daemon=True,
        )
        self._auto_thread.start()
        logger.info(f"Auto capture started every {interval:.2f}s")

    def stop_auto_capture(self, timeout: Optional[float] = None) -> None:
        thread = self._auto_thread
        if thread is None:
            return
        self._auto_stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._auto_thread = None
        logger.info("Auto capture stopped")

    @property
    def auto_capture_running(self) -> bool:
        return self._auto_thread is not None and self._auto_thread.is_alive()

    def _auto_capture_loop(self, callback, interval: float) -> None:
        while not self._auto_stop.wait(interval):
            try:
                result = self.run_cycle()
            except SessionBusyError:
                logger.debug("Auto capture tick skipped: session busy")
                continue
            except VisionError as e:
                # Consistency faults are fatal: report once and stop the timer
                logger.error(f"Auto capture stopped: {e}")
                self._auto_stop.set()
                result = RecognitionResult(outcome=Outcome.ERROR, error=e,
                                           consecutive_no_match=self._consecutive_no_match)
            if self._auto_stop.is_set() and result.outcome is Outcome.CANCELLED:
                break
            try:
                callback(result)
            except Exception:
                logger.exception("Auto capture callback failed")


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
