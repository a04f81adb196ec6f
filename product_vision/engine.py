"""
Visual recognition engine.

Front door for callers that do not need a camera-bound session:

    1. register_product  extract -> quality -> encode -> append to bank
    2. recognize         extract -> match -> classify, one frame at a time
    3. open_session      camera-bound RecognitionSession for live scanning

Input errors and an unreachable bank come back as ERROR results so the
caller can tell "try again" apart from "not registered yet". Bank
consistency errors always propagate.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from .bank import BankStore
from .color_signature import extract
from .config import DEFAULT_CLUSTERS, DEFAULT_TOP_K, MatchWeights, SessionConfig, Thresholds
from .matcher import match
from .preprocessing import ImageInput, Rect
from .quality import assess_capture
from .session import (
    RECOVERABLE_ERRORS, Camera, Outcome, RecognitionResult, RecognitionSession, classify,
)
from .tokens import VisualToken, encode

logger = logging.getLogger(__name__)


class VisionEngine:
    """
    Register and recognise products against per-tenant visual banks.
    """

    def __init__(self,
                 store: BankStore,
                 k: int = DEFAULT_CLUSTERS,
                 top_k: int = DEFAULT_TOP_K,
                 weights: Optional[MatchWeights] = None,
                 thresholds: Optional[Thresholds] = None):
        """
        Args:
            store: Bank store shared by every tenant served by this engine.
            k: Cluster count used for every extraction.
            top_k: Default number of candidates returned by recognize().
            weights: Distance term weights.
            thresholds: Confident / ambiguous / no-match bounds.
        """
        self.store = store
        self.k = k
        self.top_k = top_k
        self.weights = weights or MatchWeights()
        self.thresholds = thresholds or Thresholds()

    def register_product(self,
                         image: ImageInput,
                         tenant_id: str,
                         product_id: str,
                         registration_confidence: Optional[float] = None,
                         region_of_interest: Optional[Rect] = None,
                         captured_at: Optional[datetime] = None) -> VisualToken:
        """
        Register one capture of a product.

        Registering the same product again adds another token (another
        angle or lighting); earlier tokens stay in the bank.

        Raises:
            InvalidImageError: Malformed frame.
            EncodingError: Invalid ids or confidence.
            TenantMismatchError: Store partition inconsistency.
        """
        descriptor = extract(image, region_of_interest, self.k)
        if registration_confidence is None:
            registration_confidence = assess_capture(image, region_of_interest).score

        token = encode(
            descriptor, tenant_id, product_id,
            captured_at=captured_at,
            registration_confidence=registration_confidence,
        )
        self.store.bank(tenant_id).register(token)
        return token

    def recognize(self,
                  image: ImageInput,
                  tenant_id: str,
                  top_k: Optional[int] = None,
                  region_of_interest: Optional[Rect] = None) -> RecognitionResult:
        """
        Recognise a single frame against the tenant's bank.

        Returns:
            RecognitionResult with outcome CONFIDENT, AMBIGUOUS, NO_MATCH,
            or ERROR for a malformed frame or an unreachable bank.

        Raises:
            ValueError: If top_k < 1.
            TenantMismatchError: On a bank consistency fault.
        """
        started = time.perf_counter()
        if top_k is None:
            top_k = self.top_k
        try:
            descriptor = extract(image, region_of_interest, self.k)
            candidates = match(
                descriptor,
                self.store.tokens_for(tenant_id),
                top_k=top_k,
                weights=self.weights,
                tenant_id=tenant_id,
            )
        except RECOVERABLE_ERRORS as e:
            logger.warning(f"Recognition failed for {tenant_id!r}: {e}")
            return RecognitionResult(
                outcome=Outcome.ERROR,
                error=e,
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
            )

        outcome = classify(candidates, self.thresholds)
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        logger.info(
            f"Recognize ({tenant_id!r}): {outcome.value}, "
            f"{len(candidates)} candidates in {elapsed_ms:.0f}ms"
        )
        return RecognitionResult(
            outcome=outcome,
            candidates=tuple(candidates),
            elapsed_ms=elapsed_ms,
        )

    def open_session(self,
                     camera: Camera,
                     tenant_id: str,
                     config: Optional[SessionConfig] = None,
                     region_of_interest: Optional[Rect] = None,
                     **kwargs) -> RecognitionSession:
        """Create a camera-bound session using this engine's matching settings."""
        config = config or SessionConfig(
            clusters=self.k,
            top_k=self.top_k,
            thresholds=self.thresholds,
            weights=self.weights,
        )
        return RecognitionSession(
            camera, self.store, tenant_id,
            config=config,
            region_of_interest=region_of_interest,
            **kwargs,
        )
