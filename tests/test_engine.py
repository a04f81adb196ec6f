"""Tests for the VisionEngine facade."""

import numpy as np
import pytest

from product_vision.bank import InMemoryBankStore
from product_vision.config import SessionConfig
from product_vision.engine import VisionEngine
from product_vision.errors import BankUnavailableError, EncodingError, TenantMismatchError
from product_vision.preprocessing import RawImage, Rect
from product_vision.session import Outcome, RecognitionSession

from conftest import BASE_TIME, FakeCamera, make_token, red_can_frame


@pytest.fixture
def engine(store):
    return VisionEngine(store)


class TestRegisterProduct:
    def test_register_appends_token(self, engine, store, soda_can_image):
        token = engine.register_product(soda_can_image, "shop-a", "red-soda-can",
                                        captured_at=BASE_TIME)
        assert store.tokens_for("shop-a") == (token,)
        assert token.created_at == BASE_TIME
        assert token.descriptor.k == engine.k

    def test_confidence_derived_from_quality(self, engine, textured_image):
        token = engine.register_product(textured_image, "shop-a", "board")
        assert 0.5 < token.registration_confidence <= 1.0

    def test_explicit_confidence_stored(self, engine, soda_can_image):
        token = engine.register_product(soda_can_image, "shop-a", "red",
                                        registration_confidence=0.42)
        assert token.registration_confidence == 0.42

    def test_reregistration_adds_token(self, engine, store, soda_can_image):
        engine.register_product(soda_can_image, "shop-a", "red", captured_at=BASE_TIME)
        engine.register_product(red_can_frame(10, 90), "shop-a", "red")
        assert len(store.tokens_for_product("shop-a", "red")) == 2

    def test_invalid_product_id(self, engine, soda_can_image):
        with pytest.raises(EncodingError):
            engine.register_product(soda_can_image, "shop-a", "")

    def test_custom_k(self, store, soda_can_image):
        token = VisionEngine(store, k=8).register_product(soda_can_image, "shop-a", "red")
        assert token.descriptor.k == 8


class TestRecognize:
    def test_registered_product_recognised(self, engine, soda_can_image, blue_circle_image):
        engine.register_product(soda_can_image, "shop-a", "red-soda-can")
        engine.register_product(blue_circle_image, "shop-a", "blue-label")
        result = engine.recognize(soda_can_image, "shop-a")
        assert result.outcome is Outcome.CONFIDENT
        assert result.best.product_id == "red-soda-can"
        assert result.best.similarity == 1.0

    def test_raw_image_input(self, engine, soda_can_image):
        engine.register_product(soda_can_image, "shop-a", "red-soda-can")
        result = engine.recognize(RawImage.from_array(soda_can_image), "shop-a")
        assert result.confident

    def test_perturbed_capture_recognised(self, engine, soda_can_image):
        engine.register_product(soda_can_image, "shop-a", "red-soda-can")
        result = engine.recognize(red_can_frame(20, 85), "shop-a")
        assert result.outcome is Outcome.CONFIDENT
        assert result.best.similarity >= 0.75

    def test_empty_bank_no_match(self, engine, soda_can_image):
        result = engine.recognize(soda_can_image, "shop-a")
        assert result.outcome is Outcome.NO_MATCH
        assert result.error is None

    def test_tenants_isolated(self, engine, soda_can_image):
        engine.register_product(soda_can_image, "shop-a", "red-soda-can")
        assert engine.recognize(soda_can_image, "shop-b").outcome is Outcome.NO_MATCH

    def test_invalid_frame_is_error(self, engine):
        result = engine.recognize(RawImage(width=4, height=4, data=bytes(10)), "shop-a")
        assert result.outcome is Outcome.ERROR
        assert result.recoverable

    def test_region_of_interest(self, engine, split_image):
        engine.register_product(split_image, "shop-a", "red-half",
                                region_of_interest=Rect(0, 0, 50, 100))
        frame = split_image.copy()
        frame[:, 50:] = (0, 0, 0)
        result = engine.recognize(frame, "shop-a", region_of_interest=Rect(0, 0, 50, 100))
        assert result.best.similarity == 1.0

    def test_top_k(self, engine, noise_image):
        for i in range(4):
            engine.register_product(np.roll(noise_image, i * 10, axis=0), "shop-a", f"p{i}")
        assert len(engine.recognize(noise_image, "shop-a", top_k=2).candidates) == 2

    def test_consistency_fault_propagates(self, engine, store, red_can_descriptor, soda_can_image):
        store._tokens["shop-a"].append(make_token(red_can_descriptor, "p1", tenant_id="shop-b"))
        with pytest.raises(TenantMismatchError):
            engine.recognize(soda_can_image, "shop-a")

    def test_zero_top_k_rejected(self, engine, soda_can_image):
        engine.register_product(soda_can_image, "shop-a", "red-soda-can")
        with pytest.raises(ValueError, match="top_k"):
            engine.recognize(soda_can_image, "shop-a", top_k=0)

    def test_unreachable_bank_is_error(self, soda_can_image):
        class DownStore(InMemoryBankStore):
            def _read(self, tenant_id):
                raise BankUnavailableError("bank offline")

        result = VisionEngine(DownStore()).recognize(soda_can_image, "shop-a")
        assert result.outcome is Outcome.ERROR
        assert isinstance(result.error, BankUnavailableError)
        assert result.recoverable


class TestOpenSession:
    def test_session_shares_engine_settings(self, store, soda_can_image):
        engine = VisionEngine(store, k=7, top_k=3)
        engine.register_product(soda_can_image, "shop-a", "red-soda-can")
        camera = FakeCamera(soda_can_image)
        with engine.open_session(camera, "shop-a") as session:
            assert isinstance(session, RecognitionSession)
            assert session.config.clusters == 7
            assert session.config.top_k == 3
            assert session.run_cycle().confident
        assert camera.released

    def test_explicit_config(self, engine, soda_can_image):
        config = SessionConfig(max_consecutive_no_match=1)
        with engine.open_session(FakeCamera(soda_can_image), "shop-a", config=config) as session:
            assert session.run_cycle().prompt_registration
