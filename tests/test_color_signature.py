"""Tests for colour signature extraction and the descriptor model."""

import numpy as np
import pytest

from product_vision.color_signature import ColorCluster, ColorDescriptor, extract
from product_vision.config import DEFAULT_CLUSTERS
from product_vision.errors import EncodingError, InvalidImageError
from product_vision.preprocessing import RawImage, Rect

from conftest import RED, WHITE, make_descriptor


class TestExtract:
    """Tests for k-means descriptor extraction."""

    def test_fixed_cluster_count(self, red_square_image):
        desc = extract(red_square_image)
        assert desc.k == DEFAULT_CLUSTERS

    @pytest.mark.parametrize("k", [5, 8])
    def test_custom_k(self, noise_image, k):
        assert extract(noise_image, k=k).k == k

    @pytest.mark.parametrize("fixture", [
        "red_square_image", "blue_circle_image", "noise_image", "textured_image",
    ])
    def test_weights_sum_to_one(self, request, fixture):
        desc = extract(request.getfixturevalue(fixture))
        assert abs(sum(c.weight for c in desc.clusters) - 1.0) < 1e-6

    def test_deterministic(self, noise_image):
        assert extract(noise_image) == extract(noise_image.copy())

    def test_deterministic_from_raw_bytes(self, red_square_image):
        raw = RawImage.from_array(red_square_image)
        assert extract(raw) == extract(RawImage.from_array(red_square_image))
        assert extract(raw) == extract(red_square_image)

    def test_uniform_image_single_cluster(self):
        img = np.full((40, 60, 3), (10, 120, 240), dtype=np.uint8)
        desc = extract(img)
        assert desc.clusters[0].weight == pytest.approx(1.0)
        assert desc.clusters[0].rgb == (10.0, 120.0, 240.0)
        for pad in desc.clusters[1:]:
            assert pad.weight == 0.0
            assert pad.centroid == (0.5, 0.5)

    def test_few_colours_padded(self, split_image):
        desc = extract(split_image)
        assert sum(1 for c in desc.clusters if c.weight > 0) == 2
        assert desc.k == DEFAULT_CLUSTERS

    def test_centroids_locate_colours(self, split_image):
        desc = extract(split_image)
        by_colour = {c.rgb: c for c in desc.clusters if c.weight > 0}
        red = by_colour[tuple(float(v) for v in RED)]
        white = by_colour[tuple(float(v) for v in WHITE)]
        assert red.weight == pytest.approx(0.5)
        assert red.centroid[0] == pytest.approx(0.25)
        assert white.centroid[0] == pytest.approx(0.75)
        assert red.centroid[1] == pytest.approx(0.5)

    def test_dominant_colour_first(self, red_square_image):
        desc = extract(red_square_image)
        weights = [c.weight for c in desc.clusters]
        assert weights == sorted(weights, reverse=True)
        # 64% white background dominates the 36% red square
        r, g, b = desc.clusters[0].rgb
        assert min(r, g, b) > 200

    def test_centroids_within_unit_square(self, noise_image):
        for cluster in extract(noise_image).clusters:
            assert 0.0 <= cluster.centroid[0] <= 1.0
            assert 0.0 <= cluster.centroid[1] <= 1.0

    def test_noise_uses_every_slot(self, noise_image):
        desc = extract(noise_image)
        assert all(c.weight > 0 for c in desc.clusters)

    def test_region_of_interest(self, split_image):
        desc = extract(split_image, region_of_interest=Rect(0, 0, 50, 100))
        assert desc.clusters[0].weight == pytest.approx(1.0)
        assert desc.clusters[0].rgb == tuple(float(v) for v in RED)

    def test_region_clamped_to_frame(self, split_image):
        desc = extract(split_image, region_of_interest=Rect(-20, -20, 70, 500))
        assert desc.clusters[0].rgb == tuple(float(v) for v in RED)

    def test_region_outside_frame_raises(self, split_image):
        with pytest.raises(InvalidImageError):
            extract(split_image, region_of_interest=Rect(200, 200, 10, 10))

    def test_transparent_pixels_ignored(self):
        img = np.zeros((10, 10, 4), dtype=np.uint8)
        img[:, :5] = (*RED, 255)
        img[:, 5:] = (0, 255, 0, 0)
        desc = extract(img)
        assert desc.clusters[0].weight == pytest.approx(1.0)
        assert desc.clusters[0].rgb == tuple(float(v) for v in RED)

    def test_fully_transparent_raises(self):
        img = np.zeros((10, 10, 4), dtype=np.uint8)
        with pytest.raises(InvalidImageError, match="opaque"):
            extract(img)

    def test_large_frame_downscaled(self):
        img = np.full((600, 800, 3), 255, dtype=np.uint8)
        img[:, :400] = RED
        desc = extract(img)
        assert sum(c.weight for c in desc.clusters) == pytest.approx(1.0)
        assert desc.clusters[0].weight == pytest.approx(0.5, abs=0.02)


class TestLighting:
    """Tests for the warm/cool lighting estimate."""

    def test_warm_scene(self):
        img = np.full((20, 20, 3), RED, dtype=np.uint8)
        assert extract(img).lighting > 0.5

    def test_cool_scene(self):
        img = np.full((20, 20, 3), (30, 30, 200), dtype=np.uint8)
        assert extract(img).lighting < 0.5

    def test_neutral_scene(self):
        img = np.full((20, 20, 3), 255, dtype=np.uint8)
        assert extract(img).lighting == pytest.approx(0.5)

    def test_black_scene_is_neutral(self):
        img = np.zeros((20, 20, 3), dtype=np.uint8)
        assert extract(img).lighting == 0.5


class TestInvalidInput:
    """Malformed buffers are rejected with InvalidImageError."""

    def test_zero_width(self):
        with pytest.raises(InvalidImageError, match="positive"):
            extract(RawImage(width=0, height=10, data=b""))

    def test_length_mismatch(self):
        with pytest.raises(InvalidImageError, match="expected 300"):
            extract(RawImage(width=10, height=10, data=bytes(299)))

    def test_unsupported_channels(self):
        with pytest.raises(InvalidImageError):
            extract(RawImage(width=2, height=2, data=bytes(8), channels=2))

    def test_grayscale_array_rejected(self):
        with pytest.raises(InvalidImageError):
            extract(np.zeros((10, 10), dtype=np.uint8))

    def test_empty_array_rejected(self):
        with pytest.raises(InvalidImageError):
            extract(np.zeros((0, 10, 3), dtype=np.uint8))

    def test_invalid_image_is_value_error(self):
        with pytest.raises(ValueError):
            extract(RawImage(width=1, height=1, data=b"\x00"))

    def test_k_out_of_range(self, red_square_image):
        with pytest.raises(ValueError, match="k must be"):
            extract(red_square_image, k=3)


class TestColorDescriptor:
    """Tests for descriptor construction and validation."""

    def test_from_clusters_pads_and_orders(self):
        desc = make_descriptor((WHITE, 0.3, (0.5, 0.1)), (RED, 0.7, (0.5, 0.5)))
        assert desc.k == 6
        assert desc.clusters[0].rgb == tuple(float(v) for v in RED)
        assert desc.clusters[-1] == ColorCluster.padding()
        desc.validate()

    def test_too_many_clusters(self):
        clusters = [((i, i, i), 1 / 7, (0.5, 0.5)) for i in range(7)]
        with pytest.raises(EncodingError):
            ColorDescriptor.from_clusters(clusters, k=6)

    def test_weights_must_sum_to_one(self):
        desc = make_descriptor((RED, 0.5, (0.5, 0.5)), (WHITE, 0.3, (0.5, 0.5)))
        with pytest.raises(EncodingError, match="sum"):
            desc.validate()

    def test_centroid_out_of_range(self):
        desc = make_descriptor((RED, 1.0, (1.5, 0.5)))
        with pytest.raises(EncodingError, match="centroid"):
            desc.validate()

    def test_colour_out_of_range(self):
        desc = make_descriptor(((300, 0, 0), 1.0, (0.5, 0.5)))
        with pytest.raises(EncodingError, match="colour"):
            desc.validate()

    def test_lighting_out_of_range(self):
        desc = make_descriptor((RED, 1.0, (0.5, 0.5)), lighting=1.2)
        with pytest.raises(EncodingError, match="Lighting"):
            desc.validate()

    def test_nan_weight_rejected(self):
        desc = make_descriptor((RED, float("nan"), (0.5, 0.5)))
        with pytest.raises(EncodingError):
            desc.validate()

    def test_wrong_cluster_count(self):
        desc = ColorDescriptor(clusters=(ColorCluster(RED, 1.0, (0.5, 0.5)),), lighting=0.5)
        with pytest.raises(EncodingError, match="clusters"):
            desc.validate()

    def test_dict_round_trip(self, noise_image):
        desc = extract(noise_image)
        assert ColorDescriptor.from_dict(desc.to_dict()) == desc
