"""Tests for feature extraction, descriptor matching and RANSAC."""

import numpy as np
import pytest

from recon3d.config import FeatureConfig, MatcherConfig
from recon3d.frontend import (
    FeatureExtractor,
    FeatureMatcher,
    Features,
    GeometricModel,
    grid_suppression,
    ransac,
    ransac_best_model,
    to_grayscale,
)
from recon3d.geometry import SE3, project_points

from conftest import make_features, random_descriptors, render_plane


@pytest.fixture
def extractor() -> FeatureExtractor:
    return FeatureExtractor(FeatureConfig(n_features=500))


class TestFeatureExtractor:
    """Test suite for FeatureExtractor."""

    def test_textured_image_yields_features(self, extractor, plane_texture):
        """A textured view produces a ranked, bounded feature set."""
        image = render_plane(plane_texture, np.zeros(3))
        features = extractor.extract(image)

        assert 100 < len(features) <= 500
        assert features.descriptors.shape == (len(features), 32)
        assert np.all(np.diff(features.responses) <= 0)

    def test_extraction_is_deterministic(self, extractor, plane_texture):
        """Same image, same features."""
        image = render_plane(plane_texture, np.zeros(3))
        first = extractor.extract(image)
        second = extractor.extract(image)
        np.testing.assert_array_equal(first.points, second.points)
        np.testing.assert_array_equal(first.descriptors, second.descriptors)

    def test_small_image_is_unusable(self, extractor):
        """Images below the minimum size give no features."""
        image = np.random.default_rng(0).integers(0, 255, (32, 32), dtype=np.uint8)
        assert not extractor.is_usable(image)
        assert len(extractor.extract(image)) == 0

    def test_flat_image_is_unusable(self, extractor):
        """Images without contrast give no features."""
        image = np.full((480, 640), 128, dtype=np.uint8)
        assert not extractor.is_usable(image)
        assert len(extractor.extract(image)) == 0

    def test_mask_excludes_region(self, extractor, plane_texture):
        """No feature is detected where the mask is zero."""
        image = render_plane(plane_texture, np.zeros(3))
        mask = np.full(image.shape, 255, dtype=np.uint8)
        mask[:, :320] = 0
        features = extractor.extract(image, mask)
        assert len(features) > 0
        assert features.points[:, 0].min() >= 300

    def test_features_are_read_only(self, extractor, plane_texture):
        """Extracted features cannot be modified."""
        features = extractor.extract(render_plane(plane_texture, np.zeros(3)))
        with pytest.raises(ValueError):
            features.points[0, 0] = -1.0

    def test_color_input(self):
        """BGR images are converted to grayscale."""
        bgr = np.zeros((10, 10, 3), dtype=np.uint8)
        assert to_grayscale(bgr).shape == (10, 10)


class TestGridSuppression:
    """Test suite for grid_suppression."""

    def test_caps_points_per_cell(self):
        """At most max_per_cell points survive in a cell, strongest first."""
        points = np.array([[1, 1], [2, 2], [3, 3], [50, 50]], dtype=np.float32)
        responses = np.array([0.1, 0.9, 0.5, 0.2])
        kept = grid_suppression(points, responses, cell_size=30, max_per_cell=2)
        assert kept.tolist() == [1, 2, 3]

    def test_empty(self):
        """No points, no indices."""
        assert len(grid_suppression(np.empty((0, 2)), np.empty(0), 30, 4)) == 0


class TestFeatureMatcher:
    """Test suite for FeatureMatcher."""

    def test_identical_sets_match_one_to_one(self):
        """Identical descriptor sets match every index to itself."""
        descriptors = random_descriptors(80)
        points = np.random.default_rng(1).uniform(0, 400, (80, 2))
        features = make_features(points, descriptors)

        matches = FeatureMatcher().match(features, features, geometric_check=False)

        assert len(matches) == 80
        np.testing.assert_array_equal(matches.indices_a, matches.indices_b)

    def test_empty_input(self):
        """Matching against an empty set returns no matches."""
        features = make_features(np.zeros((5, 2)), random_descriptors(5))
        assert len(FeatureMatcher().match(features, Features.empty())) == 0

    def test_duplicate_descriptors_rejected(self):
        """Ambiguous matches fail the ratio test."""
        descriptors = random_descriptors(10)
        doubled = np.vstack([descriptors, descriptors[:1]])
        matches = FeatureMatcher().match_descriptors(descriptors, doubled)
        assert 0 not in matches.indices_a.tolist()
        assert len(matches) == 9

    def test_match_is_symmetric(self, extractor, plane_texture):
        """match(a, b) and match(b, a) give the same pairs."""
        features_a = extractor.extract(render_plane(plane_texture, np.zeros(3)))
        features_b = extractor.extract(render_plane(plane_texture, np.array([0.05, 0.0, 0.0])))
        matcher = FeatureMatcher()

        ab = matcher.match(features_a, features_b)
        ba = matcher.match(features_b, features_a)

        assert len(ab) > 50
        assert ab.pairs() == ba.swapped().pairs()

    def test_geometric_check_keeps_consistent_matches(self, extractor, plane_texture):
        """Surviving matches follow the image shift of a translated camera."""
        features_a = extractor.extract(render_plane(plane_texture, np.zeros(3)))
        features_b = extractor.extract(render_plane(plane_texture, np.array([0.05, 0.0, 0.0])))

        matches = FeatureMatcher().match(features_a, features_b)

        # 0.05 m at 2 m depth with f = 500 shifts the image by -12.5 px in x
        flow = features_b.points[matches.indices_b] - features_a.points[matches.indices_a]
        assert np.median(flow[:, 0]) == pytest.approx(-12.5, abs=1.5)
        assert np.median(np.abs(flow[:, 1])) < 1.5

    def test_confidences_in_unit_interval(self):
        """Confidences lie in [0, 1]."""
        features = make_features(np.zeros((30, 2)), random_descriptors(30))
        matches = FeatureMatcher(MatcherConfig()).match(features, features, geometric_check=False)
        assert np.all((matches.confidences >= 0) & (matches.confidences <= 1))


def _two_view(synthetic_scene, n_outliers: int = 20, seed: int = 0):
    rng = np.random.default_rng(seed)
    pts1 = synthetic_scene.project(synthetic_scene.poses[0])
    pts2 = synthetic_scene.project(synthetic_scene.poses[2]).copy()
    pts2[-n_outliers:] = rng.uniform(0, 480, (n_outliers, 2))
    return pts1, pts2


class TestRansac:
    """Test suite for seeded RANSAC."""

    def test_fundamental_finds_inliers(self, synthetic_scene):
        """Exact correspondences are inliers of the fundamental matrix."""
        pts1, pts2 = _two_view(synthetic_scene)
        result = ransac(pts1, pts2, GeometricModel.FUNDAMENTAL, 2.0, 500, seed=3)

        assert result.success
        assert result.model == GeometricModel.FUNDAMENTAL
        assert result.inlier_mask[:-20].all()
        assert np.count_nonzero(result.inlier_mask[-20:]) <= 3

    def test_same_seed_same_result(self, synthetic_scene):
        """A fixed seed reproduces the hypothesis and mask."""
        pts1, pts2 = _two_view(synthetic_scene)
        a = ransac(pts1, pts2, GeometricModel.FUNDAMENTAL, 2.0, 200, seed=7)
        b = ransac(pts1, pts2, GeometricModel.FUNDAMENTAL, 2.0, 200, seed=7)
        assert a.iterations == b.iterations
        np.testing.assert_array_equal(a.inlier_mask, b.inlier_mask)
        np.testing.assert_allclose(a.matrix, b.matrix)

    def test_too_few_points(self):
        """Fewer points than a minimal sample gives no model."""
        pts = np.random.default_rng(0).uniform(0, 100, (3, 2))
        result = ransac(pts, pts, GeometricModel.HOMOGRAPHY, 2.0, 100)
        assert not result.success
        assert result.num_inliers == 0

    def test_planar_scene_prefers_homography(self, camera_matrix):
        """Points on a plane are explained by a homography."""
        rng = np.random.default_rng(0)
        plane = np.column_stack(
            [rng.uniform(-1, 1, 100), rng.uniform(-0.7, 0.7, 100), np.full(100, 3.0)]
        )
        moved = SE3.from_Rt(np.eye(3), np.array([0.2, 0.05, 0.0]))
        pts1, _ = project_points(camera_matrix, SE3.identity(), plane)
        pts2, _ = project_points(camera_matrix, moved.inverse(), plane)

        result = ransac_best_model(pts1, pts2, 2.0, 300)

        assert result.model == GeometricModel.HOMOGRAPHY
        assert result.num_inliers == 100
