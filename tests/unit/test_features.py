"""
Unit tests for descriptor matching, correspondence pools and RANSAC fitting
"""

from unittest.mock import patch

import cv2
import numpy as np
import pytest

from common.types import FeatureSet, ReferencePattern, ScaledVariant
from locator.estimate import EstimateFailure, RansacSettings, RansacTransformEstimator, TransformFit, project_points
from locator.features import OrbCorrespondenceProvider, OrbFeatureExtractor, ProviderFailure, match_binary_knn_ratio
from locator.pool import CorrespondencePool


def random_descriptors(n, seed=0):
    return np.random.default_rng(seed).integers(0, 256, size=(n, 32), dtype=np.uint8)


class TestMatchBinaryKnnRatio:
    """Test cases for match_binary_knn_ratio"""

    def test_identical_descriptors_match_one_to_one(self):
        des = random_descriptors(50)
        perm = np.random.default_rng(1).permutation(50)
        matches = match_binary_knn_ratio(des, des[perm])
        assert len(matches) == 50
        assert len({m.trainIdx for m in matches}) == 50
        for m in matches:
            assert perm[m.trainIdx] == m.queryIdx

    def test_match_cap(self):
        des = random_descriptors(50)
        assert len(match_binary_knn_ratio(des, des, max_matches=10)) == 10

    def test_too_few_train_descriptors(self):
        des = random_descriptors(5)
        assert match_binary_knn_ratio(des, des[:1]) == []
        assert match_binary_knn_ratio(des[:0], des) == []

    def test_unrelated_descriptors_mostly_rejected(self):
        matches = match_binary_knn_ratio(random_descriptors(100, 1), random_descriptors(100, 2), ratio=0.6)
        assert len(matches) < 10


class TestOrbCorrespondenceProvider:
    """Test cases for OrbCorrespondenceProvider"""

    def test_pool_maps_reference_to_target(self):
        des = random_descriptors(40)
        ref_pts = np.random.default_rng(2).uniform(0, 50, size=(40, 2))
        pattern = ReferencePattern("p", 50, 50, FeatureSet(ref_pts, des))
        target = FeatureSet(ref_pts + [100.0, 20.0], des)

        pool = OrbCorrespondenceProvider().correspond(pattern, target)

        assert isinstance(pool, CorrespondencePool)
        assert len(pool) == 40
        assert np.allclose(pool.tgt_pts - pool.ref_pts, [100.0, 20.0], atol=1e-3)

    def test_scaled_variant_points_in_reference_frame(self):
        des = random_descriptors(40)
        pts = np.random.default_rng(4).uniform(0, 50, size=(40, 2))
        pattern = ReferencePattern(
            "p", 50, 50,
            FeatureSet(pts, random_descriptors(40, seed=9)),
            variants=(ScaledVariant(2.0, FeatureSet(pts * 2.0, des)),),
        )
        target = FeatureSet(pts * 2.0 + 10.0, des)

        pool = OrbCorrespondenceProvider().correspond(pattern, target)

        assert len(pool) == 40
        assert np.allclose(pool.tgt_pts, pool.ref_pts * 2.0 + 10.0, atol=1e-3)

    def test_no_target_features(self):
        pattern = ReferencePattern("p", 10, 10, FeatureSet(np.zeros((3, 2)), random_descriptors(3)))
        out = OrbCorrespondenceProvider().correspond(pattern, FeatureSet.empty())
        assert out == ProviderFailure("no_target_features")

    def test_no_reference_features(self):
        pattern = ReferencePattern("p", 10, 10, FeatureSet.empty())
        target = FeatureSet(np.zeros((3, 2)), random_descriptors(3))
        assert OrbCorrespondenceProvider().correspond(pattern, target) == ProviderFailure("no_reference_features")


class TestOrbFeatureExtractor:
    def test_blank_image_has_no_features(self):
        fs = OrbFeatureExtractor().describe(np.zeros((100, 100), np.uint8))
        assert len(fs) == 0

    def test_textured_image(self):
        img = np.kron(np.random.default_rng(0).integers(0, 256, size=(25, 25)), np.ones((8, 8))).astype(np.uint8)
        fs = OrbFeatureExtractor(nfeatures=300).describe(img)
        assert len(fs) > 20
        assert fs.descriptors.shape[1] == 32

    def test_invalid_feature_count(self):
        with pytest.raises(ValueError):
            OrbFeatureExtractor(nfeatures=0)


class TestCorrespondencePool:
    """Test cases for CorrespondencePool"""

    def test_consume_and_available(self):
        pool = CorrespondencePool(np.zeros((5, 2)), np.ones((5, 2)))
        assert pool.consume([1, 3]) == 2
        assert pool.consume([3, 4]) == 1
        assert list(pool.available()) == [0, 2]
        assert pool.remaining == 2
        pool.reset()
        assert pool.remaining == 5

    def test_points_are_read_only_copies(self):
        src = np.zeros((3, 2), np.float32)
        pool = CorrespondencePool(src, src)
        assert src.flags.writeable
        assert not pool.ref_pts.flags.writeable

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            CorrespondencePool(np.zeros((3, 2)), np.zeros((2, 2)))


class TestRansacTransformEstimator:
    """Test cases for RansacTransformEstimator"""

    def _points(self, n_in=40, n_out=10):
        rng = np.random.default_rng(5)
        src = rng.uniform(0, 100, size=(n_in + n_out, 2))
        dst = src + [30.0, -12.0]
        dst[n_in:] = rng.uniform(0, 300, size=(n_out, 2))
        return src, dst

    @pytest.mark.parametrize("kind", ["projective", "affine"])
    def test_recovers_translation(self, kind):
        src, dst = self._points()
        fit = RansacTransformEstimator(kind).estimate(src, dst, RansacSettings())
        assert isinstance(fit, TransformFit)
        assert fit.inliers >= 40
        assert fit.inlier_mask[:40].all()
        out = project_points(fit.matrix, [[0, 0], [50, 50]])
        assert np.allclose(out, [[30, -12], [80, 38]], atol=0.5)

    def test_too_few_points(self):
        out = RansacTransformEstimator().estimate(np.zeros((3, 2)), np.zeros((3, 2)), RansacSettings())
        assert out == EstimateFailure("too_few_points")

    def test_length_mismatch(self):
        out = RansacTransformEstimator().estimate(np.zeros((5, 2)), np.zeros((4, 2)), RansacSettings())
        assert out == EstimateFailure("length_mismatch")

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            RansacTransformEstimator("similarity")

    @patch("cv2.findHomography")
    def test_opencv_error_becomes_failure(self, mock_fit):
        mock_fit.side_effect = cv2.error("boom")
        src, dst = self._points()
        out = RansacTransformEstimator().estimate(src, dst, RansacSettings())
        assert out == EstimateFailure("estimator_error")

    @patch("cv2.findHomography")
    def test_no_model_is_degenerate(self, mock_fit):
        mock_fit.return_value = (None, None)
        src, dst = self._points()
        assert RansacTransformEstimator().estimate(src, dst, RansacSettings()) == EstimateFailure("degenerate")

    @patch("cv2.findHomography")
    def test_non_finite_model(self, mock_fit):
        src, dst = self._points()
        M = np.eye(3)
        M[0, 2] = np.nan
        mock_fit.return_value = (M, np.ones((len(src), 1), np.uint8))
        assert RansacTransformEstimator().estimate(src, dst, RansacSettings()) == EstimateFailure("non_finite")


class TestProjectPoints:
    def test_degenerate_w(self):
        M = np.array([[1.0, 0, 0], [0, 1.0, 0], [0, 0, 0]])
        assert project_points(M, [[1, 1]]) is None

    def test_homogeneous_division(self):
        M = np.diag([2.0, 2.0, 2.0])
        assert np.allclose(project_points(M, [[2, 3]]), [[2, 3]])
