"""
Shared fixtures for unit tests: synthetic references, correspondence pools
and a deterministic transform estimator.
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import FeatureSet, ReferencePattern
from locator.estimate import EstimateFailure, RansacSettings, TransformFit
from locator.pool import CorrespondencePool


def translation(dx, dy):
    return np.array([[1.0, 0.0, dx], [0.0, 1.0, dy], [0.0, 0.0, 1.0]])


class ModelEstimator:
    """
    Deterministic stand-in for RANSAC: scores a fixed list of candidate
    transforms by reprojection error and returns the one with most inliers.
    """

    def __init__(self, models, min_points=4):
        self.models = [np.asarray(m, dtype=float) for m in models]
        self.min_points = min_points
        self.calls = 0

    def estimate(self, src, dst, params: RansacSettings):
        self.calls += 1
        src = np.asarray(src, dtype=float).reshape(-1, 2)
        dst = np.asarray(dst, dtype=float).reshape(-1, 2)
        if len(src) < self.min_points:
            return EstimateFailure("too_few_points")
        best = None
        for M in self.models:
            h = np.hstack([src, np.ones((len(src), 1))]) @ M.T
            proj = h[:, :2] / h[:, 2:3]
            inl = np.linalg.norm(proj - dst, axis=1) <= params.threshold
            if best is None or inl.sum() > best[1].sum():
                best = (M, inl)
        if best is None or not best[1].any():
            return EstimateFailure("no_inliers")
        return TransformFit(best[0], best[1])


class FailingEstimator:
    def __init__(self):
        self.calls = 0

    def estimate(self, src, dst, params):
        self.calls += 1
        return EstimateFailure("degenerate")


def make_pattern(name="ref", width=40, height=30, descriptors=100):
    rng = np.random.default_rng(len(name))
    pts = rng.uniform(0, [width, height], size=(descriptors, 2)).astype(np.float32)
    des = rng.integers(0, 256, size=(descriptors, 32), dtype=np.uint8)
    return ReferencePattern(name=name, width=width, height=height, features=FeatureSet(pts, des))


def make_pool(pattern, transforms, per_instance, outliers=0, seed=0, image_size=(400, 300)):
    """Correspondences drawn inside the reference, mapped through each transform, plus random outliers."""
    rng = np.random.default_rng(seed)
    refs, tgts = [], []
    for M, n in zip(transforms, per_instance):
        r = rng.uniform(0, [pattern.width, pattern.height], size=(n, 2))
        h = np.hstack([r, np.ones((n, 1))]) @ np.asarray(M, dtype=float).T
        refs.append(r)
        tgts.append(h[:, :2] / h[:, 2:3])
    if outliers:
        refs.append(rng.uniform(0, [pattern.width, pattern.height], size=(outliers, 2)))
        tgts.append(rng.uniform(0, image_size, size=(outliers, 2)))
    if not refs:
        return CorrespondencePool.empty()
    return CorrespondencePool(np.vstack(refs), np.vstack(tgts))


@pytest.fixture
def image():
    img = np.zeros((300, 400, 3), dtype=np.uint8)
    img[:, :] = (30, 60, 90)  # BGR
    return img


@pytest.fixture
def helpers():
    class H:
        pass
    h = H()
    h.translation = translation
    h.ModelEstimator = ModelEstimator
    h.FailingEstimator = FailingEstimator
    h.make_pattern = make_pattern
    h.make_pool = make_pool
    return h
