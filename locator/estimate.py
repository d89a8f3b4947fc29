from __future__ import annotations
"""
Transform estimation: robust reference -> target fit over two point sets.

Outcomes are values, not exceptions: an estimator returns either a
TransformFit (3x3 matrix + inlier mask) or an EstimateFailure.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import cv2
import numpy as np

from common.logging_setup import get_logger, fields
from common.utils import as_points, to_numpy_3x3


log = get_logger("locator.estimate")


@dataclass(frozen=True, slots=True)
class RansacSettings:
    threshold: float = 3.0
    confidence: float = 0.99
    max_iterations: int = 2000


@dataclass(frozen=True, slots=True, eq=False)
class TransformFit:
    matrix: np.ndarray = field(repr=False)
    inlier_mask: np.ndarray = field(repr=False)

    @property
    def inliers(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))


@dataclass(frozen=True, slots=True)
class EstimateFailure:
    reason: str


EstimateOutcome = Union[TransformFit, EstimateFailure]


class TransformEstimator(Protocol):
    def estimate(self, src: np.ndarray, dst: np.ndarray, params: RansacSettings) -> EstimateOutcome: ...


class RansacTransformEstimator:
    """
    OpenCV RANSAC fit.

    kind="projective": cv2.findHomography (needs >= 4 points)
    kind="affine":     cv2.estimateAffine2D (needs >= 3 points), promoted to 3x3
    """

    def __init__(self, kind: str = "projective"):
        k = kind.lower()
        if k not in ("projective", "affine"):
            raise ValueError(f"Unsupported transform: {kind}")
        self.kind = k
        self.min_points = 4 if k == "projective" else 3

    def estimate(self, src: np.ndarray, dst: np.ndarray, params: RansacSettings) -> EstimateOutcome:
        p1 = as_points(src)
        p2 = as_points(dst)
        if len(p1) != len(p2):
            return EstimateFailure("length_mismatch")
        if len(p1) < self.min_points:
            return EstimateFailure("too_few_points")

        try:
            if self.kind == "projective":
                M, mask = cv2.findHomography(
                    p1.reshape(-1, 1, 2), p2.reshape(-1, 1, 2), cv2.RANSAC,
                    ransacReprojThreshold=float(params.threshold),
                    maxIters=int(params.max_iterations),
                    confidence=float(params.confidence),
                )
            else:
                M, mask = cv2.estimateAffine2D(
                    p1, p2, method=cv2.RANSAC,
                    ransacReprojThreshold=float(params.threshold),
                    maxIters=int(params.max_iterations),
                    confidence=float(params.confidence),
                )
        except cv2.error as e:
            log.warning("Transform estimation failed", extra=fields(kind=self.kind, error=str(e)))
            return EstimateFailure("estimator_error")

        if M is None or mask is None:
            return EstimateFailure("degenerate")
        M = to_numpy_3x3(M)
        if not np.all(np.isfinite(M)):
            return EstimateFailure("non_finite")
        inl = mask.ravel().astype(bool)
        if not inl.any():
            return EstimateFailure("no_inliers")
        return TransformFit(M, inl)


def project_points(M: np.ndarray, pts: np.ndarray) -> Optional[np.ndarray]:
    """Apply a 3x3 transform to (N, 2) points; None if any result is not finite."""
    p = as_points(pts).astype(np.float64)
    h = np.hstack([p, np.ones((len(p), 1))]) @ np.asarray(M, dtype=np.float64).T
    w = h[:, 2:3]
    if np.any(np.abs(w) < 1e-12):
        return None
    out = h[:, :2] / w
    if not np.all(np.isfinite(out)):
        return None
    return out
