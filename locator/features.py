from __future__ import annotations
"""
Feature extraction & correspondence helpers.

- OrbFeatureExtractor with .describe(gray, mask) -> FeatureSet
- KNN Hamming matcher + Lowe ratio + one-to-one filtering + match cap
- OrbCorrespondenceProvider: reference pattern x target features -> CorrespondencePool
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple, Union

import cv2
import numpy as np

from common.logging_setup import get_logger, fields
from common.types import FeatureSet, ReferencePattern
from locator.pool import CorrespondencePool


log = get_logger("locator.features")


# -----------------------------
# Extractors
# -----------------------------

@dataclass
class OrbFeatureExtractor:
    nfeatures: int = 1000
    fast_threshold: int = 20
    nlevels: int = 8
    scale_factor: float = 1.2

    def __post_init__(self):
        if self.nfeatures < 1:
            raise ValueError("nfeatures must be >= 1")
        self._det = cv2.ORB_create(
            nfeatures=int(self.nfeatures),
            scaleFactor=float(self.scale_factor),
            nlevels=int(self.nlevels),
            edgeThreshold=31,
            firstLevel=0,
            WTA_K=2,
            scoreType=cv2.ORB_HARRIS_SCORE,
            patchSize=31,
            fastThreshold=int(self.fast_threshold),
        )

    def describe(self, gray_u8: np.ndarray, mask: Optional[np.ndarray] = None) -> FeatureSet:
        """Detect keypoints and compute binary descriptors; empty set if none."""
        kps, des = self._det.detectAndCompute(gray_u8, mask)
        if des is None or not kps:
            return FeatureSet.empty()
        pts = np.float32([kp.pt for kp in kps]).reshape(-1, 2)
        return FeatureSet(pts, des)


# -----------------------------
# Matching
# -----------------------------

def match_binary_knn_ratio(
    des1: np.ndarray,
    des2: np.ndarray,
    *,
    ratio: float = 0.75,
    enforce_uniqueness: bool = True,
    max_matches: Optional[int] = None,
) -> List[cv2.DMatch]:
    """
    KNN (k=2) + Lowe ratio (for Hamming). Optionally enforce one-to-one on the
    train side and keep only the `max_matches` closest matches.
    """
    if des1 is None or des2 is None or len(des1) == 0 or len(des2) < 2:
        return []
    bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
    knn = bf.knnMatch(des1, des2, k=2)
    cands: List[cv2.DMatch] = []
    for pair in knn:
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < ratio * n.distance:
            cands.append(m)
    # closest first so uniqueness keeps the best query per train descriptor
    cands.sort(key=lambda d: (d.distance, d.queryIdx))
    good: List[cv2.DMatch] = []
    used_train = set()
    for m in cands:
        if enforce_uniqueness and m.trainIdx in used_train:
            continue
        good.append(m)
        used_train.add(m.trainIdx)
        if max_matches is not None and len(good) >= max_matches:
            break
    return good


# -----------------------------
# Correspondence provider
# -----------------------------

@dataclass(frozen=True, slots=True)
class ProviderFailure:
    reason: str


ProviderOutcome = Union[CorrespondencePool, ProviderFailure]


class CorrespondenceProvider(Protocol):
    def correspond(self, pattern: ReferencePattern, target: FeatureSet) -> ProviderOutcome: ...


class OrbCorrespondenceProvider:
    """
    Match a reference pattern's descriptors against the target's.

    With scaled variants, each variant is matched and the one with the most
    good matches wins (full size on ties). Variant keypoints are divided by the
    variant scale so the pool is always in full-size reference coordinates.
    """

    def __init__(self, ratio: float = 0.75, max_matches: int = 500):
        self.ratio = float(ratio)
        self.max_matches = int(max_matches)

    def _candidates(self, pattern: ReferencePattern) -> Sequence[Tuple[float, FeatureSet]]:
        out = [(1.0, pattern.features)]
        out.extend((v.scale, v.features) for v in pattern.variants if v.scale != 1.0)
        return out

    def correspond(self, pattern: ReferencePattern, target: FeatureSet) -> ProviderOutcome:
        if len(target) == 0:
            return ProviderFailure("no_target_features")

        best: Optional[Tuple[float, FeatureSet, List[cv2.DMatch]]] = None
        try:
            for scale, feats in self._candidates(pattern):
                if len(feats) == 0:
                    continue
                good = match_binary_knn_ratio(
                    feats.descriptors, target.descriptors,
                    ratio=self.ratio, max_matches=self.max_matches,
                )
                if best is None or len(good) > len(best[2]):
                    best = (scale, feats, good)
        except cv2.error as e:
            log.warning("Matching failed", extra=fields(reference=pattern.name, error=str(e)))
            return ProviderFailure("matcher_error")

        if best is None:
            return ProviderFailure("no_reference_features")

        scale, feats, good = best
        if not good:
            return CorrespondencePool.empty()
        q = np.fromiter((m.queryIdx for m in good), dtype=np.intp, count=len(good))
        t = np.fromiter((m.trainIdx for m in good), dtype=np.intp, count=len(good))
        d = np.fromiter((m.distance for m in good), dtype=np.float32, count=len(good))
        ref_pts = feats.points[q] / np.float32(scale)
        return CorrespondencePool(ref_pts, target.points[t], d)
