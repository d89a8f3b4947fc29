from __future__ import annotations
"""
Iterative multi-instance extraction for a single reference pattern.

Each cycle fits a transform to the unconsumed correspondences, projects the
reference outline into the target, validates the resulting box and either
emits a candidate or rejects it. The fit's inliers are consumed on both
paths, so a cluster that keeps producing an invalid box cannot stall the
loop; the price is that a nearby instance sharing those points is not
retried.

    Ready -> Estimating -> Validating -> Accepted | Rejected -> Ready ... -> Done
"""

import zlib
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from common.types import Box, CandidateInstance, ReferencePattern
from locator.color import dominant_color
from locator.config import LocatorConfig
from locator.estimate import (
    EstimateFailure,
    RansacSettings,
    TransformEstimator,
    project_points,
)
from locator.events import EventSink, NullEventSink
from locator.pool import CorrespondencePool
from locator.validate import validate_region


# Done reasons
POOL_EXHAUSTED = "pool_exhausted"
BUDGET_EXHAUSTED = "budget_exhausted"
ESTIMATE_FAILED = "estimate_failed"
TOO_FEW_INLIERS = "too_few_inliers"
LOW_INLIER_RATIO = "low_inlier_ratio"
DEGENERATE_TRANSFORM = "degenerate_transform"

_RATIO_EPS = 1e-12


@dataclass(frozen=True)
class ExtractionSettings:
    min_matched_features: int = 10
    min_inlier_ratio: float = 0.5
    max_instances: int = 8
    ransac: RansacSettings = field(default_factory=RansacSettings)
    min_size: int = 10
    max_size_factor: float = 2.0
    overlap_threshold: float = 0.3
    color_seed: int = 0
    bgr: bool = True

    @classmethod
    def from_config(cls, cfg: LocatorConfig, *, bgr: bool = True) -> "ExtractionSettings":
        return cls(
            min_matched_features=cfg.orb.min_matched_features,
            min_inlier_ratio=float(cfg.orb.min_inlier_ratio),
            max_instances=cfg.orb.max_instances_per_reference,
            ransac=RansacSettings(
                threshold=cfg.ransac.threshold,
                confidence=cfg.ransac.confidence,
                max_iterations=cfg.ransac.max_iterations,
            ),
            min_size=cfg.region.min_size,
            max_size_factor=cfg.region.max_size_factor,
            overlap_threshold=cfg.exclusion.overlap_threshold,
            color_seed=cfg.processing.color_seed,
            bgr=bgr,
        )


@dataclass
class ExtractionResult:
    """Candidates of one reference plus why and after how many cycles the loop stopped."""
    reference: str
    candidates: List[CandidateInstance]
    cycles: int
    rejected: int
    done_reason: str
    detail: Optional[str] = None


def _rgb_crop(image: np.ndarray, box: Box, bgr: bool) -> np.ndarray:
    x1, y1 = int(box.x), int(box.y)
    x2, y2 = int(box.x2), int(box.y2)
    crop = image[y1:y2, x1:x2]
    if crop.ndim == 3 and crop.shape[2] >= 3 and bgr:
        crop = crop[:, :, 2::-1]
    return crop


def color_rng(seed: int, reference: str) -> np.random.Generator:
    """Per-reference generator; independent of worker scheduling."""
    return np.random.default_rng([int(seed), zlib.crc32(reference.encode("utf-8"))])


def extract_instances(
    pattern: ReferencePattern,
    pool: CorrespondencePool,
    image: np.ndarray,
    mask: Optional[np.ndarray],
    estimator: TransformEstimator,
    settings: ExtractionSettings = ExtractionSettings(),
    sink: Optional[EventSink] = None,
) -> ExtractionResult:
    """
    Run the extraction loop for one reference pattern.

    Args:
        pattern: reference being searched for.
        pool: its correspondences; consumed bits are updated in place.
        image: original (unprocessed) target image, (H, W) or (H, W, C).
        mask: (H, W) exclusion mask or None.
        estimator: robust transform fitter.
        settings: thresholds and budgets.
        sink: observability hook.

    At most `settings.max_instances` candidates are accepted. Rejected fits do
    not count against that budget; every cycle consumes at least
    `min_matched_features` correspondences, so the loop still terminates.
    """
    sink = sink or NullEventSink()
    name = pattern.name
    H, W = image.shape[:2]
    max_size = (settings.max_size_factor * W, settings.max_size_factor * H)
    corners = pattern.corners()
    rng = color_rng(settings.color_seed, name)

    candidates: List[CandidateInstance] = []
    cycles = 0
    rejected = 0
    detail: Optional[str] = None

    sink.emit("pattern_started", reference=name, correspondences=len(pool))

    while True:
        # Ready
        idx = pool.available()
        if len(idx) < settings.min_matched_features:
            reason = POOL_EXHAUSTED
            break
        if len(candidates) >= settings.max_instances:
            reason = BUDGET_EXHAUSTED
            break

        # Estimating
        fit = estimator.estimate(pool.ref_pts[idx], pool.tgt_pts[idx], settings.ransac)
        if isinstance(fit, EstimateFailure):
            reason, detail = ESTIMATE_FAILED, fit.reason
            break
        inl = np.asarray(fit.inlier_mask, dtype=bool).ravel()
        if inl.shape[0] != idx.shape[0]:
            reason, detail = ESTIMATE_FAILED, "mask_length"
            break
        n_inl = int(np.count_nonzero(inl))
        ratio = n_inl / float(len(idx))
        if n_inl < settings.min_matched_features:
            reason = TOO_FEW_INLIERS
            break
        if ratio + _RATIO_EPS < settings.min_inlier_ratio:
            reason = LOW_INLIER_RATIO
            break

        projected = project_points(fit.matrix, corners)
        if projected is None:
            reason = DEGENERATE_TRANSFORM
            break
        raw_box = Box.from_corners(projected)
        used = idx[inl]
        cycles += 1

        # Validating
        verdict = validate_region(
            raw_box, (W, H), mask,
            min_size=settings.min_size,
            max_size=max_size,
            overlap_threshold=settings.overlap_threshold,
        )
        if not verdict.accepted:
            pool.consume(used)
            rejected += 1
            sink.emit(
                "candidate_rejected",
                reference=name, reason=verdict.reason, box=raw_box.to_list(),
                inliers=n_inl, excluded_fraction=round(verdict.excluded_fraction, 4),
            )
            continue

        # Accepted
        box = verdict.box
        color = dominant_color(_rgb_crop(image, box, settings.bgr), rng=rng)
        confidence = n_inl / float(max(1, pattern.descriptor_count))
        cand = CandidateInstance(
            reference=name,
            box=box,
            transform=fit.matrix,
            inliers=n_inl,
            inlier_ratio=ratio,
            confidence=confidence,
            color=color,
        )
        candidates.append(cand)
        pool.consume(used)
        sink.emit(
            "candidate_accepted",
            reference=name, box=box.to_list(), confidence=round(cand.confidence, 4),
            inliers=n_inl, inlier_ratio=round(ratio, 4), color=list(color),
        )

    sink.emit(
        "pattern_done",
        reference=name, reason=reason, detail=detail,
        instances=len(candidates), cycles=cycles, remaining=pool.remaining,
    )
    return ExtractionResult(name, candidates, cycles, rejected, reason, detail)
