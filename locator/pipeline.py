from __future__ import annotations

import argparse
import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger, setup_logging, fields
from common.types import DetectionSet, ExclusionRegion, FeatureSet, ReferencePattern
from common.utils import elapsed_ms, iso_now_ms, parse_box
from locator.assemble import assemble_detections
from locator.config import LocatorConfig
from locator.estimate import RansacTransformEstimator, TransformEstimator
from locator.events import EventSink, LoggingEventSink
from locator.exclusion import build_exclusion_mask, load_exclusion_regions, regions_to_rows
from locator.extract import ExtractionResult, ExtractionSettings, extract_instances
from locator.features import (
    CorrespondenceProvider,
    OrbCorrespondenceProvider,
    OrbFeatureExtractor,
    ProviderFailure,
)
from locator.pool import CorrespondencePool
from locator.preprocess import preprocess_target
from locator.references import FeatureCache, load_reference_patterns, read_image
from locator.suppress import suppress_overlaps


log = get_logger("locator")


@dataclass
class RunResult:
    """Everything one localization run produced."""
    detections: DetectionSet
    candidates: int = 0
    extraction: List[ExtractionResult] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    object_mask: Optional[np.ndarray] = field(default=None, repr=False)


def _object_mask(size: Tuple[int, int], detections: DetectionSet) -> np.ndarray:
    W, H = size
    m = np.zeros((H, W), dtype=bool)
    for d in detections.all():
        b = d.box
        m[int(b.y):int(b.y2), int(b.x):int(b.x2)] = True
    return m


def localize(
    patterns: Sequence[ReferencePattern],
    pools: Mapping[str, CorrespondencePool],
    image: np.ndarray,
    exclusions: Sequence[ExclusionRegion] = (),
    cfg: Optional[LocatorConfig] = None,
    *,
    estimator: Optional[TransformEstimator] = None,
    sink: Optional[EventSink] = None,
    workers: Optional[int] = None,
    bgr: bool = True,
) -> RunResult:
    """
    Core run: per-reference extraction, global suppression, grouping.

    Args:
        patterns: references in output order.
        pools: correspondences per reference name; a missing name counts as empty.
        image: original target image (boxes and color crops refer to it).
        exclusions: regions no detection may overlap beyond the configured ratio.
        cfg: thresholds; defaults when None.
        estimator: transform fitter; OpenCV RANSAC when None.
        sink: observability hook; JSON logging when None.
        workers: per-reference extraction threads (cfg.processing.workers when None).
    """
    cfg = cfg or LocatorConfig()
    sink = sink or LoggingEventSink(log)
    estimator = estimator or RansacTransformEstimator(cfg.orb.transform)
    settings = ExtractionSettings.from_config(cfg, bgr=bgr)
    H, W = image.shape[:2]
    t0 = time.perf_counter()

    mask = build_exclusion_mask((W, H), exclusions, padding=cfg.exclusion.padding)
    empty = CorrespondencePool.empty()

    def run_one(p: ReferencePattern) -> ExtractionResult:
        return extract_instances(p, pools.get(p.name, empty), image, mask, estimator, settings, sink)

    n_workers = workers if workers is not None else cfg.processing.workers
    if n_workers > 1 and len(patterns) > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            results = list(ex.map(run_one, patterns))
    else:
        results = [run_one(p) for p in patterns]

    pooled = [c for r in results for c in r.candidates]
    kept = suppress_overlaps(pooled, float(cfg.orb.nms_overlap_threshold), sink)
    detections = assemble_detections(kept, [p.name for p in patterns])

    sink.emit(
        "run_finished",
        references=len(patterns), candidates=len(pooled),
        detections=detections.total, latency_ms=elapsed_ms(t0),
    )
    return RunResult(
        detections=detections,
        candidates=len(pooled),
        extraction=results,
        object_mask=_object_mask((W, H), detections),
    )


def describe_target(
    image: np.ndarray,
    cfg: LocatorConfig,
    extractor: OrbFeatureExtractor,
    roi: Optional[Tuple[int, int, int, int]] = None,
) -> FeatureSet:
    """Target descriptors with keypoints mapped back to original-image pixels."""
    prep = preprocess_target(image, cfg.preprocessing, roi=roi)
    feats = extractor.describe(prep.gray, prep.mask)
    if prep.scale == 1.0 or len(feats) == 0:
        return feats
    return FeatureSet(feats.points / np.float32(prep.scale), feats.descriptors)


def detect_patterns(
    image: np.ndarray,
    patterns: Sequence[ReferencePattern],
    cfg: Optional[LocatorConfig] = None,
    exclusions: Sequence[ExclusionRegion] = (),
    *,
    roi: Optional[Tuple[int, int, int, int]] = None,
    provider: Optional[CorrespondenceProvider] = None,
    estimator: Optional[TransformEstimator] = None,
    extractor: Optional[OrbFeatureExtractor] = None,
    sink: Optional[EventSink] = None,
) -> RunResult:
    """
    Full detection on one image: describe the target once, build one
    correspondence pool per reference, then localize().

    References whose matching fails or yields fewer than min_matched_features
    correspondences are skipped (reported in RunResult.skipped).
    """
    cfg = cfg or LocatorConfig()
    sink = sink or LoggingEventSink(log)
    extractor = extractor or OrbFeatureExtractor(nfeatures=cfg.orb.max_features)
    provider = provider or OrbCorrespondenceProvider(
        ratio=float(cfg.orb.match_ratio_threshold), max_matches=cfg.orb.max_matches
    )

    target = describe_target(image, cfg, extractor, roi)
    log.debug("Target described", extra=fields(features=len(target)))

    pools: Dict[str, CorrespondencePool] = {}
    skipped: Dict[str, str] = {}
    for p in patterns:
        out = provider.correspond(p, target)
        if isinstance(out, ProviderFailure):
            skipped[p.name] = out.reason
        elif len(out) < cfg.orb.min_matched_features:
            skipped[p.name] = "insufficient_matches"
        else:
            pools[p.name] = out
            continue
        sink.emit("pattern_skipped", reference=p.name, reason=skipped[p.name])

    result = localize(patterns, pools, image, exclusions, cfg, estimator=estimator, sink=sink)
    result.skipped = skipped
    return result


@dataclass
class FrameResult:
    ts: str
    success: bool
    result: Optional[RunResult] = None
    exclusions: List[ExclusionRegion] = field(default_factory=list)
    processing_ms: int = 0
    error_message: str = ""

    @property
    def detections(self) -> DetectionSet:
        return self.result.detections if self.result is not None else DetectionSet()

    def to_row(self) -> Dict:
        return {
            "ts": self.ts,
            "status": "ok" if self.success else "error",
            "error": self.error_message or None,
            "latency_ms": self.processing_ms,
            "exclusions": regions_to_rows(self.exclusions),
            "skipped": dict(self.result.skipped) if self.result else {},
            "detections": self.detections.to_dict(),
        }


def process_frame(
    image: Optional[np.ndarray],
    patterns: Sequence[ReferencePattern],
    cfg: Optional[LocatorConfig] = None,
    exclusions: Sequence[ExclusionRegion] = (),
    *,
    roi: Optional[Tuple[int, int, int, int]] = None,
    **kw,
) -> FrameResult:
    """
    Process one frame end to end. Errors are reported in the FrameResult
    (success=False, error_message) instead of being raised.
    """
    t0 = time.perf_counter()
    fr = FrameResult(ts=iso_now_ms(), success=False, exclusions=list(exclusions))
    if image is None or image.size == 0:
        fr.error_message = "Input frame is empty."
        return fr
    try:
        fr.result = detect_patterns(image, patterns, cfg, exclusions, roi=roi, **kw)
        fr.success = True
    except (cv2.error, ValueError) as e:
        log.warning("Frame processing failed", extra=fields(error=str(e)))
        fr.error_message = str(e)
    fr.processing_ms = elapsed_ms(t0)
    return fr


def _write_results_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Locate reference patterns in an image")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--image", required=True, help="Target image")
    ap.add_argument("--references", required=True, help="Directory of reference images")
    ap.add_argument("--exclusions", default=None, help="JSON file of boxes to exclude (e.g. text detections)")
    ap.add_argument("--roi", default=None, help="Region of interest x,y,w,h")
    ap.add_argument("--out", default=None, help="Append results as JSONL here")
    ap.add_argument("--workers", type=int, default=None, help="Override processing.workers")
    ap.add_argument("--no-cache", action="store_true", help="Ignore the reference feature cache")
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args(argv)

    cfg = LocatorConfig.from_yaml(args.config) if Path(args.config).is_file() else LocatorConfig()
    setup_logging(args.log_level or cfg.log_level, force=True)
    if args.workers is not None:
        cfg.processing.workers = max(1, args.workers)

    cache = None
    if cfg.processing.cache_features and not args.no_cache:
        cache = FeatureCache(args.references, cfg)
    patterns = load_reference_patterns(args.references, cfg, cache=cache)

    image = read_image(Path(args.image))
    if image is None:
        log.error("Could not read target image", extra=fields(path=args.image))
        return 2

    exclusions: List[ExclusionRegion] = []
    if args.exclusions:
        exclusions = load_exclusion_regions(
            args.exclusions,
            padding=cfg.exclusion.padding,
            min_confidence=cfg.exclusion.min_text_confidence,
        )

    roi = parse_box(args.roi) if args.roi else None
    fr = process_frame(image, patterns, cfg, exclusions, roi=roi)

    out = args.out or cfg.results_file
    if out:
        _write_results_row(Path(out), fr.to_row())
    log.info("Run complete", extra=fields(
        success=fr.success, latency_ms=fr.processing_ms,
        references=len(patterns), detections=fr.detections.total,
    ))
    return 0 if fr.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
