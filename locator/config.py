from __future__ import annotations
"""
Configuration for the locator.

Loaded from YAML (config/params.yaml). Every key is optional; missing keys
keep the defaults below. Layout:

    orb:
      min_matched_features: 10
      match_ratio_threshold: 0.75
      max_features: 1000
      max_matches: 500
      min_inlier_ratio: 0.5
      max_instances_per_reference: 8
      nms_overlap_threshold: 0.5
      multi_scale: true
      scales: [0.5, 0.75, 1.0, 1.25, 1.5]
      transform: projective        # projective | affine
    ransac: {threshold: 3.0, confidence: 0.99, max_iterations: 2000}
    exclusion: {padding: 5, overlap_threshold: 0.3, min_text_confidence: 80}
    region: {min_size: 10, max_size_factor: 2.0}
    preprocessing: {...}
    processing: {workers: 1, cache_features: true, color_seed: 0}
    logging: {level: INFO, results_file: logs/detections.jsonl}
"""

from dataclasses import dataclass, field, fields as dc_fields
from typing import Any, Dict, List, Optional, Tuple

import yaml


def _pick(cls, d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the keys `cls` knows about."""
    if not d:
        return {}
    names = {f.name for f in dc_fields(cls)}
    return {k: v for k, v in d.items() if k in names}


def _check_unit(name: str, v: float) -> None:
    if not (0.0 <= v <= 1.0):
        raise ValueError(f"{name} must be in [0, 1]")


@dataclass
class RansacParams:
    threshold: float = 3.0
    confidence: float = 0.99
    max_iterations: int = 2000

    def __post_init__(self) -> None:
        self.threshold = float(self.threshold)
        self.confidence = float(self.confidence)
        self.max_iterations = int(self.max_iterations)
        if self.threshold <= 0:
            raise ValueError("ransac.threshold must be > 0")
        if not (0.0 < self.confidence < 1.0):
            raise ValueError("ransac.confidence must be in (0, 1)")
        if self.max_iterations < 1:
            raise ValueError("ransac.max_iterations must be >= 1")


@dataclass
class ExclusionParams:
    padding: int = 5
    overlap_threshold: float = 0.3
    min_text_confidence: float = 80.0

    def __post_init__(self) -> None:
        self.padding = int(self.padding)
        self.overlap_threshold = float(self.overlap_threshold)
        self.min_text_confidence = float(self.min_text_confidence)
        if self.padding < 0:
            raise ValueError("exclusion.padding must be >= 0")
        _check_unit("exclusion.overlap_threshold", self.overlap_threshold)


@dataclass
class RegionParams:
    min_size: int = 10
    max_size_factor: float = 2.0

    def __post_init__(self) -> None:
        self.min_size = int(self.min_size)
        self.max_size_factor = float(self.max_size_factor)
        if self.min_size < 1:
            raise ValueError("region.min_size must be >= 1")
        if self.max_size_factor <= 0:
            raise ValueError("region.max_size_factor must be > 0")


@dataclass
class OrbParams:
    min_matched_features: int = 10
    match_ratio_threshold: float = 0.75
    max_features: int = 1000
    max_matches: int = 500
    min_inlier_ratio: float = 0.5
    max_instances_per_reference: int = 8
    nms_overlap_threshold: float = 0.5
    multi_scale: bool = True
    scales: List[float] = field(default_factory=lambda: [0.5, 0.75, 1.0, 1.25, 1.5])
    transform: str = "projective"

    def __post_init__(self) -> None:
        self.min_matched_features = int(self.min_matched_features)
        self.max_instances_per_reference = int(self.max_instances_per_reference)
        self.max_features = int(self.max_features)
        self.max_matches = int(self.max_matches)
        self.scales = [float(s) for s in self.scales]
        self.transform = str(self.transform).lower()
        if self.min_matched_features < 4:
            raise ValueError("orb.min_matched_features must be >= 4")
        if not (1 <= self.max_instances_per_reference <= 8):
            raise ValueError("orb.max_instances_per_reference must be in [1, 8]")
        if self.max_features < 1 or self.max_matches < 1:
            raise ValueError("orb.max_features / orb.max_matches must be >= 1")
        _check_unit("orb.match_ratio_threshold", float(self.match_ratio_threshold))
        _check_unit("orb.min_inlier_ratio", float(self.min_inlier_ratio))
        _check_unit("orb.nms_overlap_threshold", float(self.nms_overlap_threshold))
        if any(s <= 0 for s in self.scales):
            raise ValueError("orb.scales must be > 0")
        if self.transform not in ("projective", "affine"):
            raise ValueError(f"Unsupported transform: {self.transform}")


@dataclass
class PreprocessParams:
    enabled: bool = True
    max_dimension: Optional[int] = 2000
    clahe_clip: Optional[float] = 2.0
    denoise: Optional[str] = "gaussian"    # "gaussian" | "median" | None
    denoise_size: int = 3
    sharpen_amount: float = 0.0

    def __post_init__(self) -> None:
        if self.denoise is not None:
            self.denoise = str(self.denoise).lower()
            if self.denoise not in ("gaussian", "median"):
                raise ValueError(f"Unknown denoising method: {self.denoise}")
        self.denoise_size = int(self.denoise_size)
        if self.denoise_size < 1:
            raise ValueError("preprocessing.denoise_size must be >= 1")


@dataclass
class ProcessingParams:
    workers: int = 1
    cache_features: bool = True
    cache_dir: Optional[str] = None
    color_seed: int = 0

    def __post_init__(self) -> None:
        self.workers = max(1, int(self.workers))
        self.color_seed = int(self.color_seed)


@dataclass
class LocatorConfig:
    orb: OrbParams = field(default_factory=OrbParams)
    ransac: RansacParams = field(default_factory=RansacParams)
    exclusion: ExclusionParams = field(default_factory=ExclusionParams)
    region: RegionParams = field(default_factory=RegionParams)
    preprocessing: PreprocessParams = field(default_factory=PreprocessParams)
    processing: ProcessingParams = field(default_factory=ProcessingParams)
    log_level: str = "INFO"
    results_file: Optional[str] = None

    @classmethod
    def from_dict(cls, D: Optional[Dict[str, Any]]) -> "LocatorConfig":
        D = D or {}
        log = D.get("logging", {}) or {}
        return cls(
            orb=OrbParams(**_pick(OrbParams, D.get("orb"))),
            ransac=RansacParams(**_pick(RansacParams, D.get("ransac"))),
            exclusion=ExclusionParams(**_pick(ExclusionParams, D.get("exclusion"))),
            region=RegionParams(**_pick(RegionParams, D.get("region"))),
            preprocessing=PreprocessParams(**_pick(PreprocessParams, D.get("preprocessing"))),
            processing=ProcessingParams(**_pick(ProcessingParams, D.get("processing"))),
            log_level=str(log.get("level", "INFO")),
            results_file=log.get("results_file"),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "LocatorConfig":
        with open(path, "r") as f:
            return cls.from_dict(yaml.safe_load(f))

    def cache_key(self) -> Tuple:
        """Parameters that change cached reference descriptors."""
        scales = tuple(self.orb.scales) if self.orb.multi_scale else ()
        return (
            round(float(self.orb.match_ratio_threshold), 4),
            self.orb.max_features,
            self.orb.min_matched_features,
            scales,
        )
