from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np


Color = Tuple[int, int, int]


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, copy=True, order="C")
    a.setflags(write=False)
    return a


@dataclass(frozen=True, slots=True)
class Box:
    """
    Axis-aligned box in pixel coordinates: top-left (x, y), size (w, h).
    The covered pixel cells are [x, x + w) x [y, y + h).
    """
    x: float
    y: float
    w: float
    h: float

    @property
    def x2(self) -> float:
        return self.x + self.w

    @property
    def y2(self) -> float:
        return self.y + self.h

    @property
    def area(self) -> float:
        return max(0.0, self.w) * max(0.0, self.h)

    def iou(self, other: "Box") -> float:
        """Intersection-over-Union; 0 when the union is empty."""
        iw = min(self.x2, other.x2) - max(self.x, other.x)
        ih = min(self.y2, other.y2) - max(self.y, other.y)
        if iw <= 0 or ih <= 0:
            return 0.0
        inter = iw * ih
        union = self.area + other.area - inter
        return 0.0 if union <= 0 else float(inter / union)

    @classmethod
    def from_corners(cls, pts: np.ndarray) -> "Box":
        """Axis-aligned bounding box of an (N, 2) point array."""
        p = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        x0, y0 = p.min(axis=0)
        x1, y1 = p.max(axis=0)
        return cls(float(x0), float(y0), float(x1 - x0), float(y1 - y0))

    def to_list(self) -> List[float]:
        return [self.x, self.y, self.w, self.h]


@dataclass(frozen=True, slots=True, eq=False)
class FeatureSet:
    """
    Keypoint locations (N, 2) float32 and binary descriptors (N, 32) uint8.
    Both arrays are made read-only on construction.
    """
    points: np.ndarray = field(repr=False)
    descriptors: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        pts = np.asarray(self.points, dtype=np.float32).reshape(-1, 2)
        des = np.asarray(self.descriptors, dtype=np.uint8)
        if des.size == 0:
            des = np.zeros((0, 32), np.uint8)
        if len(pts) != len(des):
            raise ValueError("points and descriptors must have the same length")
        object.__setattr__(self, "points", _readonly(pts))
        object.__setattr__(self, "descriptors", _readonly(des))

    def __len__(self) -> int:
        return int(self.points.shape[0])

    @classmethod
    def empty(cls) -> "FeatureSet":
        return cls(np.zeros((0, 2), np.float32), np.zeros((0, 32), np.uint8))


@dataclass(frozen=True, slots=True)
class ScaledVariant:
    """Descriptors of a resized copy of a reference; points are in the resized frame."""
    scale: float
    features: FeatureSet


@dataclass(frozen=True, slots=True, eq=False)
class ReferencePattern:
    """
    A known visual pattern to look for.

    Attributes:
        name: identifier used to group detections.
        width, height: reference image size in pixels.
        features: descriptor set of the full-size reference.
        variants: optional scaled descriptor sets (multi-scale matching).
    """
    name: str
    width: int
    height: int
    features: FeatureSet = field(repr=False)
    variants: Tuple[ScaledVariant, ...] = field(default=(), repr=False)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("reference width/height must be > 0")
        object.__setattr__(self, "variants", tuple(self.variants))

    @property
    def descriptor_count(self) -> int:
        return len(self.features)

    def corners(self) -> np.ndarray:
        """Reference outline as (4, 2) float32, clockwise from the origin."""
        w, h = float(self.width), float(self.height)
        return np.float32([[0.0, 0.0], [w, 0.0], [w, h], [0.0, h]])


@dataclass(frozen=True, slots=True)
class ExclusionRegion:
    """Box already claimed by another stage (e.g. recognized text)."""
    x: float
    y: float
    w: float
    h: float
    padding: int = 5

    def __post_init__(self) -> None:
        if self.padding < 0:
            raise ValueError("padding must be >= 0")

    @property
    def box(self) -> Box:
        return Box(self.x, self.y, self.w, self.h)


@dataclass(frozen=True, slots=True, eq=False)
class CandidateInstance:
    """
    One geometric instance produced by the extraction loop.

    Attributes:
        reference: owning ReferencePattern name.
        box: validated (clipped) box in target-image pixels.
        transform: 3x3 matrix mapping reference space to target space.
        inliers: number of correspondences consistent with the transform.
        inlier_ratio: inliers / unconsumed correspondences at fit time.
        confidence: inliers / reference descriptor count, in [0, 1].
        color: dominant (R, G, B) of the box in the original image.
    """
    reference: str
    box: Box
    transform: np.ndarray = field(repr=False)
    inliers: int
    inlier_ratio: float
    confidence: float
    color: Color

    def __post_init__(self) -> None:
        t = np.asarray(self.transform, dtype=np.float64)
        if t.shape != (3, 3):
            raise ValueError("transform must be 3x3")
        object.__setattr__(self, "transform", _readonly(t))
        if self.inliers < 0:
            raise ValueError("inliers must be >= 0")
        object.__setattr__(self, "confidence", float(np.clip(self.confidence, 0.0, 1.0)))
        object.__setattr__(self, "inlier_ratio", float(np.clip(self.inlier_ratio, 0.0, 1.0)))
        object.__setattr__(self, "color", tuple(int(c) for c in self.color))


@dataclass(frozen=True, slots=True, eq=False)
class AcceptedDetection:
    """A candidate that survived validation and cross-detection suppression."""
    candidate: CandidateInstance

    @property
    def reference(self) -> str:
        return self.candidate.reference

    @property
    def box(self) -> Box:
        return self.candidate.box

    @property
    def confidence(self) -> float:
        return self.candidate.confidence

    @property
    def inliers(self) -> int:
        return self.candidate.inliers

    @property
    def inlier_ratio(self) -> float:
        return self.candidate.inlier_ratio

    @property
    def color(self) -> Color:
        return self.candidate.color

    @property
    def transform(self) -> np.ndarray:
        return self.candidate.transform

    def to_dict(self) -> Dict[str, Any]:
        return {
            "box": self.box.to_list(),
            "confidence": self.confidence,
            "inliers": self.inliers,
            "inlier_ratio": self.inlier_ratio,
            "color": list(self.color),
            "transform": self.transform.tolist(),
        }


class DetectionSet:
    """
    Ordered mapping reference name -> accepted detections.
    Only references with at least one detection are present.
    """

    __slots__ = ("_groups",)

    def __init__(self, groups: Optional[Sequence[Tuple[str, Sequence[AcceptedDetection]]]] = None):
        self._groups: Dict[str, Tuple[AcceptedDetection, ...]] = {}
        for name, dets in groups or ():
            if dets:
                self._groups[name] = tuple(dets)

    def __getitem__(self, name: str) -> Tuple[AcceptedDetection, ...]:
        return self._groups[name]

    def __contains__(self, name: object) -> bool:
        return name in self._groups

    def __iter__(self) -> Iterator[str]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DetectionSet):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={len(v)}" for k, v in self._groups.items())
        return f"DetectionSet({counts})"

    def items(self):
        return self._groups.items()

    def names(self) -> List[str]:
        return list(self._groups)

    def all(self) -> List[AcceptedDetection]:
        return [d for dets in self._groups.values() for d in dets]

    @property
    def total(self) -> int:
        return sum(len(v) for v in self._groups.values())

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: [d.to_dict() for d in dets] for name, dets in self._groups.items()}
