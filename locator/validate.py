from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from common.types import Box


OUT_OF_BOUNDS = "out_of_bounds"
TOO_SMALL = "too_small"
TOO_LARGE = "too_large"
EXCLUDED = "excluded"


@dataclass(frozen=True, slots=True)
class RegionVerdict:
    """
    Outcome of validate_region().

    Attributes:
        accepted: True if all checks passed.
        box: clipped integer box (None when rejected as out of bounds).
        reason: rejection reason, None when accepted.
        excluded_fraction: share of the clipped box covered by the exclusion mask.
    """
    accepted: bool
    box: Optional[Box]
    reason: Optional[str] = None
    excluded_fraction: float = 0.0


def _round(v: float) -> int:
    return int(math.floor(v + 0.5))


def clip_box(box: Box, size: Tuple[int, int]) -> Optional[Box]:
    """Round and clip a box to [0, W) x [0, H); None if nothing usable remains."""
    W, H = int(size[0]), int(size[1])
    if not all(math.isfinite(v) for v in (box.x, box.y, box.w, box.h)):
        return None
    x1 = max(0, _round(box.x))
    y1 = max(0, _round(box.y))
    x2 = min(W, _round(box.x2))
    y2 = min(H, _round(box.y2))
    if x2 <= x1 or y2 <= y1:
        return None
    return Box(float(x1), float(y1), float(x2 - x1), float(y2 - y1))


def excluded_fraction(box: Box, mask: Optional[np.ndarray]) -> float:
    """Share of the (integer, in-bounds) box area marked True in mask."""
    if mask is None or mask.size == 0:
        return 0.0
    x1, y1 = int(box.x), int(box.y)
    x2, y2 = int(box.x2), int(box.y2)
    cells = mask[y1:y2, x1:x2]
    if cells.size == 0:
        return 0.0
    return float(np.count_nonzero(cells)) / float(cells.size)


def validate_region(
    box: Box,
    size: Tuple[int, int],
    mask: Optional[np.ndarray] = None,
    *,
    min_size: int = 10,
    max_size: Optional[Tuple[float, float]] = None,
    overlap_threshold: float = 0.3,
) -> RegionVerdict:
    """
    Accept or reject a projected box. Checks run in order; the first failure wins.

      1. the box must overlap the image after rounding/clipping  -> out_of_bounds
      2. clipped w/h >= min_size                                 -> too_small
         projected w/h <= max_size (default: 2x image W/H)       -> too_large
      3. excluded fraction of the clipped box < overlap_threshold -> excluded

    The maximum is tested on the projected (unclipped) extent.
    """
    W, H = int(size[0]), int(size[1])
    clipped = clip_box(box, (W, H))
    if clipped is None:
        return RegionVerdict(False, None, OUT_OF_BOUNDS)

    if clipped.w < min_size or clipped.h < min_size:
        return RegionVerdict(False, clipped, TOO_SMALL)

    max_w, max_h = max_size if max_size is not None else (2.0 * W, 2.0 * H)
    if box.w > max_w or box.h > max_h:
        return RegionVerdict(False, clipped, TOO_LARGE)

    frac = excluded_fraction(clipped, mask)
    if frac >= overlap_threshold:
        return RegionVerdict(False, clipped, EXCLUDED, frac)

    return RegionVerdict(True, clipped, None, frac)
