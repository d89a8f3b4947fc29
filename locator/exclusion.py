from __future__ import annotations
"""
Exclusion mask: regions already claimed by earlier stages (typically
recognized text) rasterized into a padded boolean occupancy mask.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from common.logging_setup import get_logger, fields
from common.types import ExclusionRegion


log = get_logger("locator.exclusion")


def build_exclusion_mask(
    size: Tuple[int, int],
    regions: Iterable[ExclusionRegion],
    padding: Optional[int] = None,
) -> np.ndarray:
    """
    Rasterize regions into an (H, W) bool mask.

    Args:
        size: image (W, H).
        regions: exclusion boxes in target-image pixels.
        padding: overrides each region's own padding when given.

    Each box is grown by the padding on every side and clamped to the image.
    The returned mask is read-only so it can be shared across workers.
    """
    W, H = int(size[0]), int(size[1])
    mask = np.zeros((max(0, H), max(0, W)), dtype=bool)
    n = 0
    for r in regions:
        p = int(r.padding if padding is None else padding)
        x1 = max(0, int(round(r.x)) - p)
        y1 = max(0, int(round(r.y)) - p)
        x2 = min(W, int(round(r.x + r.w)) + p)
        y2 = min(H, int(round(r.y + r.h)) + p)
        if x2 > x1 and y2 > y1:
            mask[y1:y2, x1:x2] = True
        n += 1
    mask.setflags(write=False)
    if n:
        log.debug("Exclusion mask built", extra=fields(regions=n, covered_px=int(mask.sum())))
    return mask


def _region_from_row(row: Any, padding: int) -> Tuple[ExclusionRegion, Optional[float]]:
    if isinstance(row, dict):
        conf = row.get("confidence")
        if "bbox" in row:
            x, y, w, h = (float(v) for v in row["bbox"])
        else:
            x, y, w, h = (float(row[k]) for k in ("x", "y", "w", "h"))
    else:
        conf = None
        x, y, w, h = (float(v) for v in row)
    return ExclusionRegion(x, y, w, h, padding=padding), (None if conf is None else float(conf))


def load_exclusion_regions(
    path: str,
    *,
    padding: int = 5,
    min_confidence: Optional[float] = None,
) -> List[ExclusionRegion]:
    """
    Read exclusion boxes from JSON.

    Accepted shapes:
        [[x, y, w, h], ...]
        [{"bbox": [x, y, w, h], "confidence": 91.0, "text": "..."}, ...]
        {"regions": [...]}   (either of the above under "regions")

    Rows carrying a confidence below `min_confidence` are dropped; this is how
    only confirmed text detections become exclusions.
    """
    data: Any = json.loads(Path(path).read_text())
    if isinstance(data, dict):
        data = data.get("regions", [])
    out: List[ExclusionRegion] = []
    dropped = 0
    for row in data:
        region, conf = _region_from_row(row, padding)
        if min_confidence is not None and conf is not None and conf < min_confidence:
            dropped += 1
            continue
        if region.w <= 0 or region.h <= 0:
            dropped += 1
            continue
        out.append(region)
    log.info("Loaded exclusion regions", extra=fields(path=str(path), kept=len(out), dropped=dropped))
    return out


def regions_to_rows(regions: Iterable[ExclusionRegion]) -> List[Dict[str, float]]:
    return [{"x": r.x, "y": r.y, "w": r.w, "h": r.h, "padding": r.padding} for r in regions]
