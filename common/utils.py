from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence, Tuple
import time
import numpy as np


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_numpy_3x3(x) -> np.ndarray:
    """
    Ensure input is a 3x3 float64 numpy array (copy if necessary).
    A 2x3 affine matrix is promoted by appending the row [0, 0, 1].
    """
    a = np.asarray(x, dtype=float)
    if a.shape == (2, 3):
        a = np.vstack([a, [0.0, 0.0, 1.0]])
    if a.shape != (3, 3):
        raise ValueError("Expected 3x3 or 2x3")
    return a.copy()


def parse_box(s: str) -> Tuple[int, int, int, int]:
    """Parse 'x,y,w,h' into an int tuple."""
    parts = [p.strip() for p in s.split(",")]
    if len(parts) != 4:
        raise ValueError("Box must be x,y,w,h")
    x, y, w, h = (int(float(p)) for p in parts)
    if w <= 0 or h <= 0:
        raise ValueError("Box width/height must be > 0")
    return x, y, w, h


def elapsed_ms(t0: float) -> int:
    return int(1000.0 * (time.perf_counter() - t0))


def as_points(pts: Sequence) -> np.ndarray:
    """Coerce a point list into an (N, 2) float32 array."""
    a = np.asarray(pts, dtype=np.float32)
    if a.size == 0:
        return np.zeros((0, 2), np.float32)
    return a.reshape(-1, 2)
