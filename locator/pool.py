from __future__ import annotations

from typing import Optional

import numpy as np

from common.utils import as_points


class CorrespondencePool:
    """
    Correspondences for one reference pattern in one run.

    Point pairs live in two (N, 2) arrays; `consumed` is the usage bitset.
    Only the extraction loop that owns the pool flips bits, and a consumed
    correspondence is never handed out again.
    """

    __slots__ = ("ref_pts", "tgt_pts", "distances", "consumed")

    def __init__(self, ref_pts, tgt_pts, distances: Optional[np.ndarray] = None):
        r = as_points(ref_pts).copy()
        t = as_points(tgt_pts).copy()
        if len(r) != len(t):
            raise ValueError("ref_pts and tgt_pts must have the same length")
        r.setflags(write=False)
        t.setflags(write=False)
        self.ref_pts = r
        self.tgt_pts = t
        self.distances = None if distances is None else np.asarray(distances, dtype=np.float32)
        self.consumed = np.zeros(len(r), dtype=bool)

    def __len__(self) -> int:
        return int(self.ref_pts.shape[0])

    @classmethod
    def empty(cls) -> "CorrespondencePool":
        return cls(np.zeros((0, 2), np.float32), np.zeros((0, 2), np.float32))

    def available(self) -> np.ndarray:
        """Indices of unconsumed correspondences, ascending."""
        return np.flatnonzero(~self.consumed)

    @property
    def remaining(self) -> int:
        return int(len(self) - np.count_nonzero(self.consumed))

    def consume(self, idx: np.ndarray) -> int:
        """Mark indices consumed; returns how many were newly consumed."""
        idx = np.asarray(idx, dtype=np.intp)
        fresh = int(np.count_nonzero(~self.consumed[idx]))
        self.consumed[idx] = True
        return fresh

    def reset(self) -> None:
        self.consumed[:] = False
