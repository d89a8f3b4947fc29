from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from common.types import Color


_KMEANS_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 50, 0.1)


def _to_color(v) -> Color:
    c = np.clip(np.floor(np.asarray(v, dtype=np.float64) + 0.5), 0, 255).astype(int)
    return (int(c[0]), int(c[1]), int(c[2]))


def _mean_color(pixels: np.ndarray) -> Color:
    return _to_color(pixels.mean(axis=0))


def dominant_color(
    crop: Optional[np.ndarray],
    *,
    rng: Optional[np.random.Generator] = None,
    seed: int = 0,
    k: int = 3,
    min_samples: int = 100,
    max_samples: int = 1000,
) -> Color:
    """
    Representative color of an image crop (channel order is preserved, pass RGB).

    - fewer than 3 channels: grey mean replicated on all three channels
    - more than `min_samples` pixels: random subset (at most `max_samples`),
      k-means with k clusters, centroid of the most populated cluster
    - otherwise, or if clustering fails: mean of all pixels

    Sampling and the initial cluster labels come from `rng` (or a generator
    seeded with `seed`), so the result is reproducible. Never raises.
    """
    if crop is None or crop.size == 0:
        return (0, 0, 0)

    if crop.ndim == 2 or crop.shape[2] < 3:
        g = float(np.mean(crop))
        return _to_color([g, g, g])

    pixels = crop[..., :3].reshape(-1, 3).astype(np.float32)
    n = pixels.shape[0]
    if n <= min_samples:
        return _mean_color(pixels)

    rng = rng if rng is not None else np.random.default_rng(seed)
    m = min(max_samples, n)
    sample = pixels[rng.choice(n, size=m, replace=False)]
    labels0 = rng.integers(0, k, size=(m, 1)).astype(np.int32)

    try:
        _, labels, centers = cv2.kmeans(
            sample, k, labels0, _KMEANS_CRITERIA, 1, cv2.KMEANS_USE_INITIAL_LABELS
        )
    except cv2.error:
        return _mean_color(pixels)

    counts = np.bincount(labels.ravel(), minlength=k)
    best = centers[int(np.argmax(counts))]
    if not np.all(np.isfinite(best)):
        return _mean_color(pixels)
    return _to_color(best)
