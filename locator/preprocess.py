from __future__ import annotations
"""
Target/reference image preparation for feature extraction:
- drop alpha, convert to gray u8
- bound the working size (max dimension)
- contrast (CLAHE), denoise (gaussian | median), sharpen (unsharp mask)
- ROI as a feature-extraction mask

The original color image is never modified; boxes and color crops are taken
from it, so anything produced on the working image has to be divided by
`scale` to get back to original pixels.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from locator.config import PreprocessParams


# -----------------------------
# Basic image ops
# -----------------------------

def drop_alpha(img: np.ndarray) -> np.ndarray:
    if img.ndim == 3 and img.shape[2] == 4:
        return img[:, :, :3]
    return img


def to_gray_u8(img: np.ndarray) -> np.ndarray:
    img = drop_alpha(img)
    if img.ndim == 2:
        g = img
    elif img.shape[2] == 1:
        g = img[:, :, 0]
    else:
        g = cv2.cvtColor(np.ascontiguousarray(img), cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def clahe(gray_u8: np.ndarray, clip_limit: float = 2.0, tile_grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    cl = cv2.createCLAHE(clipLimit=float(clip_limit), tileGridSize=tile_grid)
    return cl.apply(gray_u8)


def unsharp_mask(gray_u8: np.ndarray, amount: float = 0.5, radius: float = 1.0) -> np.ndarray:
    """
    Simple unsharp mask: result = (1+amount)*img - amount*gaussian(img)
    """
    if amount <= 0.0:
        return gray_u8
    blur = cv2.GaussianBlur(gray_u8, (0, 0), max(1e-6, float(radius)))
    f = cv2.addWeighted(gray_u8, 1.0 + amount, blur, -amount, 0)
    return np.clip(f, 0, 255).astype(np.uint8)


def denoise(gray_u8: np.ndarray, method: str = "gaussian", size: int = 3) -> np.ndarray:
    if method == "gaussian":
        return cv2.GaussianBlur(gray_u8, (0, 0), max(1e-6, size / 3.0))
    if method == "median":
        k = size if size % 2 == 1 else size + 1
        return cv2.medianBlur(gray_u8, k)
    raise ValueError(f"Unknown denoising method: {method}")


def resize_max_dim(img: np.ndarray, max_dim: Optional[int]) -> Tuple[np.ndarray, float]:
    """Downscale so that max(H, W) <= max_dim; returns (image, scale)."""
    h, w = img.shape[:2]
    if not max_dim or max(h, w) <= max_dim:
        return img, 1.0
    s = float(max_dim) / float(max(h, w))
    out = cv2.resize(img, (max(1, int(round(w * s))), max(1, int(round(h * s)))), interpolation=cv2.INTER_AREA)
    return out, s


def roi_mask(shape: Tuple[int, int], roi: Optional[Tuple[int, int, int, int]], scale: float = 1.0) -> Optional[np.ndarray]:
    """u8 mask (255 inside the ROI) for detectAndCompute; ROI in original pixels."""
    if roi is None:
        return None
    H, W = shape
    x, y, w, h = roi
    x1 = max(0, int(round(x * scale)))
    y1 = max(0, int(round(y * scale)))
    x2 = min(W, int(round((x + w) * scale)))
    y2 = min(H, int(round((y + h) * scale)))
    if x2 <= x1 or y2 <= y1:
        raise ValueError("ROI does not overlap the image")
    m = np.zeros((H, W), dtype=np.uint8)
    m[y1:y2, x1:x2] = 255
    return m


# -----------------------------
# Turn-key preprocessors
# -----------------------------

@dataclass
class PreparedImage:
    gray: np.ndarray          # working image (u8)
    scale: float              # working = original * scale
    mask: Optional[np.ndarray] = None


def preprocess_target(
    bgr: np.ndarray,
    params: Optional[PreprocessParams] = None,
    *,
    roi: Optional[Tuple[int, int, int, int]] = None,
) -> PreparedImage:
    """
    Prepare a target image for feature extraction:
      - resize to params.max_dimension
      - to gray (u8)
      - optional CLAHE
      - optional denoise
      - optional unsharp mask
    """
    params = params or PreprocessParams()
    img = drop_alpha(bgr)
    scale = 1.0
    if params.enabled:
        img, scale = resize_max_dim(img, params.max_dimension)
    gray = to_gray_u8(img)

    if params.enabled:
        if params.clahe_clip and params.clahe_clip > 0:
            gray = clahe(gray, clip_limit=float(params.clahe_clip))
        if params.denoise:
            gray = denoise(gray, params.denoise, params.denoise_size)
        if params.sharpen_amount and params.sharpen_amount > 0:
            gray = unsharp_mask(gray, amount=float(params.sharpen_amount))

    return PreparedImage(gray=gray, scale=scale, mask=roi_mask(gray.shape[:2], roi, scale))


def prepare_reference(bgr: np.ndarray, scale: float = 1.0) -> np.ndarray:
    """Gray u8 reference, optionally resized by `scale`."""
    gray = to_gray_u8(bgr)
    if scale == 1.0:
        return gray
    h, w = gray.shape[:2]
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    interp = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC
    return cv2.resize(gray, size, interpolation=interp)
