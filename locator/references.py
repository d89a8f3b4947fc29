from __future__ import annotations
"""
Reference pattern loading and the on-disk descriptor cache.

    refs/
      ├─ logo.png
      ├─ stamp.jpg
      └─ ...

Every supported image becomes a ReferencePattern named after its file stem,
with full-size descriptors and (optionally) descriptors of scaled copies.
"""

import hashlib
import json
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np
from PIL import Image

from common.logging_setup import get_logger, fields
from common.types import FeatureSet, ReferencePattern, ScaledVariant
from locator.config import LocatorConfig
from locator.features import OrbFeatureExtractor
from locator.preprocess import drop_alpha, prepare_reference


log = get_logger("locator.references")

SUPPORTED_FORMATS = (".png", ".jpg", ".jpeg", ".bmp", ".tiff", ".tif", ".gif")


# -----------------------------
# Image reading
# -----------------------------

def read_image(path: Path) -> Optional[np.ndarray]:
    """
    Read an image as uint8 BGR (or gray). OpenCV first; Pillow for what it
    cannot decode (GIF). Returns None if neither can read the file.
    """
    img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if img is None:
        try:
            with Image.open(path) as im:
                rgb = np.asarray(im.convert("RGB"))
        except (OSError, ValueError):
            return None
        img = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
    if img.dtype == np.uint16:
        img = (img / 257.0).astype(np.uint8)
    elif img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    return drop_alpha(img)


def list_reference_files(directory: Path) -> List[Path]:
    files = [
        p for p in Path(directory).iterdir()
        if p.is_file() and p.suffix.lower() in SUPPORTED_FORMATS
    ]
    return sorted(files, key=lambda p: (p.stem, p.name))


# -----------------------------
# Building patterns
# -----------------------------

def build_reference(
    name: str,
    image: np.ndarray,
    extractor: OrbFeatureExtractor,
    scales: Sequence[float] = (),
) -> ReferencePattern:
    """Describe a reference image at full size and at each extra scale."""
    gray = prepare_reference(image)
    h, w = gray.shape[:2]
    base = extractor.describe(gray)
    variants = []
    for s in scales:
        if s == 1.0:
            continue
        variants.append(ScaledVariant(float(s), extractor.describe(prepare_reference(image, s))))
    return ReferencePattern(name=name, width=int(w), height=int(h), features=base, variants=tuple(variants))


def load_reference_patterns(
    directory: str,
    cfg: Optional[LocatorConfig] = None,
    *,
    extractor: Optional[OrbFeatureExtractor] = None,
    cache: Optional["FeatureCache"] = None,
) -> List[ReferencePattern]:
    """
    Load every supported image in `directory` as a ReferencePattern, ordered by name.
    Unreadable files are logged and skipped. With a cache, a valid entry is
    reused and a fresh load is written back.
    """
    cfg = cfg or LocatorConfig()
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Reference directory not found: {directory}")

    if cache is not None:
        cached = cache.load()
        if cached is not None:
            return cached

    extractor = extractor or OrbFeatureExtractor(nfeatures=cfg.orb.max_features)
    scales = cfg.orb.scales if cfg.orb.multi_scale else []
    patterns: List[ReferencePattern] = []
    seen: Dict[str, int] = {}
    failed = 0
    for path in list_reference_files(root):
        img = read_image(path)
        if img is None:
            log.warning("Failed to load reference image", extra=fields(path=str(path)))
            failed += 1
            continue
        name = path.stem if path.stem not in seen else path.name
        seen[name] = 1
        pat = build_reference(name, img, extractor, scales)
        if pat.descriptor_count == 0:
            log.warning("No features in reference", extra=fields(reference=name))
        patterns.append(pat)
        log.debug("Loaded reference", extra=fields(
            reference=name, width=pat.width, height=pat.height,
            descriptors=pat.descriptor_count, variants=len(pat.variants),
        ))

    if not patterns:
        log.warning("No reference images were loaded", extra=fields(directory=str(root), failed=failed))
    else:
        log.info("References loaded", extra=fields(count=len(patterns), failed=failed))

    if cache is not None and patterns:
        cache.save(patterns)
    return patterns


# -----------------------------
# Descriptor cache
# -----------------------------

class FeatureCache:
    """
    Descriptor cache for one reference directory, stored as a single .npz.

    An entry is valid only if it was built with the same descriptor-relevant
    config (LocatorConfig.cache_key()) and the directory still holds exactly
    the same files with unchanged size and modification time.
    """

    def __init__(self, reference_dir: str, cfg: LocatorConfig, cache_dir: Optional[str] = None):
        self.reference_dir = Path(reference_dir).resolve()
        self.cfg = cfg
        root = Path(cache_dir or cfg.processing.cache_dir or tempfile.gettempdir())
        digest = hashlib.sha1(str(self.reference_dir).encode("utf-8")).hexdigest()[:16]
        self.path = root / f"locator_refs_{digest}.npz"

    # -------- public API --------

    def exists(self) -> bool:
        return self.load() is not None

    def load(self) -> Optional[List[ReferencePattern]]:
        if not self.path.is_file():
            return None
        try:
            with np.load(self.path, allow_pickle=False) as z:
                meta = json.loads(str(z["meta"]))
                if meta.get("config") != self._config_key():
                    log.info("Feature cache invalidated: configuration changed")
                    return None
                if meta.get("files") != self._files_info():
                    log.info("Feature cache invalidated: reference files changed")
                    return None
                patterns = [self._pattern_from(z, i, p) for i, p in enumerate(meta["patterns"])]
        except (OSError, KeyError, ValueError) as e:
            log.warning("Ignoring unreadable feature cache", extra=fields(path=str(self.path), error=str(e)))
            return None
        log.info("Loaded cached references", extra=fields(count=len(patterns), path=str(self.path)))
        return patterns

    def save(self, patterns: Sequence[ReferencePattern]) -> bool:
        arrays: Dict[str, np.ndarray] = {}
        entries = []
        for i, p in enumerate(patterns):
            arrays[f"p{i}_pts"] = p.features.points
            arrays[f"p{i}_des"] = p.features.descriptors
            for j, v in enumerate(p.variants):
                arrays[f"p{i}_v{j}_pts"] = v.features.points
                arrays[f"p{i}_v{j}_des"] = v.features.descriptors
            entries.append({
                "name": p.name, "width": p.width, "height": p.height,
                "scales": [v.scale for v in p.variants],
            })
        meta = {"config": self._config_key(), "files": self._files_info(), "patterns": entries}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("wb") as f:
                np.savez(f, meta=np.array(json.dumps(meta)), **arrays)
        except OSError as e:
            log.warning("Could not write feature cache", extra=fields(path=str(self.path), error=str(e)))
            return False
        log.info("Saved feature cache", extra=fields(count=len(patterns), path=str(self.path)))
        return True

    def clear(self) -> bool:
        if self.path.exists():
            self.path.unlink()
            log.info("Feature cache cleared", extra=fields(path=str(self.path)))
        return True

    # -------- internals --------

    def _config_key(self) -> list:
        return json.loads(json.dumps(self.cfg.cache_key()))

    def _files_info(self) -> Dict[str, List[int]]:
        info = {}
        for p in list_reference_files(self.reference_dir):
            st = p.stat()
            info[p.name] = [int(st.st_mtime_ns), int(st.st_size)]
        return info

    @staticmethod
    def _pattern_from(z, i: int, entry: Dict) -> ReferencePattern:
        variants = tuple(
            ScaledVariant(float(s), FeatureSet(z[f"p{i}_v{j}_pts"], z[f"p{i}_v{j}_des"]))
            for j, s in enumerate(entry["scales"])
        )
        return ReferencePattern(
            name=str(entry["name"]),
            width=int(entry["width"]),
            height=int(entry["height"]),
            features=FeatureSet(z[f"p{i}_pts"], z[f"p{i}_des"]),
            variants=variants,
        )
