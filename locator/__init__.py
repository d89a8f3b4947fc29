"""
Locator: multi-instance reference pattern localization

This package provides:
- Exclusion masks from already-claimed regions (e.g. recognized text)
- Region validation (geometry sanity + exclusion overlap)
- Dominant color of a region (sampled k-means)
- Iterative RANSAC extraction of several instances per reference pattern
- Global non-maximum suppression and grouping by reference
- OpenCV ORB correspondences, reference loading and a descriptor cache

Entry point:
    python -m locator.pipeline --config config/params.yaml \
        --image scene.png --references refs/ [--exclusions text.json]
"""
from .pipeline import detect_patterns, localize, process_frame

__all__ = ["detect_patterns", "localize", "process_frame"]
