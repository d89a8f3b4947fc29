from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

from common.types import AcceptedDetection, DetectionSet


def assemble_detections(
    accepted: Sequence[AcceptedDetection],
    reference_order: Iterable[str],
) -> DetectionSet:
    """
    Group accepted detections by reference name.

    Groups follow `reference_order`; within a group the input (confidence)
    order is kept. References without detections are left out.
    """
    by_ref: Dict[str, List[AcceptedDetection]] = {}
    for d in accepted:
        by_ref.setdefault(d.reference, []).append(d)
    groups = [(name, by_ref.pop(name)) for name in reference_order if name in by_ref]
    # detections whose reference is missing from the order go last, sorted by name
    groups.extend(sorted(by_ref.items()))
    return DetectionSet(groups)
