from __future__ import annotations

from typing import List, Optional, Sequence

from common.types import AcceptedDetection, CandidateInstance
from locator.events import EventSink, NullEventSink


def suppress_overlaps(
    candidates: Sequence[CandidateInstance],
    iou_threshold: float = 0.5,
    sink: Optional[EventSink] = None,
) -> List[AcceptedDetection]:
    """
    Greedy non-maximum suppression across all references.

    Candidates are visited by confidence, highest first (stable: equal
    confidences keep input order). Each kept candidate removes every remaining
    one whose IoU with it is >= iou_threshold, whatever reference produced it.
    Returns the kept detections in descending-confidence order.
    """
    sink = sink or NullEventSink()
    order = sorted(range(len(candidates)), key=lambda i: -candidates[i].confidence)
    remaining = [candidates[i] for i in order]
    kept: List[AcceptedDetection] = []
    while remaining:
        best = remaining[0]
        kept.append(AcceptedDetection(best))
        remaining = [c for c in remaining[1:] if best.box.iou(c.box) < iou_threshold]
    sink.emit("suppression_summary", kept=len(kept), total=len(candidates))
    return kept
