from __future__ import annotations
"""
Structured run events.

The extraction loop, the suppression step and the run driver report state
transitions through an EventSink handed to them by the caller:

    pattern_started     reference, correspondences
    candidate_accepted  reference, box, confidence, inliers, inlier_ratio
    candidate_rejected  reference, reason, box, inliers
    pattern_done        reference, reason, instances, cycles
    pattern_skipped     reference, reason
    suppression_summary kept, total
    run_finished        references, detections, latency_ms
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from common.logging_setup import get_logger, fields


class EventSink(Protocol):
    def emit(self, event: str, **kw: Any) -> None: ...


_LEVELS = {
    "candidate_accepted": logging.INFO,
    "suppression_summary": logging.INFO,
    "run_finished": logging.INFO,
    "pattern_skipped": logging.WARNING,
}


class LoggingEventSink:
    """Forward events to a logger as JSON records (message = event name)."""

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or get_logger("locator")

    def emit(self, event: str, **kw: Any) -> None:
        self.log.log(_LEVELS.get(event, logging.DEBUG), event, extra=fields(**kw))


@dataclass
class RecordedEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)


class RecordingEventSink:
    """Keep events in memory; safe to share across extraction workers."""

    def __init__(self) -> None:
        self.events: List[RecordedEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: str, **kw: Any) -> None:
        with self._lock:
            self.events.append(RecordedEvent(event, dict(kw)))

    def of(self, event: str) -> List[RecordedEvent]:
        return [e for e in self.events if e.event == event]


class NullEventSink:
    def emit(self, event: str, **kw: Any) -> None:
        return None
