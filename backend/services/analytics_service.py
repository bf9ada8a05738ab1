"""Onboarding funnel analytics.

One ``OnboardingAnalytics`` per onboarding session. The application keeps
an ``AnalyticsHub`` on ``app.state`` that hands out the tracker for a
session id; routes reach it through ``routers.dependencies.get_analytics``.
Each tracker keeps a bounded in-memory log and forwards events to a sink
(default: this module's logger). A failing sink is logged and otherwise
ignored.
"""

import logging
import os
import secrets
import string
import threading
import time
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_SESSION = int(os.getenv("ANALYTICS_MAX_EVENTS", "500"))
MAX_SESSIONS = int(os.getenv("ANALYTICS_MAX_SESSIONS", "1000"))


EventData = Dict[str, Any]


@dataclass
class OnboardingEvent:
    step: int
    action: str
    timestamp: str
    session_id: str
    user_id: Optional[str] = None
    data: EventData = field(default_factory=dict)
    user_agent: str = "unknown"
    viewport: str = "unknown"

    def to_dict(self) -> dict:
        return asdict(self)


def log_sink(event: OnboardingEvent) -> None:
    logger.info(f"[ANALYTICS] {event.action} step={event.step} session={event.session_id} data={event.data}")


def new_session_id(clock: Callable[[], float] = time.time) -> str:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"session_{int(clock() * 1000)}_{suffix}"


class OnboardingAnalytics:
    """Event log for one session; the oldest events drop once ``max_events`` is reached."""

    def __init__(self, sink: Optional[Callable[[OnboardingEvent], None]] = log_sink,
                 clock: Callable[[], float] = time.time,
                 session_id: Optional[str] = None,
                 max_events: int = MAX_EVENTS_PER_SESSION):
        self.sink = sink
        self.clock = clock
        self._events: deque = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self.session_id = session_id or new_session_id(clock)

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()

    def add_event(self, step: int, action: str, data: Optional[EventData] = None,
                  user_id: Optional[str] = None, user_agent: str = "unknown",
                  viewport: str = "unknown") -> OnboardingEvent:
        event = OnboardingEvent(
            step=step,
            action=action,
            timestamp=self._timestamp(),
            session_id=self.session_id,
            user_id=user_id,
            data=dict(data or {}),
            user_agent=user_agent,
            viewport=viewport,
        )
        with self._lock:
            self._events.append(event)

        if self.sink is not None:
            try:
                self.sink(event)
            except Exception as e:
                logger.warning(f"[ANALYTICS] Failed to send analytics event: {e}")
        return event

    # ---- tracking helpers ----

    def track_step_view(self, step: int, data: Optional[EventData] = None) -> OnboardingEvent:
        return self.add_event(step, "step_view", data)

    def track_step_complete(self, step: int, data: Optional[EventData] = None) -> OnboardingEvent:
        return self.add_event(step, "step_complete", data)

    def track_validation_error(self, step: int, field_name: str, error: str) -> OnboardingEvent:
        return self.add_event(step, "validation_error", {"field": field_name, "error": error})

    def track_form_abandon(self, step: int, time_on_step: float) -> OnboardingEvent:
        return self.add_event(step, "form_abandon", {"time_on_step": time_on_step})

    def track_submission_success(self, user_id: str, total_time: float) -> OnboardingEvent:
        return self.add_event(5, "submission_success", {"total_time": total_time}, user_id=user_id)

    def track_submission_error(self, error: str, attempt: int) -> OnboardingEvent:
        return self.add_event(5, "submission_error", {"error": error, "attempt": attempt})

    def track_ocr_performance(self, success: bool, processing_time: float,
                              confidence: Optional[float] = None) -> OnboardingEvent:
        data: EventData = {"success": success, "processing_time": processing_time}
        if confidence is not None:
            data["confidence"] = confidence
        return self.add_event(2, "ocr_performance", data)

    def track_technical_error(self, error: str, step: int,
                              context: Optional[str] = None) -> OnboardingEvent:
        data: EventData = {"error": error}
        if context:
            data["context"] = context
        return self.add_event(step, "technical_error", data)

    def track_feedback(self, rating: int, comment: str, step: Optional[int] = None) -> OnboardingEvent:
        return self.add_event(step or 0, "user_feedback", {"rating": rating, "comment": comment})

    # ---- reporting ----

    def get_session_summary(self) -> dict:
        with self._lock:
            events = list(self._events)

        step_counts: Dict[int, int] = {}
        for e in events:
            step_counts[e.step] = step_counts.get(e.step, 0) + 1
        error_count = sum(1 for e in events if "error" in e.action or "abandon" in e.action)

        duration = 0
        if events:
            first = datetime.fromisoformat(events[0].timestamp).timestamp()
            duration = int((self.clock() - first) * 1000)

        return {
            "session_id": self.session_id,
            "total_events": len(events),
            "step_counts": step_counts,
            "error_count": error_count,
            "duration": duration,
        }

    def export_events(self) -> List[OnboardingEvent]:
        with self._lock:
            return list(self._events)


class AnalyticsHub:
    """Per-session trackers, least recently used dropped past ``max_sessions``."""

    def __init__(self, sink: Optional[Callable[[OnboardingEvent], None]] = log_sink,
                 clock: Callable[[], float] = time.time,
                 max_sessions: int = MAX_SESSIONS,
                 max_events: int = MAX_EVENTS_PER_SESSION):
        self.sink = sink
        self.clock = clock
        self.max_sessions = max_sessions
        self.max_events = max_events
        self._sessions: "OrderedDict[str, OnboardingAnalytics]" = OrderedDict()
        self._lock = threading.Lock()

    def session(self, session_id: Optional[str] = None) -> OnboardingAnalytics:
        """Tracker for ``session_id``; a new session when it is None or unknown."""
        with self._lock:
            if session_id and session_id in self._sessions:
                self._sessions.move_to_end(session_id)
                return self._sessions[session_id]

            tracker = OnboardingAnalytics(sink=self.sink, clock=self.clock,
                                          session_id=session_id, max_events=self.max_events)
            self._sessions[tracker.session_id] = tracker
            while len(self._sessions) > self.max_sessions:
                dropped, _ = self._sessions.popitem(last=False)
                logger.info(f"[ANALYTICS] Dropped idle session {dropped}")
            return tracker

    def get(self, session_id: str) -> Optional[OnboardingAnalytics]:
        with self._lock:
            return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)
