"""
Tests for onboarding funnel analytics.
"""
from unittest.mock import MagicMock

import pytest

from services.analytics_service import AnalyticsHub, OnboardingAnalytics


@pytest.fixture
def tracker(clock):
    return OnboardingAnalytics(sink=None, clock=clock)


def test_session_id_prefix(tracker):
    assert tracker.session_id.startswith("session_1700000000000_")


def test_events_are_recorded_in_order(tracker):
    tracker.track_step_view(1)
    tracker.track_step_complete(1, {"fields": 6})
    tracker.track_step_view(2)

    events = tracker.export_events()
    assert [e.action for e in events] == ["step_view", "step_complete", "step_view"]
    assert events[1].data == {"fields": 6}
    assert events[0].session_id == tracker.session_id
    assert events[0].timestamp.startswith("2023-11-14T22:13:20")


def test_summary_counts_steps_and_errors(tracker, clock):
    tracker.track_step_view(1)
    tracker.track_validation_error(1, "email", "Invalid email")
    tracker.track_form_abandon(2, 42.0)
    tracker.track_submission_error("network down", 1)
    tracker.track_step_view(2)
    clock.advance(5)

    summary = tracker.get_session_summary()
    assert summary["total_events"] == 5
    assert summary["step_counts"] == {1: 2, 2: 2, 5: 1}
    assert summary["error_count"] == 3
    assert summary["duration"] == 5000


def test_empty_summary(tracker):
    summary = tracker.get_session_summary()
    assert summary["total_events"] == 0
    assert summary["duration"] == 0


def test_ocr_performance_omits_missing_confidence(tracker):
    without = tracker.track_ocr_performance(False, 1200)
    with_conf = tracker.track_ocr_performance(True, 900, 87.5)
    assert "confidence" not in without.data
    assert with_conf.data["confidence"] == 87.5
    assert with_conf.step == 2


def test_submission_success_carries_user(tracker):
    event = tracker.track_submission_success("user-1", 300000)
    assert event.user_id == "user-1"
    assert event.step == 5


def test_feedback_and_technical_error(tracker):
    assert tracker.track_feedback(5, "smooth").step == 0
    event = tracker.track_technical_error("TypeError", 3, context="address lookup")
    assert event.data == {"error": "TypeError", "context": "address lookup"}


def test_sink_receives_events(clock):
    sink = MagicMock()
    tracker = OnboardingAnalytics(sink=sink, clock=clock)
    event = tracker.track_step_view(1)
    sink.assert_called_once_with(event)


def test_failing_sink_does_not_propagate(clock):
    sink = MagicMock(side_effect=RuntimeError("collector offline"))
    tracker = OnboardingAnalytics(sink=sink, clock=clock)
    tracker.track_step_view(1)
    assert len(tracker.export_events()) == 1


def test_export_returns_a_copy(tracker):
    tracker.track_step_view(1)
    exported = tracker.export_events()
    exported.clear()
    assert len(tracker.export_events()) == 1


def test_event_log_is_bounded(clock):
    tracker = OnboardingAnalytics(sink=None, clock=clock, max_events=3)
    for step in range(1, 6):
        tracker.track_step_view(step)

    assert [e.step for e in tracker.export_events()] == [3, 4, 5]
    assert tracker.get_session_summary()["total_events"] == 3


class TestAnalyticsHub:
    @pytest.fixture
    def hub(self, clock):
        return AnalyticsHub(sink=None, clock=clock, max_sessions=2)

    def test_same_session_id_returns_same_tracker(self, hub):
        assert hub.session("s1") is hub.session("s1")
        assert hub.session("s1").session_id == "s1"

    def test_summaries_are_per_session(self, hub):
        hub.session("s1").track_step_view(1)
        hub.session("s2").track_step_view(2)
        hub.session("s2").track_validation_error(2, "city", "Required")

        assert hub.get("s1").get_session_summary()["total_events"] == 1
        assert hub.get("s2").get_session_summary()["error_count"] == 1
        assert all(e.session_id == "s2" for e in hub.get("s2").export_events())

    def test_missing_id_starts_new_session(self, hub):
        tracker = hub.session()
        assert tracker.session_id.startswith("session_1700000000000_")
        assert hub.get(tracker.session_id) is tracker

    def test_least_recently_used_session_is_dropped(self, hub):
        hub.session("s1")
        hub.session("s2")
        hub.session("s1")
        hub.session("s3")

        assert hub.session_ids() == ["s1", "s3"]
        assert hub.get("s2") is None

    def test_trackers_share_the_sink(self, clock):
        sink = MagicMock()
        hub = AnalyticsHub(sink=sink, clock=clock)
        event = hub.session("s1").track_step_view(1)
        sink.assert_called_once_with(event)
