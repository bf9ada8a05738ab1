from fastapi import APIRouter, Depends, HTTPException, Query

from routers.dependencies import get_analytics
from schemas.onboarding_schemas import AnalyticsEventIn
from services.analytics_service import AnalyticsHub, OnboardingAnalytics

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _known_session(hub: AnalyticsHub, session_id: str) -> OnboardingAnalytics:
    tracker = hub.get(session_id)
    if tracker is None:
        raise HTTPException(status_code=404, detail="Unknown analytics session")
    return tracker


@router.post("")
def record_event(payload: AnalyticsEventIn, hub: AnalyticsHub = Depends(get_analytics)):
    tracker = hub.session(payload.session_id)
    event = tracker.add_event(
        step=payload.step,
        action=payload.action,
        data=payload.data,
        user_id=payload.user_id,
        user_agent=payload.user_agent,
        viewport=payload.viewport,
    )
    return {"recorded": True, "session_id": tracker.session_id, "event": event.to_dict()}


@router.get("/summary")
def session_summary(session_id: str = Query(...), hub: AnalyticsHub = Depends(get_analytics)):
    return _known_session(hub, session_id).get_session_summary()


@router.get("/events")
def export_events(session_id: str = Query(...), hub: AnalyticsHub = Depends(get_analytics)):
    return [e.to_dict() for e in _known_session(hub, session_id).export_events()]
