import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from db.database import KeyValueStore
from models.ai_ocr_model import AIOCRClient
from models.id_type_matcher import validate_id_type_match
from models.name_matching import NameMatchConfig, StructuredName, validate_name_match
from routers.dependencies import get_analytics, get_ocr_client, get_store, progress_for
from schemas.onboarding_schemas import (
    ClientContextIn,
    FormUpdateRequest,
    IDTypeValidationRequest,
    IntakeRequest,
    NameValidationRequest,
    ProgressSaveRequest,
    SubmitRequest,
)
from services.analytics_service import AnalyticsHub
from services.ocr_retry_service import RetryOptions
from services.onboarding_service import apply_form_update, run_id_intake, submit_onboarding
from services.progress_service import ClientContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/onboarding", tags=["onboarding"])


def _client_context(request: Request, body: Optional[ClientContextIn] = None) -> ClientContext:
    ctx = ClientContext(**body.model_dump()) if body is not None else ClientContext()
    if not ctx.user_agent:
        ctx.user_agent = request.headers.get("user-agent", "")
    return ctx


def query_client_context(
    request: Request,
    language: str = Query(""),
    screen_width: int = Query(0, ge=0),
    screen_height: int = Query(0, ge=0),
    timezone: str = Query(""),
    canvas_hash: str = Query(""),
) -> ClientContext:
    return ClientContext(
        user_agent=request.headers.get("user-agent", ""),
        language=language,
        screen_width=screen_width,
        screen_height=screen_height,
        timezone=timezone,
        canvas_hash=canvas_hash,
    )


# =========================
# CROSS-FIELD VALIDATION
# =========================

@router.post("/validate-name")
def validate_name(payload: NameValidationRequest):
    user = StructuredName(**payload.user.model_dump())
    config = NameMatchConfig(similarity_mode=payload.similarity_mode)
    return validate_name_match(user, payload.extracted_name, config).to_dict()


@router.post("/validate-id-type")
def validate_id_type(payload: IDTypeValidationRequest):
    return validate_id_type_match(payload.selected, payload.detected).to_dict()


# =========================
# FORM STATE
# =========================

@router.post("/form/update")
def update_form(payload: FormUpdateRequest):
    return apply_form_update(payload.form, payload.update).model_dump()


@router.post("/intake")
def id_intake(payload: IntakeRequest,
              client: AIOCRClient = Depends(get_ocr_client),
              analytics: AnalyticsHub = Depends(get_analytics)):
    """
    OCR the uploaded ID (with retries) and cross-check it against steps 1-2.
    """
    if not payload.image.startswith("data:image/"):
        raise HTTPException(status_code=400, detail="Invalid image format")
    if not client.configured:
        raise HTTPException(status_code=503, detail="AI OCR not available")

    outcome = run_id_intake(
        payload.form,
        payload.image,
        ocr_fn=client.extract_id_info,
        retry_options=RetryOptions(max_retries=payload.max_retries),
        analytics=analytics.session(payload.session_id),
    )
    return outcome.to_dict()


# =========================
# PROGRESS
# =========================

@router.get("/{client_id}/progress")
def get_progress(client_id: str, store: KeyValueStore = Depends(get_store),
                 ctx: ClientContext = Depends(query_client_context)):
    progress = progress_for(store, client_id, ctx)
    snapshot = progress.load_onboarding_progress()
    return {
        "progress": snapshot.to_dict() if snapshot else None,
        "stats": asdict(progress.get_progress_stats()),
        "essential": None if snapshot else progress.load_essential_progress(),
    }


@router.put("/{client_id}/progress")
def save_progress(client_id: str, payload: ProgressSaveRequest, request: Request,
                  store: KeyValueStore = Depends(get_store)):
    progress = progress_for(store, client_id, _client_context(request, payload.client))
    saved = progress.save_onboarding_progress(
        payload.form_data,
        payload.current_step,
        payload.completed_steps,
        payload.validation_results,
    )
    return {"saved": saved, "session_id": progress.store.get(progress.config.session_key)}


@router.delete("/{client_id}/progress")
def delete_progress(client_id: str, store: KeyValueStore = Depends(get_store)):
    progress_for(store, client_id).clear_progress()
    return {"cleared": True}


@router.get("/{client_id}/recovery")
def recovery(client_id: str, store: KeyValueStore = Depends(get_store),
             ctx: ClientContext = Depends(query_client_context)):
    progress = progress_for(store, client_id, ctx)
    return progress.attempt_progress_recovery().to_dict()


# =========================
# SUBMISSION
# =========================

@router.post("/submit")
def submit(payload: SubmitRequest,
           store: KeyValueStore = Depends(get_store),
           analytics: AnalyticsHub = Depends(get_analytics)):
    progress = progress_for(store, payload.client_id) if payload.client_id else None
    result = submit_onboarding(payload.form, store, progress=progress,
                               analytics=analytics.session(payload.session_id))
    if not result.success:
        raise HTTPException(status_code=422, detail=result.to_dict())
    return result.to_dict()
