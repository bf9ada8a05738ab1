import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from db.database import KeyValueStore
from models.ai_ocr_model import ExtractedIDData, extract_id_info_with_ai
from models.id_type_matcher import IDTypeValidationResult, validate_id_type_match
from models.name_matching import (
    NameValidationResult,
    StructuredName,
    parse_extracted_name,
    validate_name_match,
)
from schemas.onboarding_schemas import (
    EDITABLE_OCR_FIELDS,
    STEP_SCHEMAS,
    NavigateUpdate,
    OnboardingFormData,
)
from services.analytics_service import OnboardingAnalytics
from services.ocr_retry_service import (
    CancellationToken,
    RetryOptions,
    RetryResult,
    format_retry_message,
    retry_ocr_with_strategies,
)
from services.progress_service import ProgressPersistence, sanitize_form_data

logger = logging.getLogger(__name__)


ACTION_ACCEPT = "accept_suggestion"
ACTION_KEEP = "keep_mine"
ACTION_EDIT = "edit_previous_step"

SUBMISSION_PREFIX = "onboarding:"


# =========================
# FORM REDUCER
# =========================

def apply_form_update(form: OnboardingFormData, update) -> OnboardingFormData:
    """Return a new form with ``update`` (a FieldUpdate variant) applied."""
    new_form = form.model_copy(deep=True)

    if isinstance(update, NavigateUpdate):
        if update.current_step is not None:
            new_form.current_step = update.current_step
        if update.complete_step is not None and update.complete_step not in new_form.completed_steps:
            new_form.completed_steps.append(update.complete_step)
        return new_form

    section_name = update.kind
    changes = {
        k: v for k, v in update.model_dump(exclude_unset=True, exclude={"kind"}).items()
        if v is not None
    }
    section = getattr(new_form, section_name)
    setattr(new_form, section_name, section.model_copy(update=changes))

    if section_name == "step2":
        for name in EDITABLE_OCR_FIELDS:
            if name in changes and name not in new_form.edited_fields:
                new_form.edited_fields.append(name)
    return new_form


# =========================
# STEP VALIDATION
# =========================

def _error_messages(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        msg = err.get("msg", "")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def validate_step(form: OnboardingFormData, step: int) -> List[str]:
    section_name, schema = STEP_SCHEMAS[step]
    try:
        schema.model_validate(getattr(form, section_name).model_dump())
    except ValidationError as e:
        return _error_messages(e)
    return []


def validate_all_steps(form: OnboardingFormData) -> Dict[int, List[str]]:
    errors = {}
    for step in STEP_SCHEMAS:
        step_errors = validate_step(form, step)
        if step_errors:
            errors[step] = step_errors
    return errors


# =========================
# ID INTAKE
# =========================

@dataclass
class IntakeWarning:
    kind: str                       # ocr | id_type | name
    message: str
    suggested_value: Any = None
    actions: List[str] = field(default_factory=list)


@dataclass
class IntakeOutcome:
    form: OnboardingFormData
    extraction: Optional[ExtractedIDData]
    retry: RetryResult
    manual_entry: bool = False
    id_type_result: Optional[IDTypeValidationResult] = None
    name_result: Optional[NameValidationResult] = None
    warnings: List[IntakeWarning] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict:
        form = self.form.model_dump()
        form["step2"]["id_image"] = ""
        return {
            "form": form,
            "extraction": self.extraction.to_dict() if self.extraction else None,
            "manual_entry": self.manual_entry,
            "attempts": [asdict(a) for a in self.retry.attempts],
            "strategy": self.retry.strategy,
            "id_type_result": self.id_type_result.to_dict() if self.id_type_result else None,
            "name_result": self.name_result.to_dict() if self.name_result else None,
            "warnings": [asdict(w) for w in self.warnings],
            "message": self.message,
        }


def _suggested_name(extracted_name: str) -> Optional[Dict[str, str]]:
    parsed = parse_extracted_name(extracted_name)
    if parsed is None:
        return None
    return {
        "first_name": parsed.first_name.title(),
        "middle_name": (parsed.middle_name or "").title(),
        "last_name": parsed.last_name.title(),
    }


def run_id_intake(form: OnboardingFormData, image_data_url: str,
                  ocr_fn: Callable[[str], ExtractedIDData] = extract_id_info_with_ai,
                  retry_options: Optional[RetryOptions] = None,
                  sleep: Callable[[float], None] = time.sleep,
                  cancel_token: Optional[CancellationToken] = None,
                  analytics: Optional[OnboardingAnalytics] = None) -> IntakeOutcome:
    """OCR the ID under the retry orchestrator and cross-check it with the form.

    Never raises for OCR failures: an exhausted retry returns an outcome
    with ``manual_entry=True``.
    """
    result = retry_ocr_with_strategies(ocr_fn, image_data_url, retry_options,
                                       sleep=sleep, cancel_token=cancel_token)
    new_form = form.model_copy(deep=True)
    if not new_form.step2.id_image:
        new_form.step2.id_image = image_data_url

    if not result.success:
        logger.warning(f"[INTAKE] OCR unavailable, falling back to manual entry: {result.error}")
        if analytics:
            analytics.track_ocr_performance(False, result.total_duration)
        return IntakeOutcome(
            form=new_form,
            extraction=None,
            retry=result,
            manual_entry=True,
            warnings=[IntakeWarning(
                kind="ocr",
                message=f"{format_retry_message(result)} You can enter your ID details manually.",
                actions=[ACTION_KEEP],
            )],
            message=format_retry_message(result),
        )

    data: ExtractedIDData = result.data
    if analytics:
        analytics.track_ocr_performance(True, result.total_duration, data.confidence)

    ocr_values = {
        "extracted_name": data.name,
        "extracted_address": data.address,
        "extracted_id_number": data.id_number,
    }
    fills = {k: v for k, v in ocr_values.items() if v and k not in new_form.edited_fields}
    new_form.step2 = new_form.step2.model_copy(update=fills)

    warnings: List[IntakeWarning] = []

    id_type_result = None
    if new_form.step2.id_type:
        id_type_result = validate_id_type_match(new_form.step2.id_type, data.id_type)
        if not id_type_result.matches:
            suggested = id_type_result.suggested_canonical_value
            warnings.append(IntakeWarning(
                kind="id_type",
                message=id_type_result.suggestion or "ID type does not match the uploaded document",
                suggested_value=suggested,
                actions=[ACTION_ACCEPT, ACTION_KEEP] if suggested else [ACTION_KEEP],
            ))

    name_result = None
    step1 = new_form.step1
    if step1.first_name and step1.last_name and data.name:
        user = StructuredName(
            first_name=step1.first_name,
            last_name=step1.last_name,
            middle_name=step1.middle_name or None,
            nickname=step1.nickname or None,
        )
        name_result = validate_name_match(user, data.name)
        if not name_result.matches or name_result.confidence == "low":
            suggested = _suggested_name(data.name)
            message = (name_result.warnings[0] if name_result.warnings
                       else "Your name only partially matches the name on your ID")
            warnings.append(IntakeWarning(
                kind="name",
                message=message,
                suggested_value=suggested,
                actions=([ACTION_ACCEPT] if suggested else []) + [ACTION_KEEP, ACTION_EDIT],
            ))

    logger.info(
        f"[INTAKE] OCR ok in {len(result.attempts)} attempt(s); "
        f"filled={sorted(fills)} warnings={[w.kind for w in warnings]}"
    )
    return IntakeOutcome(
        form=new_form,
        extraction=data,
        retry=result,
        id_type_result=id_type_result,
        name_result=name_result,
        warnings=warnings,
        message=format_retry_message(result),
    )


def apply_warning_resolution(form: OnboardingFormData, warning: IntakeWarning,
                             action: str) -> OnboardingFormData:
    if action not in warning.actions:
        raise ValueError(f"Action '{action}' is not offered for this warning")

    new_form = form.model_copy(deep=True)
    if action == ACTION_KEEP:
        return new_form

    if action == ACTION_EDIT:
        new_form.current_step = 1 if warning.kind == "name" else 2
        return new_form

    if warning.kind == "id_type":
        new_form.step2.id_type = warning.suggested_value
    elif warning.kind == "name":
        new_form.step1 = new_form.step1.model_copy(update=warning.suggested_value)
    return new_form


# =========================
# SUBMISSION
# =========================

@dataclass
class SubmissionResult:
    success: bool
    error: Optional[str] = None
    errors: Dict[int, List[str]] = field(default_factory=dict)
    data: Optional[Dict[str, str]] = None

    def to_dict(self) -> dict:
        return asdict(self)


def submit_onboarding(form: OnboardingFormData, store: KeyValueStore,
                      progress: Optional[ProgressPersistence] = None,
                      analytics: Optional[OnboardingAnalytics] = None,
                      clock: Callable[[], float] = time.time) -> SubmissionResult:
    """Validate every step and persist the application record."""
    errors = validate_all_steps(form)
    if errors:
        first_step = min(errors)
        message = f"Step {first_step}: {errors[first_step][0]}"
        if analytics:
            analytics.track_submission_error(message, 1)
        return SubmissionResult(success=False, error=message, errors=errors)

    user_id = str(uuid.uuid4())
    onboarding_id = str(uuid.uuid4())

    record = sanitize_form_data(form.model_dump(exclude={"current_step", "completed_steps",
                                                         "edited_fields"}))
    record["step2"].pop("id_image", None)
    record.update({
        "user_id": user_id,
        "onboarding_id": onboarding_id,
        "application_status": "pending",
        "submitted_at": int(clock() * 1000),
    })

    try:
        store.set(SUBMISSION_PREFIX + onboarding_id, json.dumps(record))
    except Exception as e:
        logger.error(f"[SUBMIT] Failed to persist onboarding record: {e}")
        if analytics:
            analytics.track_submission_error(str(e), 1)
        return SubmissionResult(success=False, error=str(e))

    total_time = 0
    if progress is not None:
        total_time = progress.get_progress_stats().time_spent
        progress.clear_progress()

    if analytics:
        analytics.track_submission_success(user_id, total_time)

    logger.info(f"[SUBMIT] Onboarding {onboarding_id} stored for user {user_id}")
    return SubmissionResult(success=True, data={"user_id": user_id, "onboarding_id": onboarding_id})
