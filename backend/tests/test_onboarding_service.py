"""
Tests for the onboarding workflow: form reducer, step validation, ID intake
and submission.
"""
import json

import pytest
from pydantic import TypeAdapter, ValidationError

from models.ai_ocr_model import ExtractedIDData
from schemas.onboarding_schemas import FieldUpdate, OnboardingFormData
from services.analytics_service import OnboardingAnalytics
from services.ocr_retry_service import RetryOptions
from services.onboarding_service import (
    ACTION_ACCEPT,
    ACTION_EDIT,
    ACTION_KEEP,
    apply_form_update,
    apply_warning_resolution,
    run_id_intake,
    submit_onboarding,
    validate_all_steps,
    validate_step,
)
from services.progress_service import ProgressPersistence

IMAGE = "data:image/jpeg;base64,xxx"

update_adapter = TypeAdapter(FieldUpdate)


@pytest.fixture
def analytics(clock):
    return OnboardingAnalytics(sink=None, clock=clock)


def valid_form(**step1) -> OnboardingFormData:
    data = {
        "step1": {
            "first_name": "Juan",
            "middle_name": "Miguel",
            "last_name": "Dela Cruz",
            "email": "juan@example.com",
            "phone": "09171234567",
            "password": "Secret123",
            "confirm_password": "Secret123",
            "captcha_token": "captcha-ok",
        },
        "step2": {"id_type": "philid", "id_image": IMAGE, "id_file_name": "id.jpg"},
        "step3": {
            "property_type": "residential",
            "property_ownership": "owner",
            "street_address": "123 Rizal Street",
            "city": "Quezon City",
            "province": "Metro Manila",
        },
        "step4": {"interested_services": ["solar"], "monthly_bill_range": "2k_5k"},
        "step5": {"accept_terms": True, "accept_privacy": True},
        "current_step": 5,
        "completed_steps": [1, 2, 3, 4],
    }
    data["step1"].update(step1)
    return OnboardingFormData.model_validate(data)


def extraction(**overrides) -> ExtractedIDData:
    values = dict(
        name="DELA CRUZ, JUAN MIGUEL",
        address="123 Rizal St, Quezon City",
        id_number="1234-5678-9012-3456",
        id_type="PhilID",
        confidence=90,
    )
    values.update(overrides)
    return ExtractedIDData(**values)


def no_sleep(_seconds):
    return None


class TestFormReducer:
    def test_update_returns_new_form(self):
        form = OnboardingFormData()
        update = update_adapter.validate_python({"kind": "step1", "first_name": "Juan"})
        new_form = apply_form_update(form, update)
        assert new_form.step1.first_name == "Juan"
        assert form.step1.first_name == ""

    def test_unset_fields_are_left_alone(self):
        form = valid_form()
        update = update_adapter.validate_python({"kind": "step3", "city": "Cebu City"})
        new_form = apply_form_update(form, update)
        assert new_form.step3.city == "Cebu City"
        assert new_form.step3.street_address == "123 Rizal Street"

    def test_editing_ocr_field_is_remembered(self):
        update = update_adapter.validate_python({"kind": "step2", "extracted_name": "Juan Cruz"})
        new_form = apply_form_update(OnboardingFormData(), update)
        assert new_form.edited_fields == ["extracted_name"]

    def test_navigate_completes_step_once(self):
        form = OnboardingFormData(completed_steps=[1])
        update = update_adapter.validate_python({"kind": "navigate", "current_step": 2, "complete_step": 1})
        new_form = apply_form_update(form, update)
        assert new_form.current_step == 2
        assert new_form.completed_steps == [1]

    def test_out_of_range_step_is_rejected(self):
        with pytest.raises(ValidationError):
            update_adapter.validate_python({"kind": "navigate", "current_step": 7})

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError):
            update_adapter.validate_python({"kind": "step9"})


class TestStepValidation:
    def test_valid_form_has_no_errors(self):
        assert validate_all_steps(valid_form()) == {}

    def test_weak_password(self):
        form = valid_form(password="password1", confirm_password="password1")
        assert validate_step(form, 1) == ["password: Password must contain at least one uppercase letter"]

    def test_password_mismatch(self):
        form = valid_form(confirm_password="Secret124")
        assert validate_step(form, 1) == ["Passwords do not match"]

    def test_bad_phone(self):
        errors = validate_step(valid_form(phone="12345"), 1)
        assert errors and errors[0].startswith("phone:")

    def test_terms_must_be_accepted(self):
        form = valid_form()
        form.step5.accept_terms = False
        assert validate_step(form, 5) == ["accept_terms: You must accept the Terms & Conditions"]

    def test_empty_form_fails_several_steps(self):
        errors = validate_all_steps(OnboardingFormData())
        assert set(errors) == {1, 2, 3, 5}


class TestIdIntake:
    def test_matching_id_fills_fields_without_warnings(self, analytics):
        form = valid_form()
        outcome = run_id_intake(form, IMAGE, ocr_fn=lambda image: extraction(),
                                sleep=no_sleep, analytics=analytics)

        assert outcome.manual_entry is False
        assert outcome.warnings == []
        assert outcome.id_type_result.confidence == "high"
        assert outcome.name_result.confidence == "high"
        assert outcome.form.step2.extracted_id_number == "1234-5678-9012-3456"
        assert analytics.export_events()[-1].action == "ocr_performance"

    def test_id_type_mismatch_offers_switch(self):
        form = valid_form()
        form.step2.id_type = "passport"
        outcome = run_id_intake(form, IMAGE, sleep=no_sleep,
                                ocr_fn=lambda image: extraction(id_type="Driver's License",
                                                                id_number="A12-34-567890"))
        [warning] = outcome.warnings
        assert warning.kind == "id_type"
        assert warning.suggested_value == "drivers_license"
        assert warning.actions == [ACTION_ACCEPT, ACTION_KEEP]

        accepted = apply_warning_resolution(outcome.form, warning, ACTION_ACCEPT)
        assert accepted.step2.id_type == "drivers_license"
        kept = apply_warning_resolution(outcome.form, warning, ACTION_KEEP)
        assert kept.step2.id_type == "passport"

    def test_user_edits_are_not_overwritten(self):
        form = valid_form()
        form.step2.extracted_name = "Juan M. Dela Cruz"
        form.edited_fields = ["extracted_name"]
        outcome = run_id_intake(form, IMAGE, ocr_fn=lambda image: extraction(), sleep=no_sleep)
        assert outcome.form.step2.extracted_name == "Juan M. Dela Cruz"
        assert outcome.form.step2.extracted_address == "123 Rizal St, Quezon City"

    def test_name_mismatch_suggests_name_from_id(self):
        form = valid_form(first_name="Maria", middle_name="", last_name="Santos")
        outcome = run_id_intake(form, IMAGE, ocr_fn=lambda image: extraction(name="REYES, JUAN"),
                                sleep=no_sleep)

        [warning] = outcome.warnings
        assert warning.kind == "name"
        assert warning.message == 'First name mismatch: "maria" vs "juan"'
        assert warning.suggested_value == {"first_name": "Juan", "middle_name": "", "last_name": "Reyes"}
        assert warning.actions == [ACTION_ACCEPT, ACTION_KEEP, ACTION_EDIT]

        accepted = apply_warning_resolution(outcome.form, warning, ACTION_ACCEPT)
        assert (accepted.step1.first_name, accepted.step1.last_name) == ("Juan", "Reyes")

        edit = apply_warning_resolution(outcome.form, warning, ACTION_EDIT)
        assert edit.current_step == 1

    def test_unoffered_action_is_rejected(self):
        form = valid_form()
        form.step2.id_type = "philid"
        outcome = run_id_intake(form, IMAGE, sleep=no_sleep,
                                ocr_fn=lambda image: extraction(id_type="TIN ID", id_number="123-456-789"))
        [warning] = outcome.warnings
        assert warning.actions == [ACTION_KEEP]
        with pytest.raises(ValueError):
            apply_warning_resolution(outcome.form, warning, ACTION_ACCEPT)

    def test_exhausted_ocr_falls_back_to_manual_entry(self, analytics):
        def failing(image):
            raise RuntimeError("service unavailable")

        outcome = run_id_intake(OnboardingFormData(), IMAGE, ocr_fn=failing,
                                retry_options=RetryOptions(max_retries=1), sleep=no_sleep,
                                analytics=analytics)

        assert outcome.manual_entry is True
        assert outcome.extraction is None
        assert len(outcome.retry.attempts) == 2
        assert outcome.warnings[0].kind == "ocr"
        assert outcome.form.step2.id_image == IMAGE
        assert analytics.export_events()[-1].data["success"] is False

    def test_outcome_dict_omits_image(self):
        outcome = run_id_intake(valid_form(), IMAGE, ocr_fn=lambda image: extraction(), sleep=no_sleep)
        data = outcome.to_dict()
        assert data["form"]["step2"]["id_image"] == ""
        assert data["strategy"] == "retry"
        assert data["extraction"]["id_type"] == "PhilID"


class TestSubmission:
    def test_successful_submission(self, store, clock):
        tracker = OnboardingAnalytics(sink=None, clock=clock)
        progress = ProgressPersistence(store.namespace("client:abc"), clock=clock)
        progress.save_onboarding_progress({"step1": {"first_name": "Juan"}}, 5, [1, 2, 3, 4])
        clock.advance(300)

        result = submit_onboarding(valid_form(), store, progress, tracker, clock=clock)

        assert result.success is True
        record = json.loads(store.get("onboarding:" + result.data["onboarding_id"]))
        assert record["user_id"] == result.data["user_id"]
        assert record["application_status"] == "pending"
        assert "password" not in record["step1"]
        assert "captcha_token" not in record["step1"]
        assert "id_image" not in record["step2"]

        assert progress.load_onboarding_progress() is None
        last = tracker.export_events()[-1]
        assert last.action == "submission_success"
        assert last.data["total_time"] == 300_000

    def test_invalid_form_is_not_stored(self, store, analytics):
        result = submit_onboarding(valid_form(first_name=""), store, analytics=analytics)
        assert result.success is False
        assert result.error.startswith("Step 1: first_name")
        assert 1 in result.errors
        assert not [k for k in store.keys() if k.startswith("onboarding:")]
        assert analytics.export_events()[-1].action == "submission_error"
