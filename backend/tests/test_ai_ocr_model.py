"""
Tests for the AI OCR client. The HTTP session is a MagicMock; no network.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from models.ai_ocr_model import (
    FOLLOW_UP_MAX_TOKENS,
    MAX_TOKENS,
    AIOCRClient,
    ExtractedIDData,
    OCRServiceError,
    extract_id_info_with_ai,
    parse_extraction,
    strip_code_fences,
    validate_extracted_data,
)


def _response(content, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.text = "error body"
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


def _extraction(**overrides):
    payload = {
        "name": "DELA CRUZ, JUAN MIGUEL",
        "address": "123 Rizal St, Quezon City",
        "idNumber": "1234-5678-9012-3456",
        "idType": "PhilID",
        "birthDate": "1990-01-15",
        "confidence": 92,
        "explanation": "Clear PhilID card",
    }
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def ocr(session):
    return AIOCRClient(api_key="test-key", model="gpt-4o",
                       base_url="https://llm.example/v1/", session=session)


class TestParsing:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'

    def test_parse_accepts_snake_case_and_clamps_confidence(self):
        data = parse_extraction({"id_number": "12-1234567-8", "id_type": "SSS",
                                 "confidence": 150})
        assert data.id_number == "12-1234567-8"
        assert data.id_type == "SSS"
        assert data.confidence == 100.0
        assert data.explanation == "AI OCR completed"

    def test_parse_defaults(self):
        data = parse_extraction({"confidence": "not a number"})
        assert data.id_type == "unknown"
        assert data.confidence == 0.0


class TestExtractIdInfo:
    def test_successful_extraction(self, ocr, session):
        session.post.return_value = _response("```json\n" + _extraction() + "\n```")

        data = ocr.extract_id_info("QUJD")

        assert data.name == "DELA CRUZ, JUAN MIGUEL"
        assert data.id_number == "1234-5678-9012-3456"
        assert data.validation.is_valid is True
        assert data.validation.matched_pattern == "philid"

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args[0] == "https://llm.example/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        body = kwargs["json"]
        assert body["max_tokens"] == MAX_TOKENS
        image_part = body["messages"][0]["content"][1]
        assert image_part["image_url"]["url"] == "data:image/jpeg;base64,QUJD"

    def test_progress_is_reported(self, ocr, session):
        session.post.return_value = _response(_extraction())
        seen = []
        ocr.extract_id_info("data:image/png;base64,QUJD", lambda p, s: seen.append(p))
        assert seen == [10, 80, 95, 100]

    def test_follow_up_recovers_short_id_number(self, ocr, session):
        session.post.side_effect = [
            _response(_extraction(idNumber="", idType="Driver's License")),
            _response("A12-34-567890"),
        ]

        data = ocr.extract_id_info("QUJD")

        assert session.post.call_count == 2
        follow_up = session.post.call_args_list[1].kwargs["json"]
        assert follow_up["max_tokens"] == FOLLOW_UP_MAX_TOKENS
        assert data.id_number == "A12-34-567890"
        assert "follow-up" in data.explanation
        assert data.validation.matched_pattern == "drivers_license"

    def test_follow_up_none_keeps_first_pass(self, ocr, session):
        session.post.side_effect = [
            _response(_extraction(idNumber="12")),
            _response("NONE"),
        ]
        data = ocr.extract_id_info("QUJD")
        assert data.id_number == "12"
        assert data.validation.is_valid is False

    def test_follow_up_failure_is_not_fatal(self, ocr, session):
        session.post.side_effect = [
            _response(_extraction(idNumber="")),
            _response("", status=500),
        ]
        data = ocr.extract_id_info("QUJD")
        assert data.id_number == ""
        assert "ID number not found or too short" in data.validation.issues

    def test_missing_api_key(self, session):
        client = AIOCRClient(api_key="", session=session)
        assert client.configured is False
        with pytest.raises(OCRServiceError):
            client.extract_id_info("QUJD")
        session.post.assert_not_called()

    def test_http_error(self, ocr, session):
        session.post.return_value = _response("", status=429)
        with pytest.raises(OCRServiceError) as exc:
            ocr.extract_id_info("QUJD")
        assert "429" in exc.value.message

    def test_connection_error(self, ocr, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(OCRServiceError):
            ocr.extract_id_info("QUJD")

    def test_empty_content(self, ocr, session):
        session.post.return_value = _response("   ")
        with pytest.raises(OCRServiceError, match="No response"):
            ocr.extract_id_info("QUJD")

    def test_invalid_json_keeps_raw_content(self, ocr, session):
        session.post.return_value = _response("I could not read this card")
        with pytest.raises(OCRServiceError) as exc:
            ocr.extract_id_info("QUJD")
        assert exc.value.raw_content == "I could not read this card"


class TestValidateExtractedData:
    def test_name_without_letters(self):
        result = validate_extracted_data(ExtractedIDData(name="12345", id_number="1234-5678-9012-3456",
                                                         id_type="PhilID", confidence=90))
        assert "Name appears to contain no letters" in result.issues
        assert result.has_valid_name is False

    def test_generic_pattern_for_type_without_format(self):
        result = validate_extracted_data(ExtractedIDData(name="Juan", id_number="12345678",
                                                         id_type="Barangay ID", confidence=90))
        assert result.is_valid is True
        assert result.matched_pattern == "generic"
        assert result.warnings == []

    def test_generic_pattern_warns_when_type_format_differs(self):
        result = validate_extracted_data(ExtractedIDData(name="Juan", id_number="123456789012",
                                                         id_type="PhilID", confidence=90))
        assert result.matched_pattern == "generic"
        assert any("differs" in w for w in result.warnings)

    def test_unrecognized_format(self):
        result = validate_extracted_data(ExtractedIDData(name="Juan", id_number="XYZ-ABC",
                                                         id_type="Passport", confidence=90))
        assert result.is_valid is False
        assert result.matched_pattern is None
        assert result.issues[0].startswith("ID number format not recognized")

    def test_low_confidence_warns(self):
        result = validate_extracted_data(ExtractedIDData(name="Juan Cruz", id_number="1234-5678-9012-3456",
                                                         id_type="PhilID", confidence=30))
        assert result.is_valid is True
        assert "Low confidence in extracted data" in result.warnings
        assert "philid" in result.patterns


def test_module_level_helper_delegates_to_shared_client():
    fake = MagicMock()
    fake.extract_id_info.return_value = ExtractedIDData(name="Juan Cruz", id_type="Passport")
    with patch("models.ai_ocr_model._get_client", return_value=fake):
        data = extract_id_info_with_ai("QUJD")
    assert data.id_type == "Passport"
    fake.extract_id_info.assert_called_once_with("QUJD", None)
