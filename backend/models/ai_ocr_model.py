"""AI OCR for Philippine government IDs.

Sends the ID photo to an OpenAI-compatible vision chat endpoint with a
structured prompt and parses the JSON answer into ``ExtractedIDData``.

Two passes:
  1. full extraction (name, address, id number, id type, birth date);
  2. only when the id number came back missing or too short, a narrow
     follow-up asking for the number alone (or ``NONE``).

Every failure of the first pass raises ``OCRServiceError``; a failing
follow-up is logged and the first-pass result is kept.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from models.image_transforms import ensure_data_url
from models.philippine_ids import (
    GENERIC_ID_NUMBER_PATTERN,
    ID_CATEGORY_LABELS,
    ID_NUMBER_FORMATS,
    ID_NUMBER_LABELS,
    ID_NUMBER_PATTERNS,
    detect_id_category,
)

logger = logging.getLogger(__name__)


OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OCR_REQUEST_TIMEOUT = float(os.getenv("OCR_REQUEST_TIMEOUT", "60"))

MAX_TOKENS = 1000
FOLLOW_UP_MAX_TOKENS = 50
MIN_ID_NUMBER_LENGTH = 5
LOW_CONFIDENCE = 40

ProgressCallback = Callable[[int, str], None]


class OCRServiceError(Exception):
    """The OCR endpoint could not produce a usable extraction."""

    def __init__(self, message: str, raw_content: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.raw_content = raw_content


# ---------------------------------------------------------------- types ---

@dataclass
class ExtractionValidation:
    is_valid: bool = True
    has_valid_name: bool = False
    has_valid_address: bool = False
    has_valid_id_number: bool = False
    matched_pattern: Optional[str] = None
    patterns: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


@dataclass
class ExtractedIDData:
    name: str = ""
    address: str = ""
    id_number: str = ""
    id_type: str = "unknown"
    birth_date: str = ""
    confidence: float = 0.0
    explanation: str = ""
    validation: ExtractionValidation = field(default_factory=ExtractionValidation)

    def to_dict(self) -> dict:
        return asdict(self)


# --------------------------------------------------------------- prompts ---

def _build_extraction_prompt() -> str:
    hints = []
    for category, fmt in ID_NUMBER_FORMATS.items():
        labels = ", ".join(f'"{label}"' for label in ID_NUMBER_LABELS.get(category, []))
        hints.append(f"- {ID_CATEGORY_LABELS[category]}: look for {labels}; format {fmt}")
    return (
        "You are an expert OCR system specialized in reading Philippine government "
        "identification documents.\n\n"
        "Analyze this image and extract:\n"
        "1. Full Name (exactly as written, usually LASTNAME, FIRSTNAME MIDDLENAME)\n"
        "2. Address (complete address if visible)\n"
        "3. ID Number (in the format specific to the document type)\n"
        "4. ID Type (PhilID/National ID, Driver's License, Passport, TIN, SSS, UMID, ...)\n"
        "5. Birth Date (if visible)\n\n"
        "Where to find the ID number:\n"
        + "\n".join(hints)
        + "\n\n"
        "Extract text EXACTLY as it appears. Do not guess missing characters.\n\n"
        "Return only this JSON object:\n"
        "{\n"
        '  "name": "extracted full name",\n'
        '  "address": "extracted address",\n'
        '  "idNumber": "extracted ID number",\n'
        '  "idType": "document type identified",\n'
        '  "birthDate": "extracted birth date if visible",\n'
        '  "confidence": confidence_score_0_to_100,\n'
        '  "explanation": "brief explanation of what you found"\n'
        "}"
    )


EXTRACTION_PROMPT = _build_extraction_prompt()


def build_id_number_prompt(id_type: str) -> str:
    category = detect_id_category(id_type)
    hint = ""
    if category in ID_NUMBER_FORMATS:
        labels = ", ".join(ID_NUMBER_LABELS.get(category, []))
        hint = f" It is usually labelled {labels} and formatted {ID_NUMBER_FORMATS[category]}."
    return (
        f"This image is a Philippine {id_type or 'government ID'}. "
        f"Find ONLY the ID number printed on it.{hint} "
        "Reply with the ID number alone, exactly as printed, or the single word NONE "
        "if no ID number is readable."
    )


# --------------------------------------------------------------- parsing ---

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


def strip_code_fences(content: str) -> str:
    return _FENCE_RE.sub("", content.strip()).strip()


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(number, 0.0), 100.0)


def parse_extraction(payload: Dict[str, Any]) -> ExtractedIDData:
    """Map the model's JSON (camelCase or snake_case keys) onto ExtractedIDData."""
    def pick(*keys):
        for k in keys:
            if payload.get(k) not in (None, ""):
                return payload[k]
        return None

    return ExtractedIDData(
        name=_text(pick("name")),
        address=_text(pick("address")),
        id_number=_text(pick("idNumber", "id_number")),
        id_type=_text(pick("idType", "id_type")) or "unknown",
        birth_date=_text(pick("birthDate", "birth_date")),
        confidence=_clamp_confidence(pick("confidence")),
        explanation=_text(pick("explanation")) or "AI OCR completed",
    )


# ------------------------------------------------------------ validation ---

_LETTER_RE = re.compile(r"[^\W\d_]")

def validate_extracted_data(data: ExtractedIDData) -> ExtractionValidation:
    """Sanity-check an extraction; problems are reported, never raised."""
    issues: List[str] = []
    warnings: List[str] = []
    suggestions: List[str] = []

    name = data.name or ""
    if len(name) < 3:
        issues.append("Name not found or too short")
        suggestions.append("Ensure the name area is clearly visible")
    if name and not _LETTER_RE.search(name):
        issues.append("Name appears to contain no letters")
        suggestions.append("Check if the name field was correctly identified")

    id_number = (data.id_number or "").strip().upper()
    matched_pattern = None
    if len(id_number) < 4:
        issues.append("ID number not found or too short")
        suggestions.append("Make sure the ID number is not covered by fingers or glare")
    else:
        category = detect_id_category(data.id_type)
        pattern = ID_NUMBER_PATTERNS.get(category) if category else None
        if pattern is not None and pattern.match(id_number):
            matched_pattern = category
        elif GENERIC_ID_NUMBER_PATTERN.match(id_number):
            matched_pattern = "generic"
            if pattern is not None:
                warnings.append(
                    f"ID number format differs from the usual {ID_CATEGORY_LABELS[category]} "
                    f"format ({ID_NUMBER_FORMATS[category]})"
                )
        else:
            expected = ID_NUMBER_FORMATS.get(category, "a long digit/dash sequence")
            issues.append(f"ID number format not recognized (expected: {expected})")
            suggestions.append("Double-check the ID number against your card")

    if data.confidence < LOW_CONFIDENCE:
        warnings.append("Low confidence in extracted data")
        suggestions.append("Consider retaking the photo with better lighting or a different angle")

    return ExtractionValidation(
        is_valid=not issues,
        has_valid_name=len(name) > 2 and bool(_LETTER_RE.search(name)),
        has_valid_address=len(data.address or "") > 5,
        has_valid_id_number=len(id_number) > 3,
        matched_pattern=matched_pattern,
        patterns=list(ID_NUMBER_PATTERNS),
        issues=issues,
        warnings=issues + warnings,
        suggestions=suggestions,
    )


# ---------------------------------------------------------------- client ---

class AIOCRClient:
    """OpenAI-compatible vision client for ID extraction."""

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL,
                 base_url: str = OPENAI_BASE_URL, timeout: float = OCR_REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _chat(self, prompt: str, image_url: str, max_tokens: int) -> str:
        if not self.api_key:
            raise OCRServiceError("OpenAI API key not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                    ],
                }
            ],
            "max_tokens": max_tokens,
        }

        try:
            resp = self.session.post(f"{self.base_url}/chat/completions",
                                     headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"[OCR] Connection failed: {e}")
            raise OCRServiceError(f"AI OCR request failed: {e}") from e

        if resp.status_code != 200:
            logger.error(f"[OCR] OpenAI error {resp.status_code}: {resp.text[:200]}")
            raise OCRServiceError(f"AI OCR service returned HTTP {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OCRServiceError("Malformed response from AI service") from e

        if not content or not content.strip():
            raise OCRServiceError("No response from AI service")
        return content

    def _follow_up_id_number(self, image_url: str, id_type: str) -> Optional[str]:
        try:
            answer = self._chat(build_id_number_prompt(id_type), image_url, FOLLOW_UP_MAX_TOKENS)
        except OCRServiceError as e:
            logger.warning(f"[OCR] ID number follow-up failed, keeping first pass: {e.message}")
            return None
        answer = strip_code_fences(answer).strip().strip('"').strip()
        if answer.upper() == "NONE" or len(answer) <= MIN_ID_NUMBER_LENGTH:
            return None
        return answer

    def extract_id_info(self, image_base64: str,
                        progress_callback: Optional[ProgressCallback] = None) -> ExtractedIDData:
        def report(percent: int, status: str) -> None:
            if progress_callback:
                progress_callback(percent, status)

        image_url = ensure_data_url(image_base64)
        logger.info(f"[OCR] Extracting ID info (model={self.model}, image_len={len(image_url)})")

        report(10, "Connecting to AI OCR service...")
        content = self._chat(EXTRACTION_PROMPT, image_url, MAX_TOKENS)

        report(80, "Processing AI response...")
        cleaned = strip_code_fences(content)
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise OCRServiceError("AI response was not valid JSON", raw_content=content) from e
        if not isinstance(payload, dict):
            raise OCRServiceError("AI response was not a JSON object", raw_content=content)

        data = parse_extraction(payload)

        if len(data.id_number) < MIN_ID_NUMBER_LENGTH:
            logger.info("[OCR] ID number missing or short, running follow-up prompt")
            number = self._follow_up_id_number(image_url, data.id_type)
            if number:
                data.id_number = number
                data.explanation = (
                    f"{data.explanation} (ID number recovered with a focused follow-up pass)"
                )

        report(95, "Validating extracted data...")
        data.validation = validate_extracted_data(data)

        report(100, "OCR complete")
        logger.info(
            f"[OCR] Done: type={data.id_type} confidence={data.confidence:.0f} "
            f"name={'yes' if data.name else 'no'} id_number={'yes' if data.id_number else 'no'}"
        )
        return data


# ------------------------------------------------------------- singleton ---

_client: Optional[AIOCRClient] = None


def _get_client() -> AIOCRClient:
    global _client
    if _client is None:
        _client = AIOCRClient()
    return _client


def extract_id_info_with_ai(image_base64: str,
                            progress_callback: Optional[ProgressCallback] = None) -> ExtractedIDData:
    return _get_client().extract_id_info(image_base64, progress_callback)
