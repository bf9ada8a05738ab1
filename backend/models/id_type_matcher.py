"""ID-type cross-check: the type the user selected vs. the type OCR detected.

Both labels are mapped to canonical categories (see philippine_ids). A
mismatch is never fatal: the result carries a suggestion and, where the
detected type is one of the wizard's select options, the value to switch
the selection to.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from models.philippine_ids import (
    GENERIC_ID_TOKENS,
    SELECT_OPTIONS,
    are_related,
    category_label,
    compact_label,
    detect_id_category,
    label_tokens,
)


@dataclass
class IDTypeValidationResult:
    matches: bool
    confidence: str                             # high | medium | low
    detected_type: str
    selected_category: Optional[str] = None
    detected_category: Optional[str] = None
    suggestion: Optional[str] = None
    suggested_canonical_value: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_id_type(label: str) -> str:
    """Lowercase, letters only."""
    return compact_label(label)


def _meaningful_tokens(label: str) -> set:
    return {t for t in label_tokens(label) if t not in GENERIC_ID_TOKENS and len(t) > 1}


def validate_id_type_match(selected: str, detected: str) -> IDTypeValidationResult:
    """Check whether the OCR-detected ID type agrees with the user's selection."""
    selected_cat = detect_id_category(selected)
    detected_cat = detect_id_category(detected)
    detected_display = category_label(detected_cat) if detected_cat else (detected or "Unknown")

    if not normalize_id_type(detected):
        return IDTypeValidationResult(
            matches=False,
            confidence="low",
            detected_type="Unknown",
            selected_category=selected_cat,
            suggestion="The ID type could not be detected from the image. "
                       "Please confirm the selected ID type manually.",
        )

    if selected_cat and selected_cat == detected_cat:
        return IDTypeValidationResult(
            matches=True,
            confidence="high",
            detected_type=detected_display,
            selected_category=selected_cat,
            detected_category=detected_cat,
        )

    if _meaningful_tokens(selected) & _meaningful_tokens(detected):
        return IDTypeValidationResult(
            matches=True,
            confidence="medium",
            detected_type=detected_display,
            selected_category=selected_cat,
            detected_category=detected_cat,
        )

    if are_related(selected_cat, detected_cat):
        return IDTypeValidationResult(
            matches=True,
            confidence="medium",
            detected_type=detected_display,
            selected_category=selected_cat,
            detected_category=detected_cat,
        )

    selected_display = category_label(selected_cat) if selected_cat else (selected or "nothing")
    suggested_value = detected_cat if detected_cat in SELECT_OPTIONS else None

    if suggested_value:
        suggestion = (
            f"The uploaded document looks like a {detected_display}, but you selected "
            f"{selected_display}. Switch your ID type to {SELECT_OPTIONS[suggested_value]}?"
        )
    else:
        suggestion = (
            f"The uploaded document looks like a {detected_display}, which does not match "
            f"your selected ID type ({selected_display}). Please upload the ID you selected "
            f"or choose a different ID type."
        )

    return IDTypeValidationResult(
        matches=False,
        confidence="low",
        detected_type=detected_display,
        selected_category=selected_cat,
        detected_category=detected_cat,
        suggestion=suggestion,
        suggested_canonical_value=suggested_value,
    )
