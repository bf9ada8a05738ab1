"""Legal-name cross-check between wizard input and the name read off an ID.

Philippine IDs usually print the holder as ``LASTNAME, FIRSTNAME MIDDLENAME``;
the wizard collects first / middle / last separately. This module parses
the extracted string, scores each component and folds the scores into a
single match verdict.

Validation failures are returned as data (a non-matching result), never
raised.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from rapidfuzz import fuzz


# ---------------------------------------------------------------- types ---

@dataclass
class StructuredName:
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    nickname: Optional[str] = None


@dataclass
class NameMatchConfig:
    """Tunable parameters for name matching."""
    field_match_threshold: int = 70
    # Partial credit when only one side carries a middle name.
    one_sided_middle_score: int = 70
    high_confidence_score: int = 90
    medium_confidence_score: int = 85
    # Lenient fallback: one of first/last matching with overall >= 60 is a
    # weak (low confidence) match. Policy choice, not business law.
    allow_partial_match: bool = True
    partial_match_score: int = 60
    mismatch_warning_score: int = 50
    # "positional" keeps the per-index character overlap heuristic;
    # "token_set" swaps that last fallback for rapidfuzz's token-set ratio.
    similarity_mode: str = "positional"


@dataclass
class NameValidationResult:
    matches: bool
    confidence: str                      # high | medium | low
    score: int                           # 0-100
    first_name_match: bool
    last_name_match: bool
    middle_name_match: Optional[bool] = None
    extracted_format: str = ""
    user_format: str = ""
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------- data ---

NAME_PREFIXES = ["de", "del", "dela", "delos", "delas", "san", "santa"]
NAME_SUFFIXES = ["jr", "sr", "iii", "iv", "2nd", "3rd", "4th"]

# Formal name -> common nicknames.
NICKNAMES: Dict[str, List[str]] = {
    "jose": ["jo", "joey", "joe", "pepito", "pepe"],
    "maria": ["mary", "marie", "ria"],
    "juan": ["john", "johnny"],
    "antonio": ["tony", "anton"],
    "francisco": ["frank", "frankie", "cisco"],
    "leonardo": ["leo", "leon"],
    "ricardo": ["rick", "ricky"],
    "roberto": ["bob", "bobby", "bert"],
    "carlos": ["carl"],
    "miguel": ["mike", "mikey"],
    "rafael": ["ralph", "rafa"],
    "manuel": ["manny", "manolo"],
    "gabriel": ["gab", "gabby"],
    "alejandro": ["alex"],
    "fernando": ["nando"],
    "patricia": ["pat", "patty"],
    "elizabeth": ["liz", "beth", "betty"],
    "catherine": ["cathy", "cat", "kate"],
    "margaret": ["maggie", "meg"],
    "stephanie": ["steph"],
}


# ------------------------------------------------------------- helpers ---

_PUNCT_RE = re.compile(r"[^\w\s]")


def normalize_name(name: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not name:
        return ""
    text = _PUNCT_RE.sub("", name.lower().strip())
    return " ".join(text.split())


def _nickname_equivalent(a: str, b: str) -> bool:
    for formal, nicks in NICKNAMES.items():
        if a == formal and b in nicks:
            return True
        if b == formal and a in nicks:
            return True
        if a in nicks and b in nicks:
            return True
    return False


def _positional_overlap(a: str, b: str) -> int:
    """Share of characters equal at the same index, over the longer length."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 0
    hits = sum(1 for x, y in zip(a, b) if x == y)
    return math.floor(hits / max_len * 100)


def calculate_name_similarity(name1: str, name2: str,
                              mode: str = "positional") -> int:
    """Score two name strings on a 0-100 scale."""
    if not name1 or not name2:
        return 0

    norm1 = normalize_name(name1)
    norm2 = normalize_name(name2)

    if norm1 == norm2:
        return 100
    if norm1 in norm2 or norm2 in norm1:
        return 80
    if _nickname_equivalent(norm1, norm2):
        return 90

    if mode == "token_set":
        return int(fuzz.token_set_ratio(norm1, norm2))
    return _positional_overlap(norm1, norm2)


# ------------------------------------------------------------- parsing ---

def parse_extracted_name(extracted_name: str) -> Optional[StructuredName]:
    """Split an OCR name string into first / middle / last.

    Handles ``LAST, FIRST MIDDLE`` and ``FIRST MIDDLE LAST``. Returns None
    for empty input or a single token without a comma.
    """
    if not extracted_name or not extracted_name.strip():
        return None

    text = extracted_name.strip()

    if "," in text:
        parts = [p.strip() for p in text.split(",")]
        last_name = parts[0]
        first_and_middle = parts[1].split()
        first_name = first_and_middle[0] if first_and_middle else ""
        middle_name = " ".join(first_and_middle[1:]) or None
        return StructuredName(
            first_name=first_name.lower(),
            middle_name=middle_name.lower() if middle_name else None,
            last_name=last_name.lower(),
        )

    tokens = text.split()
    if len(tokens) >= 2:
        middle_name = " ".join(tokens[1:-1]) or None
        return StructuredName(
            first_name=tokens[0].lower(),
            middle_name=middle_name.lower() if middle_name else None,
            last_name=tokens[-1].lower(),
        )

    return None


def combine_user_name(user: StructuredName) -> StructuredName:
    return StructuredName(
        first_name=normalize_name(user.first_name),
        middle_name=normalize_name(user.middle_name) if user.middle_name else None,
        last_name=normalize_name(user.last_name),
        nickname=normalize_name(user.nickname) if user.nickname else None,
    )


# ---------------------------------------------------------- validation ---

def validate_name_match(user: StructuredName, extracted_name: str,
                        config: Optional[NameMatchConfig] = None) -> NameValidationResult:
    """Compare the wizard's structured name against the name read off the ID."""
    cfg = config or NameMatchConfig()
    user_n = combine_user_name(user)
    parsed = parse_extracted_name(extracted_name)

    if parsed is None:
        return NameValidationResult(
            matches=False,
            confidence="low",
            score=0,
            first_name_match=False,
            last_name_match=False,
            extracted_format=extracted_name or "",
            user_format=f"{user_n.first_name} {user_n.last_name}",
            warnings=["Could not parse extracted name from ID"],
        )

    mode = cfg.similarity_mode
    first_score = calculate_name_similarity(user_n.first_name, parsed.first_name, mode)
    last_score = calculate_name_similarity(user_n.last_name, parsed.last_name, mode)

    if user_n.middle_name and parsed.middle_name:
        middle_score = calculate_name_similarity(user_n.middle_name, parsed.middle_name, mode)
    elif user_n.middle_name or parsed.middle_name:
        middle_score = cfg.one_sided_middle_score
    else:
        middle_score = 100

    threshold = cfg.field_match_threshold
    first_match = first_score >= threshold
    last_match = last_score >= threshold
    middle_match = middle_score >= threshold

    score = math.floor((first_score + last_score + middle_score) / 3)

    matches = False
    confidence = "low"
    if first_match and last_match and middle_match:
        matches = True
        confidence = "high" if score >= cfg.high_confidence_score else "medium"
    elif first_match and last_match:
        matches = True
        confidence = "medium" if score >= cfg.medium_confidence_score else "low"
    elif (cfg.allow_partial_match and (first_match or last_match)
          and score >= cfg.partial_match_score):
        matches = True
        confidence = "low"

    warnings: List[str] = []
    suggestions: List[str] = []
    low = cfg.mismatch_warning_score

    if not first_match and first_score < low:
        warnings.append(f'First name mismatch: "{user_n.first_name}" vs "{parsed.first_name}"')
        suggestions.append(f'Consider updating first name to "{parsed.first_name}"')

    if not last_match and last_score < low:
        warnings.append(f'Last name mismatch: "{user_n.last_name}" vs "{parsed.last_name}"')
        suggestions.append(f'Consider updating last name to "{parsed.last_name}"')

    if not middle_match and middle_score < low:
        warnings.append("Middle name mismatch")
        if parsed.middle_name:
            suggestions.append(f'Consider adding middle name: "{parsed.middle_name}"')

    if not matches:
        warnings.append(
            "Names do not match sufficiently. Please ensure you are using your "
            "legal name as it appears on your ID."
        )

    return NameValidationResult(
        matches=matches,
        confidence=confidence,
        score=score,
        first_name_match=first_match,
        last_name_match=last_match,
        middle_name_match=middle_match,
        extracted_format=extracted_name,
        user_format=" ".join(
            p for p in (user_n.first_name, user_n.middle_name, user_n.last_name) if p
        ),
        warnings=warnings,
        suggestions=suggestions,
    )


def get_full_legal_name(user: StructuredName) -> str:
    parts = [user.first_name, user.middle_name, user.last_name]
    return " ".join(p.strip() for p in parts if p and p.strip())


def get_display_name(user: StructuredName) -> str:
    """Nickname when one is set, otherwise the first name."""
    if user.nickname and user.nickname.strip():
        return user.nickname.strip()
    return user.first_name.strip()
