"""Philippine government ID reference data.

Used by the ID-type matcher (category keywords, related groups, wizard
select values) and by the AI OCR model (number formats, label keywords).
"""

import re
from typing import Dict, List, Optional, Pattern, Tuple


# ---------------------------------------------------------- categories ---

# Display labels for every canonical category.
ID_CATEGORY_LABELS: Dict[str, str] = {
    "philid": "Philippine National ID (PhilID)",
    "drivers_license": "Driver's License",
    "passport": "Passport",
    "tin": "TIN ID",
    "sss": "SSS ID",
    "voters_id": "Voter's ID",
    "senior_citizen": "Senior Citizen ID",
    "pwd": "PWD ID",
    "postal": "Postal ID",
    "philhealth": "PhilHealth ID",
    "umid": "UMID",
    "prc": "PRC ID",
    "firearm_license": "Firearm License (LTOPF)",
    "barangay": "Barangay ID",
}

# Keyword membership tables, checked in order. Specific categories come
# before generic ones: "firearm license" must not land in drivers_license,
# "philhealth" must not land in philid.
# Keywords longer than 3 letters match as substrings of the compacted
# label; shorter ones must equal a whole token.
ID_TYPE_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("firearm_license", ["firearm", "ltopf", "pnpfirearm", "gunlicense"]),
    ("philhealth", ["philhealth", "phic", "healthinsurance"]),
    ("prc", ["prc", "professionalregulation", "professionalid", "professionallicense"]),
    ("umid", ["umid", "unifiedmultipurpose", "multipurposeid", "crn"]),
    ("passport", ["passport", "dfa", "pasaporte"]),
    ("philid", ["philid", "philsys", "ephilid", "nationalid", "psn",
                "philippineidentification", "pambansangpagkakakilanlan", "pcn"]),
    ("sss", ["sss", "socialsecurity"]),
    ("tin", ["tin", "taxpayer", "taxidentification", "bir"]),
    ("voters_id", ["voter", "comelec", "vin"]),
    ("senior_citizen", ["senior", "seniorcitizen", "osca"]),
    ("pwd", ["pwd", "disability", "disabled", "persondisability"]),
    ("postal", ["postal", "phlpost", "prn"]),
    ("barangay", ["barangay", "brgy"]),
    ("drivers_license", ["driver", "drivers", "driving", "lto", "license", "licence",
                         "landtransportation", "dl"]),
]

# Categories that are distinct cards but accepted interchangeably.
RELATED_TYPE_GROUPS: List[frozenset] = [
    frozenset({"umid", "sss"}),
    frozenset({"umid", "philhealth"}),
    frozenset({"senior_citizen", "pwd"}),
]

# Select-option values offered by the wizard's ID type dropdown.
SELECT_OPTIONS: Dict[str, str] = {
    "philid": "Philippine National ID (PhilID)",
    "drivers_license": "Driver's License",
    "passport": "Passport",
    "sss": "SSS ID",
    "umid": "UMID",
    "postal": "Postal ID",
    "prc": "PRC ID",
}

# Tokens too generic to count as overlap between two ID labels.
GENERIC_ID_TOKENS = {"id", "card", "no", "number", "of", "the", "ng", "and",
                     "s", "republic", "philippines", "philippine", "pilipinas"}


# ------------------------------------------------------ number formats ---

# Canonical number formats per category.
ID_NUMBER_PATTERNS: Dict[str, Pattern] = {
    "philid": re.compile(r"^\d{4}-\d{4}-\d{4}-\d{4}$"),          # 1234-5678-9012-3456
    "drivers_license": re.compile(r"^[A-Z]\d{2}-\d{2}-\d{6}$"),  # A12-34-567890
    "passport": re.compile(r"^(?:[A-Z]{2}\d{7}|P\d{7}[A-Z])$"),  # AB1234567 / P1234567A
    "tin": re.compile(r"^\d{3}-\d{3}-\d{3}(?:-\d{3,5})?$"),       # 123-456-789(-000)
    "sss": re.compile(r"^\d{2}-\d{7}-\d$"),                      # 12-1234567-8
    "umid": re.compile(r"^(?:CRN-?)?\d{4}-\d{7}-\d$"),           # 0111-1234567-8
    "philhealth": re.compile(r"^\d{2}-\d{9}-\d$"),               # 12-345678901-2
    "prc": re.compile(r"^\d{7}$"),                               # 0123456
    "postal": re.compile(r"^[A-Z0-9]{12,13}$"),                  # PRN
    "voters_id": re.compile(r"^\d{4}-\d{4}[A-Z]-[A-Z]\d{3}[A-Z]{3}\d{5}-?\d?$"),
}

# Accepted for any type when no specific pattern fits.
GENERIC_ID_NUMBER_PATTERN: Pattern = re.compile(r"^[A-Z0-9]?[\d\- ]{7,}[A-Z0-9]?$")

# Human readable format hints, also fed into the OCR prompt.
ID_NUMBER_FORMATS: Dict[str, str] = {
    "philid": "PSN XXXX-XXXX-XXXX-XXXX (16 digits) or PCN",
    "drivers_license": "AXX-XX-XXXXXX (e.g. A12-34-567890)",
    "passport": "ABXXXXXXX or PXXXXXXXA (e.g. AB1234567, P1234567A)",
    "tin": "XXX-XXX-XXX or XXX-XXX-XXX-XXX",
    "sss": "XX-XXXXXXX-X (e.g. 34-1234567-8)",
    "umid": "CRN XXXX-XXXXXXX-X",
    "philhealth": "XX-XXXXXXXXX-X",
    "prc": "7-digit registration number",
    "postal": "12-character PRN",
    "voters_id": "VIN, e.g. 1234-5678A-B123CDE45678-9",
}

# Labels printed next to the ID number on each card.
ID_NUMBER_LABELS: Dict[str, List[str]] = {
    "philid": ["PSN", "PCN", "PhilSys Card Number"],
    "drivers_license": ["License No.", "Lic. No.", "DL No."],
    "passport": ["Passport No.", "Pasaporte Blg."],
    "tin": ["TIN", "Tax Identification Number"],
    "sss": ["SS No.", "SSS No."],
    "umid": ["CRN", "Common Reference Number"],
    "philhealth": ["PIN", "PhilHealth Identification Number"],
    "prc": ["Registration No.", "Reg. No."],
    "postal": ["PRN", "Postal Reference Number"],
    "voters_id": ["VIN", "Voter's Identification Number"],
}


# ------------------------------------------------------------- lookups ---

_NON_LETTER_RE = re.compile(r"[^a-z]")
_TOKEN_SPLIT_RE = re.compile(r"[^a-z]+")


def compact_label(label: str) -> str:
    """Lowercase and keep letters only: "Driver's License" -> "driverslicense"."""
    return _NON_LETTER_RE.sub("", (label or "").lower())


def label_tokens(label: str) -> List[str]:
    return [t for t in _TOKEN_SPLIT_RE.split((label or "").lower()) if t]


def detect_id_category(label: str) -> Optional[str]:
    """Map a free-text ID label (select value or OCR output) to a category."""
    compact = compact_label(label)
    if not compact:
        return None
    key = label.strip().lower()
    if key in ID_CATEGORY_LABELS:
        return key
    tokens = set(label_tokens(label))
    for category, keywords in ID_TYPE_KEYWORDS:
        for kw in keywords:
            if len(kw) > 3:
                if kw in compact:
                    return category
            elif kw in tokens or kw == compact:
                return category
    return None


def category_label(category: Optional[str]) -> str:
    if not category:
        return "Unknown"
    return ID_CATEGORY_LABELS.get(category, category)


def are_related(cat_a: Optional[str], cat_b: Optional[str]) -> bool:
    if not cat_a or not cat_b:
        return False
    pair = {cat_a, cat_b}
    return any(pair <= group for group in RELATED_TYPE_GROUPS)
