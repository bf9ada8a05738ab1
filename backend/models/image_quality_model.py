"""
IMAGE QUALITY CHECK
-------------------
Scores an uploaded ID photo before it is sent to OCR.

Checks (names are stable, the wizard keys on them):
- File Size
- File Type
- Image Load        (only when decoding fails)
- Image Dimensions
- Aspect Ratio
- Image Clarity     (brightness / contrast of a centred sample)

The overall score is the rounded mean of the check scores. Processing may
proceed only when File Size, File Type and Image Dimensions passed and the
score reaches the "acceptable" bucket.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from models.image_transforms import decode_image, luma

logger = logging.getLogger(__name__)


KB = 1024
MB = 1024 * 1024


# ---------------------------------------------------------------- config ---

@dataclass
class QualityConfig:
    min_width: int = 800
    min_height: int = 600
    optimal_width: int = 1200
    optimal_height: int = 800

    min_file_size: int = 50 * KB
    max_file_size: int = 10 * MB
    optimal_min_size: int = 500 * KB
    optimal_max_size: int = 3 * MB

    min_aspect_ratio: float = 0.5
    max_aspect_ratio: float = 2.0
    # Landscape cards and portrait-held cards.
    ideal_aspect_ratios: Tuple[float, ...] = (1.6, 1.5, 0.63)

    allowed_types: Tuple[str, ...] = ("image/jpeg", "image/jpg", "image/png", "image/webp")
    preferred_types: Tuple[str, ...] = ("image/jpeg", "image/jpg")

    clarity_sample_size: int = 200
    overexposed_brightness: float = 230.0
    underexposed_brightness: float = 50.0
    low_contrast_stdev: float = 30.0

    # Overall buckets, highest first.
    excellent: int = 90
    good: int = 75
    acceptable: int = 60
    poor: int = 40


CRITICAL_CHECKS = ("File Size", "File Type", "Image Dimensions")


# ---------------------------------------------------------------- types ---

@dataclass
class CandidateFile:
    filename: str
    content_type: str
    data: bytes
    size: Optional[int] = None

    def __post_init__(self):
        if self.size is None:
            self.size = len(self.data or b"")


@dataclass
class QualityCheck:
    name: str
    passed: bool
    score: int
    message: str
    suggestion: Optional[str] = None


@dataclass
class ImageQualityResult:
    overall: str
    score: int
    checks: List[QualityCheck] = field(default_factory=list)
    can_proceed: bool = False
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def check(self, name: str) -> Optional[QualityCheck]:
        for c in self.checks:
            if c.name == name:
                return c
        return None


# ------------------------------------------------------------- helpers ---

def _round(value: float) -> int:
    """Round half up (0.5 -> 1), not banker's rounding."""
    return int(math.floor(value + 0.5))


def format_bytes(n: int, decimals: int = 2) -> str:
    """Human readable size: 2097152 -> '2 MB'."""
    if n <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = 0
    while n >= 1024 ** (i + 1) and i < len(units) - 1:
        i += 1
    dm = max(decimals, 0)
    text = f"{n / (1024 ** i):.{dm}f}"
    if dm:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {units[i]}"


# ----------------------------------------------------------------- checks ---

def check_file_size(size: int, cfg: QualityConfig) -> QualityCheck:
    if size < cfg.min_file_size:
        return QualityCheck(
            name="File Size", passed=False, score=20,
            message=f"File too small ({format_bytes(size)}). May result in poor OCR quality.",
            suggestion="Use a higher resolution camera or scan at higher quality",
        )
    if size > cfg.max_file_size:
        return QualityCheck(
            name="File Size", passed=False, score=0,
            message=(f"File too large ({format_bytes(size)}). "
                     f"Maximum allowed is {format_bytes(cfg.max_file_size)}."),
            suggestion="Compress the image or reduce its quality",
        )

    score = 100
    message = f"Good file size ({format_bytes(size)})"
    if size < cfg.optimal_min_size:
        score = max(60, _round(size / cfg.optimal_min_size * 80) + 20)
        message = (f"Small file size ({format_bytes(size)}). "
                   "OCR may work but quality could be better.")
    elif size > cfg.optimal_max_size:
        span = cfg.max_file_size - cfg.optimal_max_size
        score = max(70, 100 - _round((size - cfg.optimal_max_size) / span * 30))
        message = f"Large file size ({format_bytes(size)}). Will work but may be slow to process."

    return QualityCheck(name="File Size", passed=True, score=score, message=message)


def check_file_type(content_type: str, cfg: QualityConfig) -> QualityCheck:
    ctype = (content_type or "").lower()
    if not ctype.startswith("image/"):
        return QualityCheck(
            name="File Type", passed=False, score=0,
            message=f"Invalid file type: {content_type or 'unknown'}",
            suggestion="Please upload an image file (JPG, PNG, or WebP)",
        )
    if ctype not in cfg.allowed_types:
        return QualityCheck(
            name="File Type", passed=False, score=30,
            message=f"Unsupported image type: {content_type}",
            suggestion="Please use JPG, PNG, or WebP format",
        )
    if ctype in cfg.preferred_types:
        return QualityCheck(name="File Type", passed=True, score=100,
                            message=f"Perfect file type: {content_type}")
    return QualityCheck(name="File Type", passed=True, score=85,
                        message=f"Good file type: {content_type}")


def check_dimensions(width: int, height: int, cfg: QualityConfig) -> QualityCheck:
    if width < cfg.min_width or height < cfg.min_height:
        ratio = min(width / cfg.min_width, height / cfg.min_height)
        return QualityCheck(
            name="Image Dimensions", passed=False,
            score=_round(max(20.0, ratio * 60)),
            message=(f"Image too small: {width}x{height}px "
                     f"(minimum: {cfg.min_width}x{cfg.min_height}px)"),
            suggestion="Use a higher resolution camera or scan the ID at higher quality",
        )

    width_score = min(100.0, width / cfg.optimal_width * 100)
    height_score = min(100.0, height / cfg.optimal_height * 100)
    score = _round((width_score + height_score) / 2)

    message = f"Good dimensions: {width}x{height}px"
    if score < 80:
        message = (f"Adequate dimensions: {width}x{height}px. "
                   "Higher resolution would improve OCR accuracy.")
    elif score >= 95:
        message = f"Excellent dimensions: {width}x{height}px"

    return QualityCheck(name="Image Dimensions", passed=True, score=max(60, score), message=message)


def check_aspect_ratio(width: int, height: int, cfg: QualityConfig) -> QualityCheck:
    ratio = width / height
    if ratio < cfg.min_aspect_ratio or ratio > cfg.max_aspect_ratio:
        return QualityCheck(
            name="Aspect Ratio", passed=False, score=40,
            message=f"Unusual aspect ratio: {ratio:.2f}. May not be a standard ID card.",
            suggestion="Ensure the entire ID is visible and properly framed",
        )
    best = max(100 - abs(ratio - ideal) / ideal * 100 for ideal in cfg.ideal_aspect_ratios)
    return QualityCheck(name="Aspect Ratio", passed=True, score=max(70, _round(best)),
                        message=f"Good aspect ratio: {ratio:.2f}")


def check_clarity(image: np.ndarray, cfg: QualityConfig) -> QualityCheck:
    """Brightness and contrast of a centred square sample."""
    try:
        h, w = image.shape[:2]
        side = int(min(cfg.clarity_sample_size, w / 4, h / 4))
        if side < 1:
            raise ValueError(f"image too small to sample ({w}x{h})")
        x0 = (w - side) // 2
        y0 = (h - side) // 2
        sample = luma(image[y0:y0 + side, x0:x0 + side])

        brightness = float(sample.mean())
        contrast = float(sample.std())
    except (ValueError, IndexError) as e:
        logger.warning(f"[QUALITY] Clarity analysis failed: {e}")
        return QualityCheck(name="Image Clarity", passed=True, score=80,
                            message="Could not analyze image clarity (processing will continue)")

    score = 100
    message = "Good image clarity"
    suggestion = None

    if brightness > cfg.overexposed_brightness:
        score = max(40, score - 30)
        message = "Image appears overexposed (too bright)"
        suggestion = "Reduce lighting or camera exposure"
    elif brightness < cfg.underexposed_brightness:
        score = max(40, score - 30)
        message = "Image appears underexposed (too dark)"
        suggestion = "Increase lighting or camera exposure"

    if contrast < cfg.low_contrast_stdev:
        score = max(50, score - 20)
        message = "Low contrast detected" if message == "Good image clarity" else message + " with low contrast"
        suggestion = suggestion or "Ensure good lighting and avoid reflections"

    return QualityCheck(name="Image Clarity", passed=score >= 50, score=score,
                        message=message, suggestion=suggestion)


# ------------------------------------------------------------ assessment ---

def _bucket(score: int, cfg: QualityConfig) -> str:
    if score >= cfg.excellent:
        return "excellent"
    if score >= cfg.good:
        return "good"
    if score >= cfg.acceptable:
        return "acceptable"
    if score >= cfg.poor:
        return "poor"
    return "unacceptable"


def validate_image_quality(candidate: CandidateFile,
                           config: Optional[QualityConfig] = None) -> ImageQualityResult:
    """Run every check against an uploaded file and fold them into a verdict."""
    cfg = config or QualityConfig()
    checks: List[QualityCheck] = []
    warnings: List[str] = []
    suggestions: List[str] = []

    size_check = check_file_size(candidate.size, cfg)
    checks.append(size_check)
    if not size_check.passed and size_check.suggestion:
        suggestions.append(size_check.suggestion)

    type_check = check_file_type(candidate.content_type, cfg)
    checks.append(type_check)
    if not type_check.passed and type_check.suggestion:
        suggestions.append(type_check.suggestion)

    is_image = (candidate.content_type or "").lower().startswith("image/")
    if is_image:
        image = decode_image(candidate.data)
        if image is None:
            checks.append(QualityCheck(
                name="Image Load", passed=False, score=0,
                message="Could not load image for analysis",
                suggestion="Try a different image file",
            ))
            warnings.append("Failed to load image for quality analysis")
            suggestions.append("Ensure the image file is not corrupted")
        else:
            h, w = image.shape[:2]
            for check in (check_dimensions(w, h, cfg),
                          check_aspect_ratio(w, h, cfg),
                          check_clarity(image, cfg)):
                checks.append(check)
                if check.suggestion:
                    suggestions.append(check.suggestion)

    score = _round(sum(c.score for c in checks) / len(checks))
    overall = _bucket(score, cfg)

    by_name = {c.name: c for c in checks}
    can_proceed = (
        all(name in by_name and by_name[name].passed for name in CRITICAL_CHECKS)
        and score >= cfg.acceptable
    )

    logger.info(
        f"[QUALITY] {candidate.filename}: score={score} overall={overall} "
        f"can_proceed={can_proceed} size={candidate.size}"
    )

    return ImageQualityResult(
        overall=overall,
        score=score,
        checks=checks,
        can_proceed=can_proceed,
        warnings=warnings,
        suggestions=suggestions,
    )
