"""Retry orchestration for OCR calls.

Attempts are strictly serialized and escalate through preprocessing
strategies:

    attempt 1   retry     (image unchanged)
    attempt 2   enhance   (1.2x upscale + contrast stretch)
    attempt 3+  fallback  (luma grayscale)

A strategy missing from ``RetryOptions.strategies`` degrades to ``retry``.
Between attempts the orchestrator backs off exponentially; the wait can be
interrupted through a ``CancellationToken``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from models.image_transforms import enhance_for_retry, grayscale_for_retry

logger = logging.getLogger(__name__)


STRATEGY_RETRY = "retry"
STRATEGY_ENHANCE = "enhance"
STRATEGY_FALLBACK = "fallback"


class OCRRetryExhaustedError(Exception):
    """Every attempt failed (or the run was cancelled)."""

    def __init__(self, message: str, result: "RetryResult"):
        super().__init__(message)
        self.result = result


# ---------------------------------------------------------------- config ---

@dataclass
class RetryOptions:
    max_retries: int = 3
    base_delay: int = 1000      # ms
    max_delay: int = 8000       # ms
    backoff_factor: float = 2
    strategies: Sequence[str] = (STRATEGY_RETRY, STRATEGY_ENHANCE, STRATEGY_FALLBACK)


class CancellationToken:
    """Cooperative cancellation flag for a retry run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when cancelled meanwhile."""
        return self._event.wait(seconds)


# ---------------------------------------------------------------- types ---

@dataclass
class RetryAttempt:
    attempt: int
    strategy: str
    timestamp: int              # epoch ms when the attempt started
    duration: int = 0           # ms
    error: Optional[str] = None


@dataclass
class RetryResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    attempts: List[RetryAttempt] = field(default_factory=list)
    total_duration: int = 0
    strategy: str = "failed"


@dataclass
class RetryAnalysis:
    insights: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    should_report: bool = False


# ------------------------------------------------------------- strategy ---

def strategy_for_attempt(attempt: int, strategies: Sequence[str]) -> str:
    if attempt == 2 and STRATEGY_ENHANCE in strategies:
        return STRATEGY_ENHANCE
    if attempt >= 3 and STRATEGY_FALLBACK in strategies:
        return STRATEGY_FALLBACK
    return STRATEGY_RETRY


def apply_retry_strategy(image_data: str, strategy: str) -> str:
    if strategy == STRATEGY_ENHANCE:
        return enhance_for_retry(image_data)
    if strategy == STRATEGY_FALLBACK:
        return grayscale_for_retry(image_data)
    return image_data


def backoff_delay(attempt: int, options: RetryOptions) -> int:
    """Delay in ms after a failed ``attempt`` (1-based)."""
    return int(min(options.base_delay * options.backoff_factor ** (attempt - 1), options.max_delay))


def _now_ms() -> int:
    return int(time.time() * 1000)


# ----------------------------------------------------------- orchestrator ---

def retry_ocr_with_strategies(ocr_fn: Callable[[str], Any], image_data: str,
                              options: Optional[RetryOptions] = None, *,
                              sleep: Callable[[float], None] = time.sleep,
                              cancel_token: Optional[CancellationToken] = None) -> RetryResult:
    """Run ``ocr_fn(processed_image)`` until it succeeds or attempts run out.

    ``sleep`` takes seconds. When a cancel token is given, backoff waits go
    through the token instead so a cancel interrupts them.
    """
    opts = options or RetryOptions()
    attempts: List[RetryAttempt] = []
    start = _now_ms()
    last_error = ""
    total_attempts = opts.max_retries + 1

    for attempt in range(1, total_attempts + 1):
        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"[RETRY] Cancelled before attempt {attempt}")
            return RetryResult(success=False, error="OCR cancelled", attempts=attempts,
                               total_duration=_now_ms() - start, strategy="cancelled")

        strategy = strategy_for_attempt(attempt, opts.strategies)
        attempt_start = _now_ms()

        try:
            processed = apply_retry_strategy(image_data, strategy)
            data = ocr_fn(processed)
        except Exception as e:
            last_error = str(e) or e.__class__.__name__
            attempts.append(RetryAttempt(attempt=attempt, strategy=strategy, timestamp=attempt_start,
                                         duration=_now_ms() - attempt_start, error=last_error))
            logger.warning(f"[RETRY] Attempt {attempt}/{total_attempts} failed ({strategy}): {last_error}")

            if attempt >= total_attempts:
                break

            delay = backoff_delay(attempt, opts)
            logger.info(
                f"[RETRY] Retrying in {delay}ms with strategy "
                f"{strategy_for_attempt(attempt + 1, opts.strategies)}"
            )
            if cancel_token is not None:
                if cancel_token.wait(delay / 1000):
                    logger.info("[RETRY] Cancelled during backoff")
                    return RetryResult(success=False, error="OCR cancelled", attempts=attempts,
                                       total_duration=_now_ms() - start, strategy="cancelled")
            else:
                sleep(delay / 1000)
            continue

        attempts.append(RetryAttempt(attempt=attempt, strategy=strategy, timestamp=attempt_start,
                                     duration=_now_ms() - attempt_start))
        return RetryResult(success=True, data=data, attempts=attempts,
                           total_duration=_now_ms() - start, strategy=strategy)

    return RetryResult(success=False, error=last_error or "All retry attempts failed",
                       attempts=attempts, total_duration=_now_ms() - start, strategy="failed")


# -------------------------------------------------------------- reporting ---

def analyze_retry_results(result: RetryResult) -> RetryAnalysis:
    """Advisory insights for monitoring; has no effect on the result."""
    analysis = RetryAnalysis()
    n = len(result.attempts)

    if not result.success:
        analysis.insights.append(f"All {n} attempts failed")
        analysis.should_report = True

        unique_errors = {a.error for a in result.attempts if a.error}
        if len(unique_errors) == 1:
            analysis.insights.append("Consistent error across attempts")
            analysis.recommendations.append(
                "This may be a systematic issue with the image or service")
        else:
            analysis.insights.append("Different errors across attempts")
            analysis.recommendations.append(
                "Intermittent connectivity or processing issues detected")

        avg_duration = sum(a.duration for a in result.attempts) / n if n else 0
        if avg_duration > 10000:
            analysis.insights.append("Long processing times detected")
            analysis.recommendations.append("Consider image compression or quality reduction")
        return analysis

    analysis.insights.append(f"Success on attempt {n} using {result.strategy} strategy")
    if n > 1:
        analysis.insights.append("Required retry attempts")
        analysis.recommendations.append(
            "Consider image quality improvements for better first-attempt success")
    if n > 2:
        analysis.should_report = True
        analysis.insights.append("Required multiple retry attempts - may indicate service instability")
    return analysis


def format_retry_message(result: RetryResult) -> str:
    n = len(result.attempts)
    if result.success:
        if n == 1:
            return "Processing completed successfully"
        return f"Processing completed after {n} attempts ({result.total_duration / 1000:.1f}s)"
    if result.strategy == "cancelled":
        return "Processing was cancelled."
    return (f"Processing failed after {n} attempts. "
            "Please try a different image or check your connection.")


def with_auto_retry(ocr_fn: Callable[[str], Any], image_data: str,
                    options: Optional[RetryOptions] = None, **kwargs) -> Any:
    """Return the OCR data or raise ``OCRRetryExhaustedError``."""
    result = retry_ocr_with_strategies(ocr_fn, image_data, options, **kwargs)
    if result.success:
        logger.info(f"[RETRY] OCR completed: attempts={len(result.attempts)} "
                    f"duration={result.total_duration}ms strategy={result.strategy}")
        return result.data

    logger.error(f"[RETRY] OCR failed after retries: attempts={len(result.attempts)} "
                 f"duration={result.total_duration}ms error={result.error}")
    raise OCRRetryExhaustedError(result.error or "OCR processing failed after all retries", result)
