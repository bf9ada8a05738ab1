"""Onboarding progress persistence.

Snapshots the wizard state into a key-value store so a user can resume
within seven days, from this device or another one. Secrets never reach
storage. A storage failure never blocks the wizard: the service falls back
to an "essential" record (step + completed steps) and logs the error.

Stored keys (inside the client's namespace):

    sunshare_onboarding_progress    full snapshot (key-shortened above 50KB)
    sunshare_onboarding_metadata    session id, step progress, fingerprint
    sunshare_session_id             ss_<base36 ms>_<random>
    sunshare_essential_progress     fallback written when the snapshot fails
"""

import hashlib
import json
import logging
import secrets
import string
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from db.database import KeyValueStore

logger = logging.getLogger(__name__)


TOTAL_STEPS = 5
DAY_MS = 24 * 60 * 60 * 1000

SECRET_FIELDS = {
    "password", "confirm_password", "confirmPassword",
    "captcha_token", "captchaToken",
}

STEP_HINTS = {
    1: "You were filling out your account information",
    2: "You were uploading your ID document",
    3: "You were entering property details",
    4: "You were setting energy preferences",
    5: "You were reviewing your application",
}

_BASE36 = string.digits + string.ascii_lowercase


class ProgressStorageError(Exception):
    """A snapshot could not be written to the store."""


# ---------------------------------------------------------------- config ---

@dataclass
class ProgressConfig:
    storage_key: str = "sunshare_onboarding_progress"
    metadata_key: str = "sunshare_onboarding_metadata"
    session_key: str = "sunshare_session_id"
    essential_key: str = "sunshare_essential_progress"
    max_age_ms: int = 7 * DAY_MS
    compression_threshold: int = 50 * 1024
    auto_save_interval: float = 30.0       # seconds
    auto_save_debounce: float = 2.0        # seconds
    version: str = "2.0.0"


@dataclass
class ClientContext:
    """What the browser reports about itself; feeds the device fingerprint."""
    user_agent: str = ""
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    timezone: str = ""
    canvas_hash: str = ""


# ---------------------------------------------------------------- types ---

@dataclass
class ProgressMetadata:
    start_time: int
    last_saved: int
    session_id: str
    version: str
    user_agent: str = ""
    is_complete: bool = False


@dataclass
class OnboardingProgress:
    form_data: Dict[str, Any]
    current_step: int
    completed_steps: List[int]
    validation_results: Dict[str, Any]
    metadata: ProgressMetadata

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProgressStats:
    has_progress: bool = False
    current_step: int = 0
    completion_rate: int = 0
    time_spent: int = 0                    # ms
    estimated_time_remaining: int = 0      # ms
    last_access: int = 0
    can_resume: bool = False


@dataclass
class RecoveryAdvice:
    can_recover: bool
    progress: Optional[OnboardingProgress] = None
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ------------------------------------------------------------- helpers ---

def sanitize_form_data(form_data: Any) -> Any:
    """Copy of ``form_data`` with secret fields removed at every level."""
    if isinstance(form_data, dict):
        return {k: sanitize_form_data(v) for k, v in form_data.items() if k not in SECRET_FIELDS}
    if isinstance(form_data, list):
        return [sanitize_form_data(v) for v in form_data]
    return form_data


def dedupe_steps(steps: Iterable[int]) -> List[int]:
    seen = set()
    out = []
    for s in steps:
        if s not in seen:
            seen.add(s)
            out.append(s)
    return out


def to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits))


def content_hash(obj: Any) -> str:
    canonical = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compress_progress(progress: OnboardingProgress) -> dict:
    m = progress.metadata
    return {
        "fd": progress.form_data,
        "cs": progress.current_step,
        "cps": progress.completed_steps,
        "vr": progress.validation_results,
        "m": {"st": m.start_time, "ls": m.last_saved, "si": m.session_id,
              "v": m.version, "ic": m.is_complete},
    }


def is_compressed(raw: dict) -> bool:
    return "fd" in raw and "cs" in raw and "m" in raw


def decompress_progress(raw: dict) -> dict:
    m = raw.get("m")
    if not isinstance(m, dict):
        raise ValueError("compressed metadata is not an object")
    return {
        "form_data": raw.get("fd") or {},
        "current_step": raw.get("cs"),
        "completed_steps": raw.get("cps") or [],
        "validation_results": raw.get("vr") or {},
        "metadata": {
            "start_time": m.get("st"),
            "last_saved": m.get("ls"),
            "session_id": m.get("si"),
            "version": m.get("v"),
            "user_agent": "",
            "is_complete": bool(m.get("ic")),
        },
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_progress(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    meta = raw.get("metadata")
    step = raw.get("current_step")
    steps = raw.get("completed_steps")
    return (
        _is_number(step)
        and 1 <= step <= TOTAL_STEPS
        and isinstance(steps, list)
        and all(_is_number(s) and 1 <= s <= TOTAL_STEPS for s in steps)
        and isinstance(raw.get("form_data") or {}, dict)
        and isinstance(meta, dict)
        and _is_number(meta.get("last_saved"))
        and isinstance(meta.get("session_id"), str)
    )


def _progress_from_dict(raw: dict, config: ProgressConfig, now_ms: int) -> OnboardingProgress:
    meta = raw["metadata"]
    return OnboardingProgress(
        form_data=raw.get("form_data") or {},
        current_step=int(raw["current_step"]),
        completed_steps=[int(s) for s in raw["completed_steps"]],
        validation_results=raw.get("validation_results") or {},
        metadata=ProgressMetadata(
            start_time=int(meta.get("start_time") or now_ms),
            last_saved=int(meta["last_saved"]),
            session_id=meta["session_id"],
            version=meta.get("version") or config.version,
            user_agent=meta.get("user_agent") or "",
            is_complete=bool(meta.get("is_complete")),
        ),
    )


# --------------------------------------------------------------- service ---

class ProgressPersistence:
    """Progress snapshots for one client, stored in ``store``."""

    def __init__(self, store: KeyValueStore, config: Optional[ProgressConfig] = None,
                 clock: Callable[[], float] = time.time,
                 client: Optional[ClientContext] = None):
        self.store = store
        self.config = config or ProgressConfig()
        self.clock = clock
        self.client = client or ClientContext()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _write(self, key: str, value: Any) -> None:
        try:
            self.store.set(key, json.dumps(value, default=str))
        except Exception as e:
            raise ProgressStorageError(f"Could not write '{key}': {e}") from e

    def _read_json(self, key: str) -> Any:
        raw = self.store.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    # ---- session / device ----

    def get_or_create_session_id(self) -> str:
        session_id = self.store.get(self.config.session_key)
        if not session_id:
            suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
            session_id = f"ss_{to_base36(self._now_ms())}_{suffix}"
            self.store.set(self.config.session_key, session_id)
        return session_id

    def get_device_fingerprint(self) -> str:
        c = self.client
        parts = [c.user_agent, c.language, f"{c.screen_width}x{c.screen_height}",
                 c.timezone, c.canvas_hash]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]

    def _stored_fingerprint(self) -> Optional[str]:
        try:
            meta = self._read_json(self.config.metadata_key)
        except ValueError:
            return None
        return meta.get("device_fingerprint") if isinstance(meta, dict) else None

    # ---- save ----

    def save_onboarding_progress(self, form_data: Dict[str, Any], current_step: int,
                                 completed_steps: Iterable[int] = (),
                                 validation_results: Optional[Dict[str, Any]] = None) -> bool:
        """Persist a snapshot. Returns False when only the fallback was written."""
        steps = dedupe_steps(completed_steps)
        step = max(1, min(TOTAL_STEPS, int(current_step)))
        try:
            # load first: an expired snapshot clears the stored session id
            existing = self.load_onboarding_progress()
            session_id = self.get_or_create_session_id()
            now = self._now_ms()

            progress = OnboardingProgress(
                form_data=sanitize_form_data(form_data or {}),
                current_step=step,
                completed_steps=steps,
                validation_results=validation_results or {},
                metadata=ProgressMetadata(
                    start_time=existing.metadata.start_time if existing else now,
                    last_saved=now,
                    session_id=session_id,
                    version=self.config.version,
                    user_agent=self.client.user_agent,
                    is_complete=step >= TOTAL_STEPS,
                ),
            )

            payload = progress.to_dict()
            serialized = json.dumps(payload, default=str)
            if len(serialized) > self.config.compression_threshold:
                self._write(self.config.storage_key, compress_progress(progress))
                compressed = True
            else:
                self.store.set(self.config.storage_key, serialized)
                compressed = False

            self._update_metadata(step, steps)

            logger.info(
                f"[PROGRESS] Saved step={step} completed={len(steps)} "
                f"size={len(serialized)} compressed={compressed} session={session_id[:8]}"
            )
            return True
        except Exception as e:
            logger.error(f"[PROGRESS] Failed to save progress: {e}")
            self._save_essential_progress(step, steps)
            return False

    def _update_metadata(self, current_step: int, completed_steps: List[int]) -> None:
        try:
            meta = self._read_json(self.config.metadata_key)
            now = self._now_ms()
            if not isinstance(meta, dict):
                meta = {
                    "id": self.get_or_create_session_id(),
                    "start_time": now,
                    "last_access": now,
                    "step_progress": {},
                    "estimated_completion": 0,
                    "device_fingerprint": self.get_device_fingerprint(),
                }
            meta["last_access"] = now
            step_progress = meta.setdefault("step_progress", {})
            for s in [current_step, *completed_steps]:
                step_progress[str(s)] = True
            meta["estimated_completion"] = round(len(completed_steps) / TOTAL_STEPS * 100)
            self._write(self.config.metadata_key, meta)
        except (ValueError, ProgressStorageError) as e:
            logger.error(f"[PROGRESS] Failed to update metadata: {e}")

    def _save_essential_progress(self, current_step: int, completed_steps: List[int]) -> None:
        try:
            self._write(self.config.essential_key, {
                "step": current_step,
                "completed": completed_steps,
                "time": self._now_ms(),
            })
        except ProgressStorageError as e:
            logger.error(f"[PROGRESS] Failed to save essential progress: {e}")

    def load_essential_progress(self) -> Optional[dict]:
        try:
            data = self._read_json(self.config.essential_key)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    # ---- load / clear ----

    def load_onboarding_progress(self) -> Optional[OnboardingProgress]:
        """Return the saved snapshot, or None when absent, invalid or expired."""
        try:
            raw = self._read_json(self.config.storage_key)
        except ValueError as e:
            logger.error(f"[PROGRESS] Failed to load progress: {e}")
            return None
        if raw is None:
            return None

        now = self._now_ms()
        try:
            if isinstance(raw, dict) and is_compressed(raw):
                raw = decompress_progress(raw)
            if not is_valid_progress(raw):
                raise ValueError("snapshot failed structural validation")
            progress = _progress_from_dict(raw, self.config, now)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"[PROGRESS] Invalid progress data found, clearing: {e}")
            self.clear_progress()
            return None

        if now - progress.metadata.last_saved > self.config.max_age_ms:
            logger.info("[PROGRESS] Progress data expired, clearing")
            self.clear_progress()
            return None

        if not progress.metadata.user_agent:
            progress.metadata.user_agent = self.client.user_agent
        return progress

    def clear_progress(self) -> None:
        for key in (self.config.storage_key, self.config.metadata_key, self.config.session_key):
            self.store.remove(key)
        logger.info("[PROGRESS] Progress cleared")

    # ---- insights ----

    def get_progress_stats(self) -> ProgressStats:
        progress = self.load_onboarding_progress()
        if progress is None:
            return ProgressStats()

        now = self._now_ms()
        done = len(progress.completed_steps)
        time_spent = now - progress.metadata.start_time
        avg_per_step = time_spent / max(done, 1)
        remaining = max(TOTAL_STEPS - done, 0)

        return ProgressStats(
            has_progress=True,
            current_step=progress.current_step,
            completion_rate=round(done / TOTAL_STEPS * 100),
            time_spent=time_spent,
            estimated_time_remaining=int(remaining * avg_per_step),
            last_access=progress.metadata.last_saved,
            can_resume=not progress.metadata.is_complete,
        )

    def attempt_progress_recovery(self) -> RecoveryAdvice:
        progress = self.load_onboarding_progress()
        if progress is None:
            return RecoveryAdvice(
                can_recover=False,
                suggestions=["Start the onboarding process from the beginning"],
            )

        suggestions: List[str] = []
        stored = self._stored_fingerprint()
        if stored and stored != self.get_device_fingerprint():
            suggestions.append("Different device or browser detected. Please verify it's still you.")

        hint = STEP_HINTS.get(progress.current_step)
        if hint:
            suggestions.append(hint)

        return RecoveryAdvice(can_recover=True, progress=progress, suggestions=suggestions)

    # ---- auto-save ----

    def enable_auto_save(self, get_form_data: Callable[[], Dict[str, Any]],
                         get_current_step: Callable[[], int],
                         get_completed_steps: Callable[[], Iterable[int]],
                         timer_factory: Callable[..., threading.Timer] = threading.Timer) -> "AutoSaver":
        saver = AutoSaver(self, get_form_data, get_current_step, get_completed_steps,
                          timer_factory=timer_factory)
        saver.start()
        return saver


class AutoSaver:
    """Debounced + periodic saver. Call the instance to stop it."""

    def __init__(self, persistence: ProgressPersistence,
                 get_form_data: Callable[[], Dict[str, Any]],
                 get_current_step: Callable[[], int],
                 get_completed_steps: Callable[[], Iterable[int]],
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.persistence = persistence
        self.get_form_data = get_form_data
        self.get_current_step = get_current_step
        self.get_completed_steps = get_completed_steps
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._debounce_timer: Optional[threading.Timer] = None
        self._periodic_timer: Optional[threading.Timer] = None
        self._last_hash = ""
        self._stopped = False

    def start(self) -> None:
        with self._lock:
            self._schedule_periodic()

    def _schedule_periodic(self) -> None:
        if self._stopped:
            return
        timer = self._timer_factory(self.persistence.config.auto_save_interval, self._periodic_tick)
        timer.daemon = True
        self._periodic_timer = timer
        timer.start()

    def _periodic_tick(self) -> None:
        self.save_now()
        with self._lock:
            self._schedule_periodic()

    def notify_change(self) -> None:
        """Form input/change event: (re)arm the debounce timer."""
        with self._lock:
            if self._stopped:
                return
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = self._timer_factory(self.persistence.config.auto_save_debounce, self.save_now)
            timer.daemon = True
            self._debounce_timer = timer
            timer.start()

    def flush(self) -> bool:
        """Save immediately (page unload)."""
        with self._lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
        return self.save_now()

    def save_now(self) -> bool:
        """Save when the content changed since the last save; True if written."""
        # timer callbacks run on their own threads; compare and write as one step
        with self._lock:
            try:
                form_data = self.get_form_data()
                step = self.get_current_step()
                completed = list(self.get_completed_steps())
                digest = content_hash({"form_data": form_data, "current_step": step,
                                       "completed_steps": completed})
                if digest == self._last_hash:
                    return False
                self.persistence.save_onboarding_progress(form_data, step, completed)
                self._last_hash = digest
                return True
            except Exception as e:
                logger.error(f"[PROGRESS] Auto-save failed: {e}")
                return False

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            for timer in (self._debounce_timer, self._periodic_timer):
                if timer is not None:
                    timer.cancel()
            self._debounce_timer = None
            self._periodic_timer = None

    def __call__(self) -> None:
        self.stop()
