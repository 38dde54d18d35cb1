"""
Timer envelope

The envelope is the unit of replication: every write fully replaces the
previous one for all readers. Timestamps are epoch milliseconds.
"""

import math
import re
import time

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

# ============================================================
# CONSTANTS
# ============================================================

DEFAULT_MINUTES = 5
MIN_MINUTES = 1
MAX_LABEL_LENGTH = 200

# Live countdown stops rescheduling one hour past zero
OVERTIME_FLOOR_SECONDS = -3600

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


class EnvelopeError(ValueError):
    """Raised when a stored or received envelope cannot be read."""


# ============================================================
# MODEL
# ============================================================


class TimerEnvelope(BaseModel):
    """Replicated timer state.

    Accepts the camelCase wire names, the Python attribute names, and the
    field names of the first-generation storage layout.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remaining_seconds: int = Field(
        DEFAULT_MINUTES * 60,
        validation_alias=AliasChoices("remainingSeconds", "timeLeft", "remaining_seconds"),
        serialization_alias="remainingSeconds",
    )
    configured_minutes: int = Field(
        DEFAULT_MINUTES,
        ge=MIN_MINUTES,
        validation_alias=AliasChoices("configuredMinutes", "initialTime", "configured_minutes"),
        serialization_alias="configuredMinutes",
    )
    running: bool = Field(
        False,
        validation_alias=AliasChoices("running", "isRunning"),
        serialization_alias="running",
    )
    deadline: int | None = Field(
        None,
        validation_alias=AliasChoices("deadline", "targetTime"),
        serialization_alias="deadline",
    )
    written_at: int = Field(
        0,
        validation_alias=AliasChoices("writtenAt", "lastUpdate", "written_at"),
        serialization_alias="writtenAt",
    )
    paused: bool | None = Field(
        None, description="Stopped mid-run rather than idle; absent in older payloads"
    )
    label: str | None = Field(None, max_length=MAX_LABEL_LENGTH)
    origin: str | None = Field(None, description="Context that wrote this envelope")

    @model_validator(mode="after")
    def _deadline_iff_running(self) -> "TimerEnvelope":
        if self.running and self.deadline is None:
            self.running = False
        if self.running:
            self.paused = False
        else:
            self.deadline = None
        return self


def default_envelope(now: int | None = None) -> TimerEnvelope:
    """The envelope a session starts from when nothing is stored yet."""
    return TimerEnvelope(
        remaining_seconds=DEFAULT_MINUTES * 60,
        configured_minutes=DEFAULT_MINUTES,
        running=False,
        written_at=now if now is not None else now_ms(),
    )


# ============================================================
# SERIALIZATION
# ============================================================


def serialize(envelope: TimerEnvelope) -> str:
    return envelope.model_dump_json(by_alias=True)


def deserialize(raw: str | bytes | None) -> TimerEnvelope:
    """Parse a stored envelope, raising EnvelopeError on anything unreadable."""
    if raw is None:
        raise EnvelopeError("No envelope payload")
    try:
        return TimerEnvelope.model_validate_json(raw)
    except ValidationError as e:
        raise EnvelopeError(f"Malformed envelope: {e.error_count()} error(s)") from e


# ============================================================
# HELPERS
# ============================================================


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def derive_remaining(deadline: int, now: int) -> int:
    """Whole seconds until the deadline, rounded half up."""
    return (deadline - now + 500) // 1000


def format_time(seconds: int) -> str:
    """Render seconds as [-]MM:SS; the minutes field grows past two digits."""
    sign = "-" if seconds < 0 else ""
    mins, secs = divmod(abs(seconds), 60)
    return f"{sign}{mins:02d}:{secs:02d}"


def coerce_minutes(value) -> int:
    """Turn loosely typed input into a usable duration in minutes.

    Strings contribute their leading integer ("12abc" -> 12). Anything
    absent, non-numeric, zero or negative becomes MIN_MINUTES.
    """
    minutes = 0
    if isinstance(value, bool) or value is None:
        minutes = 0
    elif isinstance(value, int):
        minutes = value
    elif isinstance(value, float):
        minutes = int(value) if math.isfinite(value) else 0
    elif isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        minutes = int(match.group(1)) if match else 0
    return max(minutes, MIN_MINUTES)
