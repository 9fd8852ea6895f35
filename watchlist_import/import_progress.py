import time
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from .config import PROGRESS_MIN_INTERVAL, PROGRESS_MIN_ITEMS

Phase = Literal["parsing", "matching", "saving", "complete", "error"]

PHASE_ORDER: tuple[str, ...] = ("parsing", "matching", "saving", "complete")
PHASE_BANDS: dict[str, tuple[float, float]] = {
    "parsing": (0.0, 10.0),
    "matching": (10.0, 50.0),
    "saving": (50.0, 100.0),
}
TERMINAL_PHASES = ("complete", "error")


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Phase
    progress: float = Field(ge=0, le=100)
    current: int = 0
    total: int = 0
    message: str = ""
    cached: int | None = None
    items_per_second: float | None = Field(default=None, alias="itemsPerSecond")
    eta_seconds: int | None = Field(default=None, alias="estimatedTimeRemaining")
    added: int | None = None
    skipped: int | None = None
    failed: int | None = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_PHASES

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        return f"data: {self.to_json()}\n\n"


def throughput(processed: int, total: int, elapsed: float) -> tuple[float, int]:
    """Return ``(items_per_second, eta_seconds)``; both are 0 until a rate is known."""
    items_per_second = round(processed / elapsed, 1) if elapsed > 0 and processed > 0 else 0.0
    remaining = max(total - processed, 0)
    eta_seconds = round(remaining / items_per_second) if items_per_second > 0 else 0
    return items_per_second, eta_seconds


class ProgressReporter:
    """Builds the ordered event stream of one import.

    Phase boundaries (``begin``/``finish``) and terminal events are always
    returned. ``advance`` is throttled to one event per ``min_items``
    processed items or ``min_interval`` seconds and returns ``None`` when an
    update is suppressed. Reported progress never decreases.
    """

    def __init__(
        self,
        *,
        min_items: int = PROGRESS_MIN_ITEMS,
        min_interval: float = PROGRESS_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_items = max(1, min_items)
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self.phase: str | None = None
        self._phase_started = clock()
        self._last_emit_at = self._phase_started
        self._last_emit_count = 0
        self._last_progress = 0.0

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def _check_open(self) -> None:
        if self.finished:
            raise RuntimeError(f"progress stream already ended with {self.phase!r}")

    def _progress_for(self, processed: int, total: int) -> float:
        low, high = PHASE_BANDS[self.phase]
        fraction = min(max(processed / total, 0.0), 1.0) if total > 0 else 1.0
        progress = round(low + (high - low) * fraction, 1)
        return max(progress, self._last_progress)

    def _emit(self, **fields) -> ProgressEvent:
        event = ProgressEvent(**fields)
        self._last_progress = max(self._last_progress, event.progress)
        self._last_emit_at = self._clock()
        self._last_emit_count = event.current
        return event

    def begin(self, phase: str, total: int, message: str, **stats) -> ProgressEvent:
        self._check_open()
        if phase not in PHASE_BANDS:
            raise ValueError(f"unknown progress phase {phase!r}")
        if self.phase is not None and PHASE_ORDER.index(phase) <= PHASE_ORDER.index(self.phase):
            raise RuntimeError(f"phase {phase!r} cannot follow {self.phase!r}")
        self.phase = phase
        self._phase_started = self._clock()
        low, _ = PHASE_BANDS[phase]
        return self._emit(
            type=phase,
            progress=max(low, self._last_progress),
            current=0,
            total=total,
            message=message,
            **stats,
        )

    def elapsed(self) -> float:
        return max(self._clock() - self._phase_started, 0.0)

    def should_emit(self, processed: int) -> bool:
        if processed - self._last_emit_count >= self.min_items:
            return True
        return self._clock() - self._last_emit_at >= self.min_interval

    def advance(self, processed: int, total: int, message: str, **stats) -> ProgressEvent | None:
        self._check_open()
        if self.phase is None:
            raise RuntimeError("advance() called before begin()")
        if not self.should_emit(processed):
            return None
        items_per_second, eta_seconds = throughput(processed, total, self.elapsed())
        return self._emit(
            type=self.phase,
            progress=self._progress_for(processed, total),
            current=processed,
            total=total,
            message=message,
            items_per_second=items_per_second,
            eta_seconds=eta_seconds,
            **stats,
        )

    def finish(self, processed: int, total: int, message: str, **stats) -> ProgressEvent:
        self._check_open()
        if self.phase is None:
            raise RuntimeError("finish() called before begin()")
        _, high = PHASE_BANDS[self.phase]
        return self._emit(
            type=self.phase,
            progress=high,
            current=processed,
            total=total,
            message=message,
            **stats,
        )

    def complete(self, *, added: int, skipped: int, failed: int, total: int, message: str = "Import complete!") -> ProgressEvent:
        self._check_open()
        self.phase = "complete"
        return self._emit(
            type="complete",
            progress=100.0,
            current=total,
            total=total,
            message=message,
            added=added,
            skipped=skipped,
            failed=failed,
        )

    def error(self, message: str) -> ProgressEvent:
        self._check_open()
        self.phase = "error"
        return self._emit(
            type="error",
            progress=self._last_progress,
            current=0,
            total=0,
            message=message,
        )
