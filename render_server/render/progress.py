"""
Weighted multi-phase progress tracking.

Each job has named phases with fixed weights summing to 1. Overall progress
is the weighted sum of phase progress; phase progress is clamped to 0-100 and
never moves backwards, so overall progress is non-decreasing. Every update
emits one event; completion and failure always emit a final event. Once the
tracker is closed (job cancelled or finished) it emits nothing further.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from render_server.services.event_channel import RenderEvent
from render_server.system.memory import MemoryMonitor

logger = logging.getLogger(__name__)

DEFAULT_PHASES = {"extraction": 0.5, "encoding": 0.5}

# Phase name -> job status reported while that phase is active
PHASE_STATUS = {"extraction": "extracting", "encoding": "encoding"}

EventCallback = Callable[[RenderEvent], None]


@dataclass
class PhaseState:
    name: str
    weight: float
    progress: float = 0.0


@dataclass(frozen=True)
class ProgressSnapshot:
    overall: int
    phase: str
    phase_progress: dict[str, float]
    time_remaining: float | None
    elapsed_s: float


class ProgressTracker:
    """Aggregates per-phase progress for one job and emits events."""

    def __init__(
        self,
        job_id: str,
        phases: dict[str, float] | None = None,
        on_update: EventCallback | None = None,
        memory_monitor: MemoryMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        phases = phases or DEFAULT_PHASES
        if not phases:
            raise ValueError("At least one phase is required")
        if any(weight < 0 for weight in phases.values()):
            raise ValueError("Phase weights must be non-negative")
        if abs(sum(phases.values()) - 1.0) > 1e-6:
            raise ValueError(f"Phase weights must sum to 1, got {sum(phases.values())}")

        self.job_id = job_id
        self._phases = {name: PhaseState(name, weight) for name, weight in phases.items()}
        self._on_update = on_update
        self._memory_monitor = memory_monitor
        self._clock = clock
        self._started_at = clock()
        self._current_phase = "initialized"
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_phase(self) -> str:
        return self._current_phase

    @property
    def elapsed_s(self) -> float:
        return self._clock() - self._started_at

    def _weighted_sum(self) -> float:
        return sum(p.progress * p.weight for p in self._phases.values())

    @property
    def overall(self) -> int:
        return round(self._weighted_sum())

    def eta(self) -> float | None:
        """elapsed * (100 / overall) - elapsed; None while nothing is done."""
        overall = self._weighted_sum()
        if overall <= 0:
            return None
        elapsed = self.elapsed_s
        return max(elapsed * (100 / overall) - elapsed, 0.0)

    def phase_progress(self) -> dict[str, float]:
        return {name: round(p.progress, 2) for name, p in self._phases.items()}

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            overall=self.overall,
            phase=self._current_phase,
            phase_progress=self.phase_progress(),
            time_remaining=self.eta(),
            elapsed_s=self.elapsed_s,
        )

    def _phase(self, name: str) -> PhaseState:
        try:
            return self._phases[name]
        except KeyError:
            raise ValueError(f"Unknown phase: {name}") from None

    def start_phase(self, name: str) -> None:
        self._phase(name)
        self._current_phase = name
        self._emit("progress", PHASE_STATUS.get(name, name))

    def update_phase(self, name: str, progress: float) -> None:
        """Set phase progress (clamped to 0-100, never lowered) and emit an update."""
        phase = self._phase(name)
        phase.progress = max(phase.progress, min(max(float(progress), 0.0), 100.0))
        self._emit("progress", PHASE_STATUS.get(self._current_phase, self._current_phase))

    def complete_phase(self, name: str) -> None:
        self.update_phase(name, 100.0)

    def complete(self, output_ref: str | None = None) -> None:
        """Mark every phase done and emit the final event."""
        for phase in self._phases.values():
            phase.progress = 100.0
        self._current_phase = "completed"
        self._emit("completed", "completed", final=True, output_ref=output_ref)
        self._closed = True

    def fail(self, error: str) -> None:
        self._current_phase = "failed"
        self._emit("failed", "failed", final=True, error=error)
        self._closed = True

    def cancel(self) -> None:
        self._current_phase = "cancelled"
        self._emit("cancelled", "cancelled", final=True)
        self._closed = True

    def close(self) -> None:
        """Stop emitting without a final event."""
        self._closed = True

    def _emit(
        self,
        event_type: str,
        status: str,
        final: bool = False,
        error: str | None = None,
        output_ref: str | None = None,
    ) -> None:
        if self._closed:
            return

        event = RenderEvent(
            event_type=event_type,
            job_id=self.job_id,
            status=status,
            progress=self.overall,
            phase=self._current_phase,
            phase_progress=self.phase_progress(),
            time_remaining=0.0 if event_type == "completed" else (None if final else self.eta()),
            elapsed_ms=int(self.elapsed_s * 1000),
            memory_usage=self._memory_usage(),
            error=error,
            output_ref=output_ref,
        )
        if self._on_update:
            self._on_update(event)

    def _memory_usage(self) -> dict[str, float] | None:
        if self._memory_monitor is None:
            return None
        try:
            return self._memory_monitor.sample().to_dict()
        except psutil.Error as e:
            logger.debug(f"[PROGRESS] Memory sample failed: {e}")
            return None
