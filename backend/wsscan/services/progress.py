from __future__ import annotations

import enum
from typing import Callable, Optional

import structlog

from wsscan.errors import ScanCancelled

logger = structlog.get_logger(__name__)

# Receives the current step message and the increment to add, if any. A truthy
# return value asks for the scan to be cancelled.
ProgressCallback = Callable[[Optional[str], Optional[float]], Optional[bool]]


class CancellationToken:
    """Shared stop flag checked by every task of a scan."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScanCancelled()


class ProgressState(str, enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StepProgress:
    """
    Progress split into sequential steps sharing ``MAX_PROGRESS`` percent. A step
    can be divided into substeps, each report then adds one substep's share.
    """

    MAX_PROGRESS = 95.0

    def __init__(
        self,
        total_steps: int,
        callback: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        if total_steps < 1:
            raise ValueError("total_steps must be at least 1")
        self.total_steps = total_steps
        self.callback = callback
        self.cancel = cancel or CancellationToken()
        self.current_step = 0
        self.substeps: int | None = None
        self.message: str | None = None
        self.reported = 0.0
        self.state = ProgressState.IDLE

    @property
    def increment_per_step(self) -> float:
        return self.MAX_PROGRESS / self.total_steps

    @property
    def increment_per_substep(self) -> float:
        if self.substeps:
            return self.increment_per_step / self.substeps
        return self.increment_per_step

    def prepare(self) -> None:
        self.state = ProgressState.PREPARING
        self._notify(None)

    def start_step(self, title: str, substeps: int | None = None) -> None:
        if self.current_step >= self.total_steps:
            raise ValueError(f"all {self.total_steps} steps were already started")
        self.current_step += 1
        self.substeps = substeps if substeps and substeps > 0 else None
        self.message = f"[{self.current_step}/{self.total_steps}] {title}"
        self.state = ProgressState.RUNNING
        logger.debug("progress.step", step=self.current_step, total=self.total_steps, substeps=self.substeps)
        self._notify(None)

    def report_progress(self, increment: float | None = None) -> None:
        """Add ``increment`` (one substep by default) and notify the callback."""
        if self.state is not ProgressState.RUNNING:
            return
        amount = self.increment_per_substep if increment is None else increment
        self.reported += amount
        self._notify(amount)

    def create_scan_progress(self, name: str) -> "ScanProgress":
        return ScanProgress(self, name)

    def finish(self) -> None:
        self.state = ProgressState.DONE

    def fail(self) -> None:
        self.state = ProgressState.FAILED

    def _notify(self, increment: float | None) -> None:
        if self.callback is not None and self.callback(self.message, increment):
            self.cancel.cancel()
        if self.cancel.cancelled:
            self.state = ProgressState.CANCELLED
            raise ScanCancelled()


class ScanProgress:
    """Converts a sub-task's own 0..100 percentage into increments of one substep."""

    def __init__(self, parent: StepProgress, name: str) -> None:
        self.parent = parent
        self.name = name
        self.last_percentage = 0.0

    def set_percentage(self, percentage: float) -> None:
        percentage = max(0.0, min(100.0, percentage))
        if percentage <= self.last_percentage:
            return
        increment = self.parent.increment_per_substep * (percentage - self.last_percentage) / 100
        self.last_percentage = percentage
        self.parent.report_progress(increment)

    def done(self) -> None:
        self.set_percentage(100)
