"""Error taxonomy shared by the runner, dispatcher and CLI."""
from __future__ import annotations

import signal
from dataclasses import dataclass


class CisctlError(RuntimeError):
    """Base class for errors surfaced to operators."""


class ValidationError(CisctlError):
    """Raised when operator input is rejected before any remote contact."""


class DispatchError(CisctlError):
    """Raised when the transport rejects a fan-out request.

    ``detail`` carries the raw transport output so it can be surfaced verbatim.
    """

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        """Store the message and raw transport detail."""
        super().__init__(message)
        self.detail = detail


class ControlFailure(CisctlError):
    """Raised inside a control phase; converted into a ``FAILED`` outcome."""

    def __init__(self, control_id: str, phase: str, message: str) -> None:
        """Record which control and phase failed."""
        super().__init__(f"{control_id} {phase} failed: {message}")
        self.control_id = control_id
        self.phase = phase


class RunInterrupted(CisctlError):
    """Raised when SIGINT/SIGTERM interrupts a remediation run.

    ``report`` is filled in by the runner with whatever finished before the
    interruption.
    """

    def __init__(self, signum: int | None = None) -> None:
        """Remember the signal that triggered the interruption, if any."""
        name = signal.Signals(signum).name if signum is not None else "KeyboardInterrupt"
        super().__init__(f"Interrupted by {name}")
        self.signum = signum
        self.report: object | None = None


@dataclass(slots=True, frozen=True)
class PrerequisiteWarning:
    """A prerequisite check that could not be confirmed.

    Warnings are logged and execution proceeds; they are never raised.
    """

    check: str
    message: str


__all__ = [
    "CisctlError",
    "ControlFailure",
    "DispatchError",
    "PrerequisiteWarning",
    "RunInterrupted",
    "ValidationError",
]
