"""Data models for dispatching remediation batches to remote targets."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from ..controls.catalog import GroupSelector, parse_group_selector
from ..errors import PrerequisiteWarning, ValidationError
from ..logging import LOG_LEVELS, normalize_level

DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_ARTIFACT_BUCKET = "trust-dev-team2"
DEFAULT_ARTIFACT_PREFIX = "vapt/setup/cis-scripts"


class TargetState(str, Enum):
    """Per-target status of one dispatch."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` once no further transition can happen."""
        return self not in (TargetState.PENDING, TargetState.IN_PROGRESS)

    @property
    def rank(self) -> int:
        """Progress rank used to keep transitions monotone."""
        if self is TargetState.PENDING:
            return 0
        if self is TargetState.IN_PROGRESS:
            return 1
        return 2


# Throttled or winding-down sub-states are reported as in progress.
REMOTE_STATUS_MAP: Mapping[str, TargetState] = {
    "Pending": TargetState.PENDING,
    "InProgress": TargetState.IN_PROGRESS,
    "Delayed": TargetState.IN_PROGRESS,
    "Cancelling": TargetState.IN_PROGRESS,
    "Success": TargetState.SUCCESS,
    "Failed": TargetState.FAILED,
    "Cancelled": TargetState.CANCELLED,
    "TimedOut": TargetState.TIMED_OUT,
}


def parse_remote_status(raw: str) -> TargetState | None:
    """Map a raw remote status string to a :class:`TargetState`."""
    return REMOTE_STATUS_MAP.get(raw.strip())


def parse_targets(raw: str | Iterable[str]) -> tuple[str, ...]:
    """Split, trim and de-duplicate targets, preserving first-seen order."""
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    seen: dict[str, None] = {}
    for item in items:
        target = str(item).strip()
        if target:
            seen.setdefault(target, None)
    if not seen:
        raise ValidationError("At least one target identifier is required.")
    return tuple(seen)


@dataclass(slots=True, frozen=True)
class TargetStatus:
    """Latest known status of one target."""

    target: str
    state: TargetState = TargetState.PENDING
    detail: str | None = None
    local_timeout: bool = False
    stdout: str = ""
    stderr: str = ""

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` when the target reached a terminal state."""
        return self.state.is_terminal

    def advance(
        self,
        state: TargetState,
        *,
        detail: str | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
    ) -> TargetStatus:
        """Return the status after observing *state*.

        Terminal statuses are final and a report never moves a target back
        toward ``PENDING``; only the captured output is refreshed then.
        """
        if self.is_terminal:
            return self
        next_state = state if state.rank >= self.state.rank else self.state
        return replace(
            self,
            state=next_state,
            detail=detail if detail is not None else self.detail,
            stdout=stdout if stdout is not None else self.stdout,
            stderr=stderr if stderr is not None else self.stderr,
        )

    def expire(self) -> TargetStatus:
        """Mark a still-running target as timed out by the local wait."""
        if self.is_terminal:
            return self
        return replace(self, state=TargetState.TIMED_OUT, local_timeout=True)


@dataclass(slots=True, frozen=True)
class DispatchOptions:
    """Operator options for one dispatch."""

    dry_run: bool = False
    log_level: str = "INFO"
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    artifact_bucket: str = DEFAULT_ARTIFACT_BUCKET
    artifact_prefix: str = DEFAULT_ARTIFACT_PREFIX

    def validated(self) -> DispatchOptions:
        """Return a normalised copy or raise :class:`ValidationError`."""
        level = normalize_level(self.log_level)
        if level not in LOG_LEVELS:
            allowed = ", ".join(LOG_LEVELS)
            raise ValidationError(f"Invalid log level: {self.log_level}. Must be one of {allowed}.")
        if isinstance(self.timeout_seconds, bool) or self.timeout_seconds <= 0:
            raise ValidationError(
                f"Timeout must be a positive number of seconds, got {self.timeout_seconds}."
            )
        if not self.artifact_bucket.strip():
            raise ValidationError("Artifact bucket must be a non-empty string.")
        return replace(
            self,
            log_level=level,
            artifact_bucket=self.artifact_bucket.strip(),
            artifact_prefix=self.artifact_prefix.strip().strip("/"),
        )


@dataclass(slots=True, frozen=True)
class DispatchRequest:
    """A validated request to remediate one group on a set of targets."""

    group: GroupSelector
    targets: tuple[str, ...]
    options: DispatchOptions = field(default_factory=DispatchOptions)

    @classmethod
    def build(
        cls,
        group: str | int,
        targets: str | Iterable[str],
        options: DispatchOptions | None = None,
    ) -> DispatchRequest:
        """Validate raw operator input into a request."""
        return cls(
            group=parse_group_selector(group),
            targets=parse_targets(targets),
            options=(options or DispatchOptions()).validated(),
        )

    def parameters(self) -> dict[str, str]:
        """Return the parameters passed to the remote entry point."""
        return {
            "Group": str(self.group),
            "S3Bucket": self.options.artifact_bucket,
            "S3KeyPrefix": self.options.artifact_prefix,
            "DryRun": "true" if self.options.dry_run else "false",
            "LogLevel": self.options.log_level,
        }


@dataclass(slots=True, frozen=True)
class DispatchHandle:
    """Correlation handle returned by the dispatcher."""

    command_id: str
    targets: tuple[str, ...]
    group: GroupSelector | None = None
    entry_point: str | None = None
    submitted_at: datetime | None = None
    warnings: Sequence[PrerequisiteWarning] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class InvocationSnapshot:
    """Raw status of one target's invocation as reported by the transport."""

    status: str
    details: str | None = None
    stdout: str = ""
    stderr: str = ""


@dataclass(slots=True, frozen=True)
class BatchReport:
    """Per-target statuses gathered by the poller."""

    handle: DispatchHandle
    statuses: Mapping[str, TargetStatus]
    rounds: int = 0
    timed_out: bool = False
    interrupted: bool = False
    elapsed_seconds: float = 0.0

    def pending(self) -> list[str]:
        """Return targets that are not terminal yet."""
        return [target for target, status in self.statuses.items() if not status.is_terminal]


class OverallStatus(str, Enum):
    """Aggregate status of a batch."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class TargetSummary:
    """Bounded per-target summary for reporting."""

    target: str
    state: TargetState
    local_timeout: bool
    output_tail: Sequence[str]
    error_output: str | None = None
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class BatchSummary:
    """Aggregated result of a batch."""

    command_id: str
    status: OverallStatus
    targets: Sequence[TargetSummary]
    totals: Mapping[TargetState, int]
    interrupted: bool = False
    timed_out: bool = False

    @property
    def exit_code(self) -> int:
        """Return ``0`` when every target succeeded, ``1`` otherwise."""
        return 0 if self.status is OverallStatus.SUCCESS else 1


__all__ = [
    "BatchReport",
    "BatchSummary",
    "DEFAULT_ARTIFACT_BUCKET",
    "DEFAULT_ARTIFACT_PREFIX",
    "DEFAULT_TIMEOUT_SECONDS",
    "DispatchHandle",
    "DispatchOptions",
    "DispatchRequest",
    "InvocationSnapshot",
    "OverallStatus",
    "REMOTE_STATUS_MAP",
    "TargetState",
    "TargetStatus",
    "TargetSummary",
    "parse_remote_status",
    "parse_targets",
]
