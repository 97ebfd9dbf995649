"""Data models for control units and their outcomes."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from ..backups import BackupRecord
    from ..context import ExecutionContext


ControlLevel = Literal["L1", "L2"]

GROUP_VALUES: tuple[int, ...] = (1, 2, 3, 4, 5, 6)

DetectFn = Callable[["ExecutionContext"], bool]
ApplyFn = Callable[["ExecutionContext"], "bool | None"]
VerifyFn = Callable[["ExecutionContext"], bool]
HookFn = Callable[["ExecutionContext"], None]

_CONTROL_ID_RE = re.compile(r"^\d+(\.\d+)*$")


class RemediationOutcome(str, Enum):
    """Final outcome of running one control unit."""

    ALREADY_COMPLIANT = "already-compliant"
    REMEDIATED = "remediated"
    FAILED = "failed"
    WOULD_REMEDIATE = "would-remediate"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the outcome represents a failure."""
        return self is RemediationOutcome.FAILED


class ControlPhase(str, Enum):
    """Phases of the control state machine, in execution order.

    Cleanup always runs afterwards and is not recorded as a phase.
    """

    DETECT = "detect"
    BACKUP = "backup"
    APPLY = "apply"
    VERIFY = "verify"
    ROLLBACK = "rollback"


def control_sort_key(control_id: str) -> tuple[int, ...]:
    """Numeric-aware ordering key so ``1.1.10`` sorts after ``1.1.2``."""
    return tuple(int(part) for part in control_id.split("."))


@dataclass(slots=True, frozen=True)
class Resource:
    """A file a control may mutate; ``name`` is its backup logical name."""

    name: str
    path: Path

    @classmethod
    def for_path(cls, path: Path | str, name: str | None = None) -> Resource:
        """Build a resource whose logical name defaults to the file name."""
        resolved = Path(path)
        return cls(name=name or resolved.name, path=resolved)


@dataclass(slots=True, frozen=True)
class ControlUnit:
    """Declarative descriptor for one compliance rule.

    ``detect`` returns ``True`` when the host needs remediation, ``apply``
    performs it (returning ``False`` or raising on failure) and ``verify``
    returns ``True`` once the host is compliant. Backup and rollback are
    derived from ``resources``; ``undo`` covers side effects that are not
    files, such as an installed package.
    """

    id: str
    title: str
    group: int
    detect: DetectFn
    apply: ApplyFn
    verify: VerifyFn
    level: ControlLevel = "L1"
    description: str = ""
    resources: Sequence[Resource] = field(default_factory=tuple)
    undo: HookFn | None = None
    cleanup: HookFn | None = None

    def __post_init__(self) -> None:
        """Validate identifier, group membership and resource names."""
        if not _CONTROL_ID_RE.match(self.id):
            raise ValueError(f"Control identifier must be dotted digits, got {self.id!r}.")
        if self.group not in GROUP_VALUES:
            raise ValueError(f"Control {self.id} has unsupported group {self.group!r}.")
        object.__setattr__(self, "resources", tuple(self.resources))
        names = [resource.name for resource in self.resources]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"Control {self.id} declares duplicate resource names: {', '.join(duplicates)}."
            )

    @property
    def sort_key(self) -> tuple[int, ...]:
        """Return the ordering key for this unit."""
        return control_sort_key(self.id)


@dataclass(slots=True, frozen=True)
class ControlResult:
    """Outcome of running a control unit, plus its audit trail."""

    control_id: str
    outcome: RemediationOutcome
    message: str
    phases: Sequence[ControlPhase] = field(default_factory=tuple)
    backups: Sequence[BackupRecord] = field(default_factory=tuple)
    rolled_back: bool = False
    duration_ms: int | None = None
    error: str | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the unit failed."""
        return self.outcome.is_failure


@dataclass(slots=True, frozen=True)
class RunReport:
    """Results for an ordered list of control units."""

    results: Sequence[ControlResult]
    skipped: Sequence[str] = field(default_factory=tuple)
    dry_run: bool = False

    @property
    def failed(self) -> list[ControlResult]:
        """Return the results whose outcome is ``FAILED``."""
        return [result for result in self.results if result.is_failure]

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when no unit failed."""
        return not self.failed

    def totals(self) -> dict[RemediationOutcome, int]:
        """Count results per outcome."""
        counts = {outcome: 0 for outcome in RemediationOutcome}
        for result in self.results:
            counts[result.outcome] += 1
        return counts
