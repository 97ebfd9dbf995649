"""Execution context threaded through every remediation operation."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupStore
from .logging import RunLog


@dataclass(slots=True, frozen=True)
class ExecutionContext:
    """Explicit run settings; nothing in the runner reads process-wide state."""

    dry_run: bool
    log: RunLog
    backup_root: Path
    log_level: str = "INFO"
    backups: BackupStore = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Bind a backup store to ``backup_root`` that logs into ``log``."""
        object.__setattr__(self, "backup_root", Path(self.backup_root).expanduser())
        object.__setattr__(self, "backups", BackupStore(self.backup_root, log=self.log))


__all__ = ["ExecutionContext"]
