"""Shared fixtures for the cisctl test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from cisctl.context import ExecutionContext
from cisctl.controls import ControlUnit, Resource
from cisctl.logging import RunLog

SECURE = "install cramfs /bin/true\n"


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    """Return the remediation log path used by the test context."""
    return tmp_path / "cis-remediation.log"


@pytest.fixture
def run_log(log_path: Path) -> RunLog:
    """Return a DEBUG-level run log writing under ``tmp_path``."""
    return RunLog(log_path, level="DEBUG")


@pytest.fixture
def context(tmp_path: Path, run_log: RunLog) -> ExecutionContext:
    """Return a live (non dry-run) execution context."""
    return ExecutionContext(dry_run=False, log=run_log, backup_root=tmp_path / "backups")


@pytest.fixture
def dry_context(tmp_path: Path, run_log: RunLog) -> ExecutionContext:
    """Return a dry-run execution context."""
    return ExecutionContext(dry_run=True, log=run_log, backup_root=tmp_path / "backups")


FileControlFactory = Callable[..., ControlUnit]


@pytest.fixture
def file_control(tmp_path: Path) -> FileControlFactory:
    """Build controls that enforce the content of one file.

    ``apply_result`` is returned from ``apply`` (``"raise"`` raises instead);
    ``verify_result`` overrides the content check in ``verify``. Every call is
    appended to ``calls`` on the returned factory.
    """
    calls: list[tuple[str, str]] = []

    def build(
        control_id: str = "1.1.1",
        *,
        path: Path | None = None,
        desired: str = SECURE,
        group: int = 1,
        apply_result: bool | str = True,
        verify_result: bool | None = None,
        detect_error: Exception | BaseException | None = None,
        apply_error: BaseException | None = None,
    ) -> ControlUnit:
        target = path or (tmp_path / "etc" / f"{control_id}.conf")

        def detect(ctx: ExecutionContext) -> bool:
            calls.append((control_id, "detect"))
            if detect_error is not None:
                raise detect_error
            return not target.is_file() or target.read_text(encoding="utf-8") != desired

        def apply(ctx: ExecutionContext) -> bool:
            calls.append((control_id, "apply"))
            target.parent.mkdir(parents=True, exist_ok=True)
            if apply_error is not None:
                target.write_text("half-written\n", encoding="utf-8")
                raise apply_error
            if apply_result == "raise":
                target.write_text("half-written\n", encoding="utf-8")
                raise RuntimeError("disk full")
            if apply_result is False:
                target.write_text("half-written\n", encoding="utf-8")
                return False
            target.write_text(desired, encoding="utf-8")
            return True

        def verify(ctx: ExecutionContext) -> bool:
            calls.append((control_id, "verify"))
            if verify_result is not None:
                return verify_result
            return target.read_text(encoding="utf-8") == desired

        def cleanup(ctx: ExecutionContext) -> None:
            calls.append((control_id, "cleanup"))

        return ControlUnit(
            id=control_id,
            title=f"Enforce {target.name}",
            group=group,
            detect=detect,
            apply=apply,
            verify=verify,
            resources=(Resource.for_path(target),),
            cleanup=cleanup,
        )

    build.calls = calls  # type: ignore[attr-defined]
    return build


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Environment that points every cisctl path at ``tmp_path``."""
    return {
        "CISCTL_CONFIG_FILE": str(tmp_path / "missing-config.yml"),
        "CISCTL_LOGS_DIR": str(tmp_path / "logs"),
        "CISCTL_LOG_FILE": str(tmp_path / "cis-remediation.log"),
        "CISCTL_BACKUP_ROOT": str(tmp_path / "backups"),
        "CISCTL_LOG_LEVEL": "INFO",
        "CISCTL_DRY_RUN": "false",
        "CISCTL_REQUIRE_ROOT": "false",
    }
