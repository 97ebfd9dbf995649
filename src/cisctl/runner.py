"""Drive control units through detect, backup, apply, verify and rollback.

The runner never lets an exception from rule content escape: failures become a
``FAILED`` outcome and trigger rollback when something was mutated. The one
exception is interruption (SIGINT/SIGTERM), which rolls back the unit in
flight, runs its cleanup and then propagates as :class:`RunInterrupted` so the
process can exit with status 130.
"""
from __future__ import annotations

import os
import time
from collections.abc import Iterable, Sequence

from .backups import BackupError, BackupRecord
from .context import ExecutionContext
from .controls.models import (
    ControlPhase,
    ControlResult,
    ControlUnit,
    RemediationOutcome,
    Resource,
    RunReport,
)
from .errors import RunInterrupted, ValidationError
from .interrupts import shield_interrupts, trap_interrupts

RUN_LOG_TAG = "run"


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def require_root(enabled: bool = True) -> None:
    """Raise :class:`ValidationError` unless running as root (when *enabled*)."""
    if enabled and os.geteuid() != 0:
        raise ValidationError("This command must be run as root.")


def _rollback(
    unit: ControlUnit,
    context: ExecutionContext,
    pre_existing: dict[str, bool],
    snapshots: dict[str, BackupRecord],
) -> None:
    log = context.log
    log.warn(unit.id, f"Rolling back changes for CIS control {unit.id}")
    for resource in unit.resources:
        _rollback_resource(
            unit,
            context,
            resource,
            pre_existing.get(resource.name, False),
            snapshots.get(resource.name),
        )
    if unit.undo is not None:
        try:
            unit.undo(context)
        except Exception as exc:
            log.warn(unit.id, f"Rollback hook failed: {exc}")
    log.info(unit.id, f"Rollback completed for CIS control {unit.id}")


def _rollback_resource(
    unit: ControlUnit,
    context: ExecutionContext,
    resource: Resource,
    existed: bool,
    snapshot: BackupRecord | None,
) -> None:
    log = context.log
    if not existed:
        try:
            if resource.path.is_file():
                resource.path.unlink()
                log.info(unit.id, f"Removed {resource.path}")
        except OSError as exc:
            log.warn(unit.id, f"Could not remove {resource.path}: {exc}")
        return
    if snapshot is None:
        log.warn(unit.id, f"No backup of {resource.path} was taken; leaving it as is")
        return
    # The live file is overwritten in place, never removed first.
    try:
        restored = context.backups.restore_record(snapshot, resource.path)
    except (BackupError, OSError) as exc:
        log.warn(unit.id, f"{resource.path} could not be restored from backup: {exc}")
        return
    if restored is None:
        log.warn(unit.id, f"{resource.path} could not be restored from backup")
    else:
        log.info(unit.id, f"Restored {resource.name} from backup")


def _cleanup(unit: ControlUnit, context: ExecutionContext) -> None:
    if unit.cleanup is not None:
        try:
            unit.cleanup(context)
        except Exception as exc:
            context.log.warn(unit.id, f"Cleanup hook failed: {exc}")
    context.log.info(unit.id, f"Cleanup completed for CIS control {unit.id}")


def _enter(
    phases: list[ControlPhase],
    unit: ControlUnit,
    context: ExecutionContext,
    phase: ControlPhase,
) -> None:
    phases.append(phase)
    context.log.debug(unit.id, f"Entering {phase.value} phase")


def run_control(unit: ControlUnit, context: ExecutionContext) -> ControlResult:
    """Run *unit* under *context* and return exactly one outcome."""
    log = context.log
    start = time.perf_counter()
    phases: list[ControlPhase] = []
    backups: list[BackupRecord] = []
    pre_existing: dict[str, bool] = {}
    snapshots: dict[str, BackupRecord] = {}
    mutated = False
    rolled_back = False

    def finish(
        outcome: RemediationOutcome,
        message: str,
        error: str | None = None,
    ) -> ControlResult:
        return ControlResult(
            control_id=unit.id,
            outcome=outcome,
            message=message,
            phases=tuple(phases),
            backups=tuple(backups),
            rolled_back=rolled_back,
            duration_ms=_duration_ms(start),
            error=error,
        )

    log.info(unit.id, f"Starting CIS control {unit.id} remediation: {unit.title}")
    try:
        _enter(phases, unit, context, ControlPhase.DETECT)
        try:
            needs_fix = bool(unit.detect(context))
        except RunInterrupted:
            raise
        except Exception as exc:
            log.error(unit.id, f"Pre-check failed for CIS control {unit.id}: {exc}")
            return finish(RemediationOutcome.FAILED, "Detect phase failed.", str(exc))

        if not needs_fix:
            log.info(unit.id, f"System is already compliant with CIS control {unit.id}")
            return finish(RemediationOutcome.ALREADY_COMPLIANT, "Already compliant.")

        log.info(unit.id, f"System requires remediation for CIS control {unit.id}")
        if context.dry_run:
            log.info(unit.id, "DRY RUN: Would perform remediation actions")
            return finish(RemediationOutcome.WOULD_REMEDIATE, "Dry run: remediation required.")

        _enter(phases, unit, context, ControlPhase.BACKUP)
        for resource in unit.resources:
            pre_existing[resource.name] = resource.path.is_file()
            if not pre_existing[resource.name]:
                log.debug(unit.id, f"{resource.path} does not exist yet; no backup needed")
                continue
            try:
                record = context.backups.create(resource.path, resource.name)
            except (BackupError, OSError) as exc:
                log.error(unit.id, f"Backup of {resource.path} failed: {exc}")
                return finish(RemediationOutcome.FAILED, "Backup phase failed.", str(exc))
            if record is not None:
                backups.append(record)
                snapshots[resource.name] = record

        _enter(phases, unit, context, ControlPhase.APPLY)
        log.info(unit.id, f"Starting remediation for CIS control {unit.id}")
        mutated = True
        apply_error: str | None = None
        try:
            applied = unit.apply(context) is not False
        except RunInterrupted:
            raise
        except Exception as exc:
            applied = False
            apply_error = str(exc)
        if not applied:
            detail = f": {apply_error}" if apply_error else ""
            log.error(unit.id, f"Remediation failed for CIS control {unit.id}{detail}")
            phases.append(ControlPhase.ROLLBACK)
            _rollback(unit, context, pre_existing, snapshots)
            rolled_back = True
            return finish(RemediationOutcome.FAILED, "Apply phase failed.", apply_error)

        _enter(phases, unit, context, ControlPhase.VERIFY)
        log.info(unit.id, f"Starting post-check for CIS control {unit.id}")
        verify_error: str | None = None
        try:
            compliant = bool(unit.verify(context))
        except RunInterrupted:
            raise
        except Exception as exc:
            compliant = False
            verify_error = str(exc)
        if not compliant:
            detail = f": {verify_error}" if verify_error else ""
            log.error(unit.id, f"Post-check failed for CIS control {unit.id}{detail}")
            phases.append(ControlPhase.ROLLBACK)
            _rollback(unit, context, pre_existing, snapshots)
            rolled_back = True
            return finish(RemediationOutcome.FAILED, "Verify phase failed.", verify_error)

        log.success(unit.id, f"CIS control {unit.id} is now compliant")
        return finish(RemediationOutcome.REMEDIATED, "Remediated.")
    except (RunInterrupted, KeyboardInterrupt) as exc:
        with shield_interrupts():
            log.error(unit.id, "Script interrupted")
            if mutated and not rolled_back:
                phases.append(ControlPhase.ROLLBACK)
                _rollback(unit, context, pre_existing, snapshots)
        if isinstance(exc, RunInterrupted):
            raise
        raise RunInterrupted() from exc
    finally:
        with shield_interrupts():
            _cleanup(unit, context)


def order_units(units: Iterable[ControlUnit]) -> list[ControlUnit]:
    """Return *units* in ascending identifier order."""
    return sorted(units, key=lambda unit: unit.sort_key)


def run_controls(
    units: Sequence[ControlUnit],
    context: ExecutionContext,
    *,
    fail_fast: bool = False,
) -> RunReport:
    """Run *units* sequentially in ascending identifier order.

    Every unit runs unless *fail_fast* is set, in which case the first
    ``FAILED`` outcome stops the run and the remaining units are reported as
    skipped. :class:`RunInterrupted` carries the partial report.
    """
    ordered = order_units(units)
    results: list[ControlResult] = []
    skipped: list[str] = []
    context.log.info(
        RUN_LOG_TAG,
        f"Running {len(ordered)} control(s) (dry_run={str(context.dry_run).lower()})",
    )
    try:
        with trap_interrupts():
            for index, unit in enumerate(ordered):
                result = run_control(unit, context)
                results.append(result)
                if fail_fast and result.is_failure:
                    skipped = [pending.id for pending in ordered[index + 1 :]]
                    if skipped:
                        context.log.error(
                            RUN_LOG_TAG,
                            f"Aborting after {unit.id} failed; skipped {', '.join(skipped)}",
                        )
                    break
    except RunInterrupted as exc:
        done = {result.control_id for result in results}
        exc.report = RunReport(
            results=tuple(results),
            skipped=tuple(unit.id for unit in ordered if unit.id not in done),
            dry_run=context.dry_run,
        )
        raise
    report = RunReport(results=tuple(results), skipped=tuple(skipped), dry_run=context.dry_run)
    totals = report.totals()
    summary = ", ".join(f"{outcome.value}={count}" for outcome, count in totals.items())
    severity = "ERROR" if report.failed else "SUCCESS"
    context.log.emit(severity, RUN_LOG_TAG, f"Run finished: {summary}")
    return report


__all__ = [
    "order_units",
    "require_root",
    "run_control",
    "run_controls",
]
