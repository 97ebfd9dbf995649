"""Reduce a batch report to an overall status and a bounded summary."""
from __future__ import annotations

from collections.abc import Mapping

from .models import (
    BatchReport,
    BatchSummary,
    OverallStatus,
    TargetState,
    TargetStatus,
    TargetSummary,
)

DEFAULT_TAIL_LINES = 10


def aggregate(report: BatchReport) -> OverallStatus:
    """Return ``SUCCESS`` iff every target in *report* succeeded."""
    statuses = list(report.statuses.values())
    if statuses and all(status.state is TargetState.SUCCESS for status in statuses):
        return OverallStatus.SUCCESS
    return OverallStatus.FAILED


def tail(text: str, lines: int) -> tuple[str, ...]:
    """Return the last *lines* lines of *text*."""
    if lines <= 0 or not text:
        return ()
    return tuple(text.rstrip("\n").splitlines()[-lines:])


def _summarize_target(status: TargetStatus, tail_lines: int) -> TargetSummary:
    error_output = None
    if status.state is not TargetState.SUCCESS:
        error_output = status.stderr.strip() or None
    return TargetSummary(
        target=status.target,
        state=status.state,
        local_timeout=status.local_timeout,
        output_tail=tail(status.stdout, tail_lines),
        error_output=error_output,
        detail=status.detail,
    )


def summarize(report: BatchReport, *, tail_lines: int = DEFAULT_TAIL_LINES) -> BatchSummary:
    """Build a :class:`BatchSummary`; *report* is left untouched."""
    totals: dict[TargetState, int] = {state: 0 for state in TargetState}
    targets: list[TargetSummary] = []
    for status in report.statuses.values():
        totals[status.state] += 1
        targets.append(_summarize_target(status, tail_lines))
    return BatchSummary(
        command_id=report.handle.command_id,
        status=aggregate(report),
        targets=tuple(targets),
        totals={state: count for state, count in totals.items() if count},
        interrupted=report.interrupted,
        timed_out=report.timed_out,
    )


def serialize_summary(summary: BatchSummary) -> dict[str, object]:
    """Return a JSON-safe mapping for ``--json`` output."""
    totals: Mapping[TargetState, int] = summary.totals
    return {
        "command_id": summary.command_id,
        "status": summary.status.value,
        "exit_code": summary.exit_code,
        "interrupted": summary.interrupted,
        "timed_out": summary.timed_out,
        "totals": {state.value: count for state, count in totals.items()},
        "targets": [
            {
                "target": item.target,
                "status": item.state.value,
                "local_timeout": item.local_timeout,
                "detail": item.detail,
                "output_tail": list(item.output_tail),
                "error_output": item.error_output,
            }
            for item in summary.targets
        ],
    }


__all__ = ["DEFAULT_TAIL_LINES", "aggregate", "serialize_summary", "summarize", "tail"]
