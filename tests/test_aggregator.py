"""Tests for batch aggregation and summaries."""
from __future__ import annotations

import json

import pytest

from cisctl.fleet import (
    BatchReport,
    DispatchHandle,
    OverallStatus,
    TargetState,
    TargetStatus,
    aggregate,
    serialize_summary,
    summarize,
)
from cisctl.fleet.aggregator import tail


def _report(*statuses: TargetStatus, **kwargs: object) -> BatchReport:
    handle = DispatchHandle(
        command_id="cmd-123",
        targets=tuple(status.target for status in statuses),
    )
    return BatchReport(
        handle=handle,
        statuses={status.target: status for status in statuses},
        **kwargs,  # type: ignore[arg-type]
    )


def test_all_success_is_success() -> None:
    """Every target succeeded."""
    report = _report(
        TargetStatus("t1", TargetState.SUCCESS),
        TargetStatus("t2", TargetState.SUCCESS),
    )

    assert aggregate(report) is OverallStatus.SUCCESS
    assert summarize(report).exit_code == 0


@pytest.mark.parametrize(
    "state",
    [TargetState.FAILED, TargetState.CANCELLED, TargetState.TIMED_OUT, TargetState.IN_PROGRESS],
)
def test_any_non_success_fails(state: TargetState) -> None:
    """One non-success target fails the batch."""
    report = _report(TargetStatus("t1", TargetState.SUCCESS), TargetStatus("t2", state))

    assert aggregate(report) is OverallStatus.FAILED
    assert summarize(report).exit_code == 1


def test_empty_report_is_failed() -> None:
    """Nothing observed is not a success."""
    assert aggregate(_report()) is OverallStatus.FAILED


def test_summary_tails_output_and_collects_errors() -> None:
    """Output is bounded and stderr is kept only for failed targets."""
    stdout = "\n".join(f"line {index}" for index in range(1, 16)) + "\n"
    report = _report(
        TargetStatus("t1", TargetState.SUCCESS, stdout=stdout, stderr="noise\n"),
        TargetStatus("t2", TargetState.FAILED, detail="Failed", stderr="  boom\n"),
        TargetStatus("t3", TargetState.TIMED_OUT, local_timeout=True),
        timed_out=True,
    )

    summary = summarize(report, tail_lines=3)

    first, second, third = summary.targets
    assert first.output_tail == ("line 13", "line 14", "line 15")
    assert first.error_output is None
    assert second.error_output == "boom"
    assert second.detail == "Failed"
    assert third.local_timeout is True
    assert third.error_output is None
    assert summary.totals == {
        TargetState.SUCCESS: 1,
        TargetState.FAILED: 1,
        TargetState.TIMED_OUT: 1,
    }
    assert summary.timed_out is True


def test_summarize_leaves_report_untouched() -> None:
    """Aggregation is a pure read of the report."""
    status = TargetStatus("t1", TargetState.FAILED, stdout="a\nb\n")
    report = _report(status)

    summarize(report, tail_lines=1)

    assert report.statuses["t1"] is status


def test_serialize_summary_is_json_safe() -> None:
    """The serialised summary round-trips through JSON."""
    report = _report(
        TargetStatus("t1", TargetState.SUCCESS, stdout="ok\n"),
        TargetStatus("t2", TargetState.TIMED_OUT, local_timeout=True),
        timed_out=True,
    )

    payload = serialize_summary(summarize(report))

    assert json.loads(json.dumps(payload)) == payload
    assert payload["command_id"] == "cmd-123"
    assert payload["status"] == "failed"
    assert payload["exit_code"] == 1
    assert payload["timed_out"] is True
    assert payload["interrupted"] is False
    assert payload["totals"] == {"Success": 1, "TimedOut": 1}
    assert payload["targets"][1] == {  # type: ignore[index]
        "target": "t2",
        "status": "TimedOut",
        "local_timeout": True,
        "detail": None,
        "output_tail": [],
        "error_output": None,
    }


@pytest.mark.parametrize(
    ("text", "lines", "expected"),
    [
        ("a\nb\nc\n", 2, ("b", "c")),
        ("a\nb", 5, ("a", "b")),
        ("", 3, ()),
        ("a\n", 0, ()),
    ],
)
def test_tail(text: str, lines: int, expected: tuple[str, ...]) -> None:
    """Only the last lines are kept."""
    assert tail(text, lines) == expected
