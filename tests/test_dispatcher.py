"""Tests for request validation and the target dispatcher."""
from __future__ import annotations

import io
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime

import pytest

from cisctl.errors import DispatchError, ValidationError
from cisctl.fleet import DispatchOptions, DispatchRequest, TargetDispatcher, parse_targets
from cisctl.logging import RunLog

NOW = datetime(2024, 5, 1, 10, 15, 2, tzinfo=UTC)


class FakeTransport:
    """Record fan-out calls instead of contacting a remote service."""

    def __init__(
        self,
        *,
        command_id: str = "cmd-123",
        credentials: bool = True,
        document: bool = True,
        error: DispatchError | None = None,
    ) -> None:
        self.command_id = command_id
        self.credentials = credentials
        self.document = document
        self.error = error
        self.sent: list[tuple[tuple[str, ...], dict[str, str], int]] = []

    @property
    def entry_point(self) -> str:
        return "CIS-Remediation-AL2"

    def send_command(
        self,
        targets: Sequence[str],
        parameters: Mapping[str, str],
        *,
        timeout_seconds: int,
    ) -> str:
        self.sent.append((tuple(targets), dict(parameters), timeout_seconds))
        if self.error is not None:
            raise self.error
        return self.command_id

    def entry_point_exists(self) -> bool:
        return self.document

    def credentials_valid(self) -> bool:
        return self.credentials


def _dispatcher(transport: FakeTransport, stream: io.StringIO) -> TargetDispatcher:
    return TargetDispatcher(transport, log=RunLog(None, stream=stream), clock=lambda: NOW)


def test_dispatch_sends_single_request() -> None:
    """All targets go out in one call with the documented parameters."""
    transport = FakeTransport()
    stream = io.StringIO()

    handle = _dispatcher(transport, stream).dispatch(
        "1",
        "i-0abc, i-0def",
        DispatchOptions(dry_run=True, log_level="debug", timeout_seconds=900),
    )

    assert handle.command_id == "cmd-123"
    assert handle.targets == ("i-0abc", "i-0def")
    assert handle.group == 1
    assert handle.entry_point == "CIS-Remediation-AL2"
    assert handle.submitted_at == NOW
    assert handle.warnings == ()
    assert transport.sent == [
        (
            ("i-0abc", "i-0def"),
            {
                "Group": "1",
                "S3Bucket": "trust-dev-team2",
                "S3KeyPrefix": "vapt/setup/cis-scripts",
                "DryRun": "true",
                "LogLevel": "DEBUG",
            },
            900,
        )
    ]
    output = stream.getvalue()
    assert "Checking prerequisites..." in output
    assert "Prerequisites check passed" in output
    assert "Executing CIS remediation on targets: i-0abc, i-0def" in output
    assert "Remediation command sent successfully" in output
    assert "Command ID: cmd-123" in output


def test_empty_target_list_rejected_before_remote_contact() -> None:
    """Blank target lists fail validation and nothing is sent or logged."""
    transport = FakeTransport()
    stream = io.StringIO()

    with pytest.raises(ValidationError):
        _dispatcher(transport, stream).dispatch("1", " , ")

    assert transport.sent == []
    assert stream.getvalue() == ""


def test_invalid_group_rejected_before_remote_contact() -> None:
    """Groups outside 1-6 and ``all`` are rejected."""
    transport = FakeTransport()
    stream = io.StringIO()

    with pytest.raises(ValidationError) as excinfo:
        _dispatcher(transport, stream).dispatch("7", "i-0abc")

    assert "Invalid group: 7" in str(excinfo.value)
    assert transport.sent == []


def test_prerequisite_failures_are_warnings() -> None:
    """A missing document and bad credentials still dispatch."""
    transport = FakeTransport(credentials=False, document=False)
    stream = io.StringIO()

    handle = _dispatcher(transport, stream).dispatch("all", ["i-0abc"])

    assert [warning.check for warning in handle.warnings] == ["credentials", "entry-point"]
    assert len(transport.sent) == 1
    assert transport.sent[0][1]["Group"] == "all"
    output = stream.getvalue()
    assert "Remote entry point 'CIS-Remediation-AL2' not found" in output
    assert "Prerequisites check passed" not in output


def test_transport_failure_is_logged_and_reraised() -> None:
    """Rejected submissions surface the transport's error."""
    transport = FakeTransport(error=DispatchError("Failed to send SSM command", detail="denied"))
    stream = io.StringIO()

    with pytest.raises(DispatchError) as excinfo:
        _dispatcher(transport, stream).dispatch("4", "i-0abc")

    assert excinfo.value.detail == "denied"
    assert "Failed to send remediation command: Failed to send SSM command" in stream.getvalue()


def test_parse_targets_deduplicates_in_order() -> None:
    """Whitespace is trimmed, blanks dropped and duplicates collapsed."""
    assert parse_targets(" i-1 ,i-2,, i-1 ") == ("i-1", "i-2")
    assert parse_targets(["i-3", " i-3"]) == ("i-3",)


@pytest.mark.parametrize(
    "options",
    [
        DispatchOptions(log_level="TRACE"),
        DispatchOptions(timeout_seconds=0),
        DispatchOptions(artifact_bucket="  "),
    ],
)
def test_invalid_options_rejected(options: DispatchOptions) -> None:
    """Options are validated along with group and targets."""
    with pytest.raises(ValidationError):
        DispatchRequest.build("1", "i-0abc", options)


def test_request_normalises_options() -> None:
    """Level names and prefixes are normalised."""
    request = DispatchRequest.build(
        2,
        "i-0abc",
        DispatchOptions(log_level="warning", artifact_bucket=" b ", artifact_prefix="/p/q/"),
    )

    assert request.parameters() == {
        "Group": "2",
        "S3Bucket": "b",
        "S3KeyPrefix": "p/q",
        "DryRun": "false",
        "LogLevel": "WARN",
    }
