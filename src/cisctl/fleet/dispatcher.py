"""Submit one remediation batch to many targets without waiting for it."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from ..errors import DispatchError, PrerequisiteWarning
from ..logging import RunLog
from .models import DispatchHandle, DispatchOptions, DispatchRequest
from .transport import RemoteTransport

LOG_TAG = "dispatch"


class TargetDispatcher:
    """Validate requests and issue exactly one fan-out call per dispatch."""

    def __init__(
        self,
        transport: RemoteTransport,
        *,
        log: RunLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Store the transport and optional log sink."""
        self._transport = transport
        self._log = log
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def _emit(self, severity: str, message: str) -> None:
        if self._log is not None:
            self._log.emit(severity, LOG_TAG, message)

    def check_prerequisites(self) -> list[PrerequisiteWarning]:
        """Probe credentials and the entry point; problems become warnings."""
        warnings: list[PrerequisiteWarning] = []
        self._emit("INFO", "Checking prerequisites...")
        if not self._transport.credentials_valid():
            warnings.append(
                PrerequisiteWarning(
                    check="credentials",
                    message="Credential probe was inconclusive; continuing.",
                )
            )
        entry_point = self._transport.entry_point
        if not self._transport.entry_point_exists():
            warnings.append(
                PrerequisiteWarning(
                    check="entry-point",
                    message=(
                        f"Remote entry point '{entry_point}' not found. "
                        "You may need to create it first."
                    ),
                )
            )
        for warning in warnings:
            self._emit("WARN", warning.message)
        if not warnings:
            self._emit("SUCCESS", "Prerequisites check passed")
        return warnings

    def dispatch(
        self,
        group: str | int,
        targets: str | Iterable[str],
        options: DispatchOptions | None = None,
    ) -> DispatchHandle:
        """Validate operator input and submit it.

        Raises :class:`~cisctl.errors.ValidationError` before any remote
        contact when the input is invalid.
        """
        request = DispatchRequest.build(group, targets, options)
        return self.submit(request)

    def submit(self, request: DispatchRequest) -> DispatchHandle:
        """Submit an already validated *request* and return its handle."""
        warnings = self.check_prerequisites()
        parameters = request.parameters()
        self._emit("INFO", f"Executing CIS remediation on targets: {', '.join(request.targets)}")
        self._emit(
            "INFO",
            f"Group: {parameters['Group']}, Dry Run: {parameters['DryRun']}, "
            f"S3: s3://{parameters['S3Bucket']}/{parameters['S3KeyPrefix']}",
        )
        try:
            command_id = self._transport.send_command(
                request.targets,
                parameters,
                timeout_seconds=request.options.timeout_seconds,
            )
        except DispatchError as exc:
            self._emit("ERROR", f"Failed to send remediation command: {exc}")
            raise
        self._emit("SUCCESS", "Remediation command sent successfully")
        self._emit("INFO", f"Command ID: {command_id}")
        return DispatchHandle(
            command_id=command_id,
            targets=request.targets,
            group=request.group,
            entry_point=self._transport.entry_point,
            submitted_at=self._clock(),
            warnings=tuple(warnings),
        )


__all__ = ["TargetDispatcher"]
