"""AWS Systems Manager transport driven through the ``aws`` CLI."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import DispatchError
from ..fleet.models import InvocationSnapshot

DEFAULT_DOCUMENT_NAME = "CIS-Remediation-AL2"
DEFAULT_CALL_TIMEOUT_SECONDS = 60.0


class SsmError(RuntimeError):
    """Raised when an ``aws`` CLI call fails or returns unusable output."""

    def __init__(self, message: str, *, output: str = "") -> None:
        """Store the message and the raw CLI output."""
        super().__init__(message)
        self.output = output


@dataclass(slots=True)
class SsmProvider:
    """Send remediation commands to instances and query their invocations."""

    document_name: str = DEFAULT_DOCUMENT_NAME
    aws_bin: str = "aws"
    profile: str | None = None
    region: str | None = None
    call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS

    @property
    def entry_point(self) -> str:
        """Return the SSM document the remediation is run through."""
        return self.document_name

    def base_command(self) -> list[str]:
        """Return the ``aws`` invocation prefix including profile and region."""
        args = [self.aws_bin]
        if self.profile:
            args.extend(["--profile", self.profile])
        if self.region:
            args.extend(["--region", self.region])
        return args

    def send_command(
        self,
        targets: Sequence[str],
        parameters: Mapping[str, str],
        *,
        timeout_seconds: int,
    ) -> str:
        """Issue one ``ssm send-command`` for all *targets* and return its id."""
        encoded = json.dumps({key: [str(value)] for key, value in parameters.items()})
        args = [
            "ssm",
            "send-command",
            "--document-name",
            self.document_name,
            "--instance-ids",
            *targets,
            "--parameters",
            encoded,
            "--timeout-seconds",
            str(timeout_seconds),
            "--output",
            "json",
        ]
        try:
            result = self._aws(args)
        except SsmError as exc:
            raise DispatchError(f"Failed to send SSM command: {exc}", detail=exc.output) from exc
        try:
            payload = json.loads(result.stdout or "")
            command_id = payload["Command"]["CommandId"]
        except (ValueError, KeyError, TypeError) as exc:
            raise DispatchError(
                "Failed to extract command ID from response",
                detail=result.stdout,
            ) from exc
        if not command_id:
            raise DispatchError("Failed to extract command ID from response", detail=result.stdout)
        return str(command_id)

    def get_invocation(
        self,
        command_id: str,
        target: str,
        *,
        timeout: float | None = None,
    ) -> InvocationSnapshot:
        """Return the current invocation status of *command_id* on *target*.

        *timeout* caps this one query below ``call_timeout``; a query that
        outlives it raises :class:`SsmError`.
        """
        result = self._aws(
            [
                "ssm",
                "get-command-invocation",
                "--command-id",
                command_id,
                "--instance-id",
                target,
                "--output",
                "json",
            ],
            timeout=timeout,
        )
        try:
            payload = json.loads(result.stdout or "")
        except ValueError as exc:
            raise SsmError(f"Unparseable invocation for {target}", output=result.stdout) from exc
        if not isinstance(payload, Mapping) or "Status" not in payload:
            raise SsmError(f"Invocation for {target} has no status", output=result.stdout)
        return InvocationSnapshot(
            status=str(payload["Status"]),
            details=payload.get("StatusDetails"),
            stdout=payload.get("StandardOutputContent") or "",
            stderr=payload.get("StandardErrorContent") or "",
        )

    def entry_point_exists(self) -> bool:
        """Return ``True`` when ``ssm describe-document`` finds the document."""
        return self._succeeds(["ssm", "describe-document", "--name", self.document_name])

    def credentials_valid(self) -> bool:
        """Return ``True`` when ``sts get-caller-identity`` succeeds."""
        return self._succeeds(["sts", "get-caller-identity"])

    # ------------------------------------------------------------------
    def _succeeds(self, args: Sequence[str]) -> bool:
        try:
            self._aws(args)
        except SsmError:
            return False
        return True

    def _aws(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [*self.base_command(), *args]
        limit = self.call_timeout if timeout is None else min(timeout, self.call_timeout)
        return self._run_command(
            command,
            error_prefix=f"aws {' '.join(args[:2])}",
            timeout=max(limit, 0.1),
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise SsmError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SsmError(f"{error_prefix} timed out after {timeout:g}s") from exc
        if result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SsmError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                output=(stderr + stdout).strip(),
            )
        return result


__all__ = ["DEFAULT_CALL_TIMEOUT_SECONDS", "DEFAULT_DOCUMENT_NAME", "SsmError", "SsmProvider"]
