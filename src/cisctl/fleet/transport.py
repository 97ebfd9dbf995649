"""Interfaces the orchestrator expects from the remote execution boundary."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol

from .models import InvocationSnapshot


class RemoteTransport(Protocol):
    """Submits one fan-out request to a named remote entry point."""

    @property
    def entry_point(self) -> str:
        """Name of the remote entry point (e.g. an SSM document)."""
        ...

    def send_command(
        self,
        targets: Sequence[str],
        parameters: Mapping[str, str],
        *,
        timeout_seconds: int,
    ) -> str:
        """Submit the request and return its correlation identifier."""
        ...

    def entry_point_exists(self) -> bool:
        """Return ``True`` when the entry point is known to exist."""
        ...

    def credentials_valid(self) -> bool:
        """Return ``True`` when the transport credentials were accepted."""
        ...


class StatusSource(Protocol):
    """Answers one non-blocking status query per target."""

    def get_invocation(
        self,
        command_id: str,
        target: str,
        *,
        timeout: float | None = None,
    ) -> InvocationSnapshot:
        """Return the current invocation snapshot; raise when unavailable.

        The query must give up (raising) once *timeout* seconds have passed.
        """
        ...


__all__ = ["RemoteTransport", "StatusSource"]
