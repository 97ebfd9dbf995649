"""Wait for a dispatched batch to reach a terminal status on every target."""
from __future__ import annotations

import time
from collections.abc import Callable, Iterable

from ..errors import RunInterrupted, ValidationError
from ..interrupts import trap_interrupts
from ..logging import RunLog
from .models import (
    DEFAULT_TIMEOUT_SECONDS,
    BatchReport,
    DispatchHandle,
    TargetState,
    TargetStatus,
    parse_remote_status,
    parse_targets,
)
from .transport import StatusSource

LOG_TAG = "poll"
DEFAULT_INTERVAL_SECONDS = 10.0


class CompletionPoller:
    """Fixed-interval poller: one status query per non-terminal target per round."""

    def __init__(
        self,
        source: StatusSource,
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        log: RunLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Store the status source and timing collaborators."""
        if interval <= 0:
            raise ValidationError(f"Polling interval must be positive, got {interval}.")
        self._source = source
        self._interval = float(interval)
        self._timeout = float(timeout)
        self._log = log
        self._sleep = sleep
        self._clock = clock

    def _emit(self, severity: str, message: str) -> None:
        if self._log is not None:
            self._log.emit(severity, LOG_TAG, message)

    def _probe(self, command_id: str, status: TargetStatus, timeout: float) -> TargetStatus:
        target = status.target
        try:
            snapshot = self._source.get_invocation(command_id, target, timeout=timeout)
        except (RunInterrupted, KeyboardInterrupt):
            raise
        except Exception as exc:
            self._emit("WARN", f"Status query for {target} failed: {exc}; retrying next round")
            return status
        state = parse_remote_status(snapshot.status)
        if state is None:
            self._emit(
                "WARN",
                f"Unknown status '{snapshot.status}' for {target}; treating as in progress",
            )
            state = TargetState.IN_PROGRESS
        updated = status.advance(
            state,
            detail=snapshot.details,
            stdout=snapshot.stdout,
            stderr=snapshot.stderr,
        )
        if updated.is_terminal and not status.is_terminal:
            if updated.state is TargetState.SUCCESS:
                self._emit("SUCCESS", f"Command completed on target {target}")
            else:
                self._emit("ERROR", f"Command failed on target {target}: {updated.state.value}")
        else:
            self._emit("DEBUG", f"Target {target}: {updated.state.value}")
        return updated

    def wait(
        self,
        handle: DispatchHandle,
        targets: str | Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> BatchReport:
        """Poll until every target is terminal, *timeout* elapses or the wait is interrupted.

        Targets still running when the timeout expires are reported as
        ``TIMED_OUT`` with ``local_timeout`` set; the remote work itself is not
        cancelled. An interrupt returns the partial report with
        ``interrupted`` set. Each status query is bounded by the time left in
        the wait.
        """
        selected = parse_targets(targets) if targets is not None else handle.targets
        limit = float(timeout) if timeout is not None else self._timeout
        if limit <= 0:
            raise ValidationError(f"Timeout must be a positive number of seconds, got {limit}.")
        statuses: dict[str, TargetStatus] = {target: TargetStatus(target) for target in selected}
        rounds = 0
        interrupted = False
        start = self._clock()
        self._emit("INFO", "Waiting for command completion...")
        try:
            with trap_interrupts():
                while self._clock() - start < limit:
                    rounds += 1
                    for target, status in statuses.items():
                        if status.is_terminal:
                            continue
                        remaining = limit - (self._clock() - start)
                        if remaining <= 0:
                            break
                        statuses[target] = self._probe(handle.command_id, status, remaining)
                    if all(status.is_terminal for status in statuses.values()):
                        break
                    remaining = limit - (self._clock() - start)
                    if remaining <= 0:
                        break
                    self._sleep(min(self._interval, remaining))
        except (KeyboardInterrupt, RunInterrupted):
            interrupted = True
            self._emit("WARN", "Wait interrupted; returning partial results")

        timed_out = False
        pending = [target for target, status in statuses.items() if not status.is_terminal]
        if pending and not interrupted:
            timed_out = True
            self._emit("WARN", "Timeout waiting for command completion")
            for target in pending:
                statuses[target] = statuses[target].expire()
        return BatchReport(
            handle=handle,
            statuses=dict(statuses),
            rounds=rounds,
            timed_out=timed_out,
            interrupted=interrupted,
            elapsed_seconds=self._clock() - start,
        )


__all__ = ["CompletionPoller", "DEFAULT_INTERVAL_SECONDS"]
