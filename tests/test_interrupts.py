"""Tests for signal trapping around runs and waits."""
from __future__ import annotations

import signal

import pytest

from cisctl.errors import RunInterrupted
from cisctl.interrupts import shield_interrupts, trap_interrupts


def test_trap_turns_sigterm_into_run_interrupted() -> None:
    """SIGTERM inside the block raises with the signal recorded."""
    with pytest.raises(RunInterrupted) as excinfo:
        with trap_interrupts():
            signal.raise_signal(signal.SIGTERM)

    assert excinfo.value.signum == signal.SIGTERM
    assert "SIGTERM" in str(excinfo.value)


def test_trap_restores_previous_handlers() -> None:
    """Handlers are put back once the block exits."""
    before = signal.getsignal(signal.SIGINT)

    with trap_interrupts():
        assert signal.getsignal(signal.SIGINT) is not before

    assert signal.getsignal(signal.SIGINT) is before


def test_shield_ignores_signals() -> None:
    """Signals raised while shielded are dropped."""
    with trap_interrupts():
        with shield_interrupts():
            signal.raise_signal(signal.SIGINT)
        assert signal.getsignal(signal.SIGINT) is not signal.SIG_IGN


def test_run_interrupted_without_signal() -> None:
    """A keyboard interrupt maps to an error without a signal number."""
    exc = RunInterrupted()

    assert exc.signum is None
    assert exc.report is None
    assert str(exc) == "Interrupted by KeyboardInterrupt"
