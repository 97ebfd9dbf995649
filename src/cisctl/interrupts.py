"""Signal handling shared by the runner and the completion poller."""
from __future__ import annotations

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

from .errors import RunInterrupted

TRAPPED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


@contextmanager
def trap_interrupts() -> Iterator[None]:
    """Turn SIGINT/SIGTERM into :class:`RunInterrupted` for the enclosed block.

    Signal handlers can only be installed from the main thread; elsewhere the
    block runs unchanged.
    """
    if not _in_main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        raise RunInterrupted(signum)

    previous = {sig: signal.signal(sig, _handler) for sig in TRAPPED_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@contextmanager
def shield_interrupts() -> Iterator[None]:
    """Ignore SIGINT/SIGTERM while rollback and cleanup run."""
    if not _in_main_thread():
        yield
        return
    previous = {sig: signal.signal(sig, signal.SIG_IGN) for sig in TRAPPED_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


__all__ = ["TRAPPED_SIGNALS", "shield_interrupts", "trap_interrupts"]
