"""Fan remediation batches out to many targets and collect the outcome."""
from __future__ import annotations

from .aggregator import aggregate, serialize_summary, summarize
from .dispatcher import TargetDispatcher
from .models import (
    BatchReport,
    BatchSummary,
    DispatchHandle,
    DispatchOptions,
    DispatchRequest,
    InvocationSnapshot,
    OverallStatus,
    TargetState,
    TargetStatus,
    TargetSummary,
    parse_targets,
)
from .poller import CompletionPoller
from .transport import RemoteTransport, StatusSource

__all__ = [
    "BatchReport",
    "BatchSummary",
    "CompletionPoller",
    "DispatchHandle",
    "DispatchOptions",
    "DispatchRequest",
    "InvocationSnapshot",
    "OverallStatus",
    "RemoteTransport",
    "StatusSource",
    "TargetDispatcher",
    "TargetState",
    "TargetStatus",
    "TargetSummary",
    "aggregate",
    "parse_targets",
    "serialize_summary",
    "summarize",
]
