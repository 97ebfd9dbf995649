"""Control units, the rule catalog and built-in rule content."""

from __future__ import annotations

from .builtin import default_catalog, modprobe_disable_control, package_service_control
from .catalog import (
    GROUP_SELECTOR_VALUES,
    ControlCatalog,
    GroupSelector,
    parse_group_selector,
    parse_patterns,
    read_patterns,
)
from .host import HostCommandError, HostCommands
from .models import (
    GROUP_VALUES,
    ControlPhase,
    ControlResult,
    ControlUnit,
    RemediationOutcome,
    Resource,
    RunReport,
    control_sort_key,
)

__all__ = [
    "ControlCatalog",
    "ControlPhase",
    "ControlResult",
    "ControlUnit",
    "GROUP_SELECTOR_VALUES",
    "GROUP_VALUES",
    "GroupSelector",
    "HostCommandError",
    "HostCommands",
    "RemediationOutcome",
    "Resource",
    "RunReport",
    "control_sort_key",
    "default_catalog",
    "modprobe_disable_control",
    "package_service_control",
    "parse_group_selector",
    "parse_patterns",
    "read_patterns",
]
