"""Rule selection: resolve groups and glob patterns into ordered control lists."""
from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Literal

from ..errors import ValidationError
from .models import GROUP_VALUES, ControlUnit

GroupSelector = int | Literal["all"]

GROUP_SELECTOR_VALUES: tuple[str, ...] = (*(str(group) for group in GROUP_VALUES), "all")


def parse_group_selector(value: str | int) -> GroupSelector:
    """Return ``1``..``6`` or ``"all"``; raise :class:`ValidationError` otherwise."""
    text = str(value).strip().lower()
    if text == "all":
        return "all"
    if text in GROUP_SELECTOR_VALUES:
        return int(text)
    raise ValidationError(f"Invalid group: {value}. Must be 1-6 or 'all'.")


def parse_patterns(text: str) -> list[str]:
    """Parse newline-delimited glob patterns, ignoring blanks and ``#`` comments."""
    patterns: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if line:
            patterns.append(line)
    return patterns


def read_patterns(path: Path) -> list[str]:
    """Read a selection file; a missing file is a validation error."""
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Cannot read controls file {path}: {exc}") from exc
    return parse_patterns(text)


class ControlCatalog:
    """Immutable-by-convention registry of control units keyed by identifier."""

    def __init__(self, units: Iterable[ControlUnit] = ()) -> None:
        """Register *units*; identifiers must be unique."""
        self._units: dict[str, ControlUnit] = {}
        for unit in units:
            self.register(unit)

    def register(self, unit: ControlUnit) -> None:
        """Add *unit* to the catalog."""
        if unit.id in self._units:
            raise ValueError(f"Duplicate control identifier: {unit.id}")
        self._units[unit.id] = unit

    def get(self, control_id: str) -> ControlUnit | None:
        """Return the unit for *control_id* if registered."""
        return self._units.get(control_id)

    def __len__(self) -> int:
        """Return the number of registered units."""
        return len(self._units)

    def __iter__(self) -> Iterator[ControlUnit]:
        """Iterate over all units in ascending identifier order."""
        return iter(sorted(self._units.values(), key=lambda unit: unit.sort_key))

    def units(self, group: GroupSelector = "all") -> list[ControlUnit]:
        """Return units in *group* (or every unit), in ascending identifier order."""
        return [unit for unit in self if group == "all" or unit.group == group]

    def select(
        self,
        group: GroupSelector = "all",
        patterns: Sequence[str] | None = None,
    ) -> list[ControlUnit]:
        """Resolve *group* and optional glob *patterns* into the ordered unit list.

        With no patterns every unit of the group is selected.
        """
        candidates = self.units(group)
        if not patterns:
            return candidates
        return [
            unit
            for unit in candidates
            if any(fnmatch.fnmatchcase(unit.id, pattern) for pattern in patterns)
        ]


__all__ = [
    "ControlCatalog",
    "GROUP_SELECTOR_VALUES",
    "GroupSelector",
    "parse_group_selector",
    "parse_patterns",
    "read_patterns",
]
