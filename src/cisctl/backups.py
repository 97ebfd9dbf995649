"""Content snapshots for resources a control is about to mutate.

Backups are plain copies named ``<logical_name>.<YYYYMMDD_HHMMSS>.bak`` under
the backup root. Two snapshots of the same logical name within one second get
a sequence suffix (``<logical_name>.<YYYYMMDD_HHMMSS>.<n>.bak``) instead of
overwriting each other. A JSON index next to the copies remembers where each
snapshot came from so :meth:`BackupStore.restore` knows what to overwrite.

Nothing in this module prunes old backups; retention belongs to the caller.
"""
from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .logging import RunLog

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
INDEX_NAME = "backups.json"
_LOG_TAG = "backup"

_BACKUP_NAME_RE = re.compile(
    r"^(?P<name>.+)\.(?P<timestamp>\d{8}_\d{6})(?:\.(?P<seq>\d+))?\.bak$"
)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupIndexError(BackupError):
    """Raised when the backup index cannot be read or written."""


def logical_name_for(path: Path) -> str:
    """Return the default logical name for *path* (its file name)."""
    return path.name


def _normalise_name(value: str) -> str:
    normalised = value.strip()
    if not normalised or "/" in normalised:
        raise BackupError(f"Invalid backup logical name: {value!r}.")
    return normalised


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True, frozen=True)
class BackupRecord:
    """A snapshot of one resource taken before mutation."""

    logical_name: str
    timestamp: datetime
    location: Path
    source: Path | None = None
    sequence: int = 0
    size_bytes: int | None = None
    checksum: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Ordering key: timestamp first, then collision sequence."""
        return (self.timestamp, self.sequence)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        entry: dict[str, object] = {
            "name": self.logical_name,
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "sequence": self.sequence,
            "path": str(self.location),
        }
        if self.source is not None:
            entry["source"] = str(self.source)
        if self.size_bytes is not None:
            entry["size_bytes"] = self.size_bytes
        if self.checksum is not None:
            entry["checksum"] = {"algorithm": "sha256", "value": self.checksum}
        return entry


def parse_backup_name(filename: str) -> tuple[str, datetime, int] | None:
    """Split a backup file name into ``(logical_name, timestamp, sequence)``."""
    match = _BACKUP_NAME_RE.match(filename)
    if match is None:
        return None
    try:
        timestamp = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    sequence = int(match.group("seq") or 0)
    return match.group("name"), timestamp, sequence


@dataclass(slots=True)
class BackupStore:
    """Create and restore resource snapshots under ``root``."""

    root: Path
    log: RunLog | None = None
    clock: Callable[[], datetime] = datetime.now

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    @property
    def index(self) -> Path:
        """Return the path of the JSON index."""
        return self.root / INDEX_NAME

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read_index(self) -> dict[str, object]:
        """Return the parsed index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupIndexError(f"Backup index corrupted ({self.index}): {exc}") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise BackupIndexError(f"Failed to read backup index ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupIndexError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write_index(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{INDEX_NAME}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupIndexError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def _append_index(self, record: BackupRecord) -> None:
        data = self.read_index()
        backups = data.get("backups")
        updated: list[object] = list(backups) if isinstance(backups, list) else []
        updated.append(record.to_dict())
        self.write_index({"backups": updated})

    def _sources(self) -> dict[str, Path]:
        sources: dict[str, Path] = {}
        try:
            backups = self.read_index().get("backups", [])
        except BackupIndexError as exc:
            self._log("WARN", f"Ignoring backup index: {exc}")
            return sources
        if not isinstance(backups, list):
            return sources
        for entry in backups:
            if isinstance(entry, Mapping) and entry.get("source") and entry.get("path"):
                sources[Path(str(entry["path"])).name] = Path(str(entry["source"]))
        return sources

    def _log(self, severity: str, message: str) -> None:
        if self.log is not None:
            self.log.emit(severity, _LOG_TAG, message)

    # Public API ----------------------------------------------------
    def records(self, name: str | None = None) -> list[BackupRecord]:
        """Return backups on disk, oldest first, optionally for one logical name.

        An unreadable index only costs the recorded source paths; the copies
        themselves are still listed.
        """
        if not self.root.is_dir():
            return []
        wanted = _normalise_name(name) if name is not None else None
        sources = self._sources()
        found: list[BackupRecord] = []
        for path in self.root.iterdir():
            parsed = parse_backup_name(path.name)
            if parsed is None or not path.is_file():
                continue
            logical_name, timestamp, sequence = parsed
            if wanted is not None and logical_name != wanted:
                continue
            found.append(
                BackupRecord(
                    logical_name=logical_name,
                    timestamp=timestamp,
                    location=path,
                    source=sources.get(path.name),
                    sequence=sequence,
                    size_bytes=path.stat().st_size,
                )
            )
        found.sort(key=lambda record: (record.logical_name, *record.sort_key))
        return found

    def latest(self, name: str) -> BackupRecord | None:
        """Return the most recent backup for *name*."""
        matches = self.records(name)
        return max(matches, key=lambda record: record.sort_key) if matches else None

    def create(self, path: Path, name: str | None = None) -> BackupRecord | None:
        """Snapshot *path*; return ``None`` (logged) when it does not exist."""
        source = Path(path).expanduser()
        logical_name = _normalise_name(name or logical_name_for(source))
        if not source.is_file():
            self._log("WARN", f"Nothing to back up, {source} does not exist")
            return None
        self.ensure_root()
        timestamp = self.clock().replace(microsecond=0)
        stamp = timestamp.strftime(TIMESTAMP_FORMAT)
        sequence = 0
        destination = self.root / f"{logical_name}.{stamp}.bak"
        while destination.exists():
            sequence += 1
            destination = self.root / f"{logical_name}.{stamp}.{sequence}.bak"
        try:
            shutil.copy2(source, destination)
        except OSError as exc:
            raise BackupError(f"Failed to back up {source}: {exc}") from exc
        record = BackupRecord(
            logical_name=logical_name,
            timestamp=timestamp,
            location=destination,
            source=source,
            sequence=sequence,
            size_bytes=destination.stat().st_size,
            checksum=_sha256(destination),
        )
        self._append_index(record)
        self._log("INFO", f"Backup created: {destination}")
        return record

    def restore(self, name: str, destination: Path | None = None) -> Path | None:
        """Overwrite the live resource with the latest backup of *name*.

        Returns the restored path, or ``None`` (logged) when no backup exists
        or the live location is unknown.
        """
        record = self.latest(name)
        if record is None:
            self._log("WARN", f"No backup found for {name}")
            return None
        return self.restore_record(record, destination)

    def restore_record(self, record: BackupRecord, destination: Path | None = None) -> Path | None:
        """Copy *record* over *destination* (default: the path it was taken from)."""
        target = Path(destination).expanduser() if destination is not None else record.source
        if target is None:
            self._log("WARN", f"No restore destination recorded for {record.location.name}")
            return None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(record.location, target)
        except OSError as exc:
            self._log("WARN", f"Failed to restore {target} from {record.location}: {exc}")
            return None
        self._log("INFO", f"Restored {target} from backup: {record.location}")
        return target


__all__ = [
    "BackupError",
    "BackupIndexError",
    "BackupRecord",
    "BackupStore",
    "INDEX_NAME",
    "TIMESTAMP_FORMAT",
    "logical_name_for",
    "parse_backup_name",
]
