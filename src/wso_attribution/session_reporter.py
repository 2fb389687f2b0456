"""wso_attribution.session_reporter

Per-run counters, the persisted unresolved-entry skip-list, the printed
summary and the JSON run report.

Skip-list file: a JSON array of {"identifier", "reason", "timestamp"}
objects. It is read once at start (unless --force; then at the first
append) and appended to one entry at a time, each append rewriting the file
atomically. An unparseable file is moved aside, never overwritten.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_SKIP_LIST_PATH = Path("./artifacts/unresolved_skip_list.json")


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class SessionCounters:
    processed: int = 0
    completed: int = 0
    completed_without_metadata: int = 0
    failed: int = 0
    skipped: int = 0
    updated: int = 0
    errors: int = 0
    safe_stop_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Skip-list
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UnresolvedEntry:
    identifier: str
    reason: str
    timestamp: str


class SkipList:
    """Append-only JSON skip-list of identifiers known to be unresolvable.

    Read once (load(), or lazily on first use) and kept in memory; every
    append rewrites the whole file from that list. A file that cannot be
    parsed is never overwritten: the first append moves it aside to
    <name>.<timestamp>.corrupt.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._entries: list[dict[str, Any]] | None = None
        self._identifiers: set[str] = set()
        self._unreadable = False

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> list[dict[str, Any]]:
        self._unreadable = False
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("Skip-list %s unreadable (%s); treating as empty.", self._path, exc)
            self._unreadable = True
            return []
        if not isinstance(data, list):
            log.warning("Skip-list %s is not a JSON array; treating as empty.", self._path)
            self._unreadable = True
            return []
        return [e for e in data if isinstance(e, dict) and e.get("identifier")]

    def load(self) -> None:
        self._entries = self._read()
        self._identifiers = {str(e["identifier"]) for e in self._entries}

    def _loaded(self) -> list[dict[str, Any]]:
        if self._entries is None:
            self.load()
        return self._entries  # type: ignore[return-value]

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._identifiers

    def __len__(self) -> int:
        return len(self._identifiers)

    def entries(self) -> list[UnresolvedEntry]:
        return [
            UnresolvedEntry(str(e["identifier"]), str(e.get("reason", "")), str(e.get("timestamp", "")))
            for e in self._loaded()
        ]

    def _quarantine(self) -> Path:
        stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S")
        target = self._path.with_name(f"{self._path.name}.{stamp}.corrupt")
        os.replace(self._path, target)
        self._unreadable = False
        log.warning("Skip-list %s could not be parsed; moved aside to %s", self._path, target)
        return target

    def append(self, entry: UnresolvedEntry) -> None:
        entries = self._loaded()
        if entry.identifier in self._identifiers:
            return
        if self._unreadable and self._path.exists():
            self._quarantine()
        entries.append(asdict(entry))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)
        self._identifiers.add(entry.identifier)


# ---------------------------------------------------------------------------
# Reporter
# ---------------------------------------------------------------------------

class SessionReporter:
    """Counters + skip-list bookkeeping for one run.

    With force=True the skip-list is not consulted, though newly unresolved
    entries are still appended. With persist=False (dry runs) nothing is
    written to the skip-list.
    """

    def __init__(
        self,
        skip_list: SkipList | None,
        force: bool = False,
        persist: bool = True,
    ) -> None:
        self.skip_list = skip_list
        self.force = force
        self.persist = persist
        self.counters = SessionCounters()
        self.unresolved: list[UnresolvedEntry] = []

    def start(self) -> None:
        if self.skip_list is not None and not self.force:
            self.skip_list.load()
            log.info("Skip-list loaded: %d known unresolved entries", len(self.skip_list))

    def should_skip(self, identifier: str) -> bool:
        if self.force or self.skip_list is None:
            return False
        if identifier in self.skip_list:
            self.counters.skipped += 1
            return True
        return False

    def mark_unresolved(self, identifier: str, outcome: str, details: str = "") -> None:
        reason = f"{outcome}: {details}" if details else outcome
        entry = UnresolvedEntry(identifier, reason, datetime.utcnow().isoformat())
        self.unresolved.append(entry)
        self.counters.failed += 1
        self.counters.warnings.append(f"{identifier}: {reason}")
        if self.persist and self.skip_list is not None:
            self.skip_list.append(entry)

    def record_error(self, identifier: str, message: str) -> None:
        self.counters.errors += 1
        self.counters.warnings.append(f"{identifier}: ERROR {message}")

    def safe_stop(self, identifier: str, reason: str) -> None:
        """The external source stopped answering; the run ends at identifier."""
        self.counters.safe_stop_reason = reason
        self.counters.warnings.append(f"{identifier}: external source safe stop: {reason}")

    def build_summary(self, title: str, dry_run: bool) -> str:
        c = self.counters
        lines = [
            "=" * 60,
            title,
            f"  dry_run: {dry_run}",
            "=" * 60,
            f"Processed:                    {c.processed}",
            f"  completed:                  {c.completed}",
            f"  completed without metadata: {c.completed_without_metadata}",
            f"  failed:                     {c.failed}",
            f"  skipped:                    {c.skipped}",
            f"Records updated:              {c.updated}",
            f"Errors:                       {c.errors}",
        ]
        if self.unresolved:
            lines.append(f"New unresolved entries:       {len(self.unresolved)}")
        if c.safe_stop_reason:
            lines.append(f"Stopped early (safe stop):    {c.safe_stop_reason}")
        if c.warnings:
            lines.append(f"\nWarnings ({len(c.warnings)}):")
            for w in c.warnings[:20]:
                lines.append(f"  {w}")
            if len(c.warnings) > 20:
                lines.append(f"  ... and {len(c.warnings) - 20} more")
        lines.append("=" * 60)
        return "\n".join(lines)

    def to_report(self) -> dict[str, Any]:
        return {
            **self.counters.to_dict(),
            "unresolved": [asdict(e) for e in self.unresolved[:50]],
            "unresolved_count": len(self.unresolved),
        }


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    inputs: dict[str, Any],
    counters: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **inputs,
        "counters": counters,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
