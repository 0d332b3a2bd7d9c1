"""Append-only consolidation history.

Every attempted address of every run is one JSON line in
``consolidations.jsonl``. Full session snapshots (metadata plus the run's
records) go to ``sessions/<session_id>.json`` for export. Storage problems
are logged, never raised: an unreadable history reads as empty.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import ConsolidationRecord, utc_now_iso


logger = logging.getLogger(__name__)


class RecordStore:
    def __init__(self, path: Path, sessions_dir: Optional[Path] = None) -> None:
        self.path = path
        self.sessions_dir = sessions_dir or path.parent / "sessions"

    # ---- mutator ----

    def append(self, record: ConsolidationRecord) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(record)) + "\n")
        except OSError as e:
            logger.error("Failed to log consolidation for %s: %s", record.source_address, e)

    # ---- reads ----

    def all_records(self) -> List[ConsolidationRecord]:
        try:
            with self.path.open(encoding="utf-8") as f:
                return [ConsolidationRecord.from_dict(json.loads(line)) for line in f if line.strip()]
        except FileNotFoundError:
            return []
        except (OSError, ValueError, TypeError) as e:
            logger.error("Failed to read consolidations from %s: %s", self.path, e)
            return []

    def records_for(self, source_address: str) -> List[ConsolidationRecord]:
        return [r for r in self.all_records() if r.source_address == source_address]

    def successful(self) -> List[ConsolidationRecord]:
        return [r for r in self.all_records() if r.status == "success"]

    def recent(self, count: int) -> List[ConsolidationRecord]:
        if count <= 0:
            return []
        return self.all_records()[-count:]

    def has_been_consolidated(self, source_address: str, destination_address: Optional[str] = None) -> bool:
        successes = [r for r in self.records_for(source_address) if r.status == "success"]
        if destination_address is None:
            return bool(successes)
        return any(r.destination_address == destination_address for r in successes)

    def latest_for(self, source_address: str) -> Optional[ConsolidationRecord]:
        records = self.records_for(source_address)
        return records[-1] if records else None

    # ---- session snapshots ----

    def save_session(self, records: Sequence[ConsolidationRecord], session_id: Optional[str] = None,
                     extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Write a full snapshot of one run and return it.

        An existing snapshot is never overwritten; a taken id gets a ``-N``
        suffix and the returned ``session_id`` is the one actually used.
        """
        base_id = session_id or time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
        snapshot: Dict[str, Any] = {
            "session_id": base_id,
            "timestamp": utc_now_iso(),
            "total_addresses": len(records),
            "successful": sum(1 for r in records if r.status == "success"),
            "failed": sum(1 for r in records if r.status == "failed"),
            "skipped": sum(1 for r in records if r.skipped),
            "total_solutions_consolidated": sum(r.solutions_consolidated or 0 for r in records),
        }
        snapshot.update(extra or {})
        snapshot["results"] = [asdict(r) for r in records]
        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
            suffix = 0
            while True:
                snapshot["session_id"] = base_id if not suffix else f"{base_id}-{suffix}"
                try:
                    with (self.sessions_dir / f"{snapshot['session_id']}.json").open("x", encoding="utf-8") as f:
                        f.write(json.dumps(snapshot, indent=2))
                    break
                except FileExistsError:
                    suffix += 1
        except OSError as e:
            logger.error("Failed to save session results %s: %s", snapshot["session_id"], e)
        return snapshot

    def sessions(self) -> List[Dict[str, Any]]:
        if not self.sessions_dir.is_dir():
            return []
        snapshots = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            try:
                snapshots.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable session snapshot %s: %s", path, e)
        return snapshots
