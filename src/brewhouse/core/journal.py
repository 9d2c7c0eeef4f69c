"""Transaction journal persisted under ``var/brewhouse/journal``.

One JSON document per transaction. It is rewritten (temp file + rename)
after every recorded filesystem change so that an interrupted run can be
rolled back, or an interrupted receipt finalisation rolled forward, by
:func:`brewhouse.core.transaction.reconcile`.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from brewhouse.core.models import InstalledPath, Receipt

RUNNING = "running"
FINALIZING = "finalizing"
FATAL = "fatal"


@dataclass
class JournalEntry:
    """Changes made by one node, and the receipt action it will finalise with."""

    name: str
    op: str
    paths: List[InstalledPath] = field(default_factory=list)
    complete: bool = False
    receipt: Receipt | None = None
    remove_receipt: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "op": self.op,
            "paths": [p.to_dict() for p in self.paths],
            "complete": self.complete,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "remove_receipt": self.remove_receipt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JournalEntry:
        receipt = data.get("receipt")
        return cls(
            name=data["name"],
            op=data["op"],
            paths=[InstalledPath.from_dict(p) for p in data.get("paths", [])],
            complete=bool(data.get("complete")),
            receipt=Receipt.from_dict(receipt) if receipt else None,
            remove_receipt=bool(data.get("remove_receipt")),
        )


class Journal:
    """Append-only record of a transaction's completed steps."""

    def __init__(self, path: Path, tx_id: str, op: str) -> None:
        self.path = path
        self.id = tx_id
        self.op = op
        self.state = RUNNING
        self.started = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.entries: List[JournalEntry] = []
        self.inconsistent_paths: List[str] = []

    @classmethod
    def create(cls, journal_dir: Path, tx_id: str, op: str) -> Journal:
        journal_dir.mkdir(parents=True, exist_ok=True)
        journal = cls(journal_dir / f"{tx_id}.json", tx_id, op)
        journal.save()
        return journal

    @classmethod
    def load(cls, path: Path) -> Journal:
        data = json.loads(path.read_text())
        journal = cls(path, data["id"], data["op"])
        journal.state = data.get("state", RUNNING)
        journal.started = data.get("started", journal.started)
        journal.entries = [JournalEntry.from_dict(e) for e in data.get("entries", [])]
        journal.inconsistent_paths = list(data.get("inconsistent_paths", []))
        return journal

    @staticmethod
    def pending(journal_dir: Path) -> List[Path]:
        if not journal_dir.is_dir():
            return []
        return sorted(journal_dir.glob("*.json"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "op": self.op,
            "state": self.state,
            "started": self.started,
            "entries": [e.to_dict() for e in self.entries],
            "inconsistent_paths": list(self.inconsistent_paths),
        }

    def save(self) -> None:
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True))
        os.replace(tmp, self.path)

    def begin(self, name: str, op: str) -> JournalEntry:
        entry = JournalEntry(name=name, op=op)
        self.entries.append(entry)
        self.save()
        return entry

    def record(self, entry: JournalEntry, path: InstalledPath) -> None:
        entry.paths.append(path)
        self.save()

    def complete(self, entry: JournalEntry, receipt: Receipt | None, remove_receipt: bool = False) -> None:
        entry.complete = True
        entry.receipt = receipt
        entry.remove_receipt = remove_receipt
        self.save()

    def discard(self, entry: JournalEntry) -> None:
        """Forget a node whose partial commit was already reverted."""
        self.entries.remove(entry)
        self.save()

    def set_state(self, state: str, inconsistent_paths: List[str] | None = None) -> None:
        self.state = state
        if inconsistent_paths is not None:
            self.inconsistent_paths = sorted(set(inconsistent_paths))
        self.save()

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)
