"""Journal sinks for decision logs and calibration history.

The storage format is the sink's business. The engine only calls
``append(entry)`` with a JSON-serializable mapping and never lets a sink
failure break a request.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)


class JournalSink(Protocol):
    def append(self, entry: Dict[str, Any]) -> None:
        ...


class NullJournal:
    """Discards everything."""

    def append(self, entry: Dict[str, Any]) -> None:
        return None


class MemoryJournal:
    """Keeps entries in a list; handy for tests and embedding."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self.entries.append(dict(entry))

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries if e.get("kind") == kind]


class JsonlJournal:
    """Appends one JSON document per line; concurrent appends are serialized."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, entry: Dict[str, Any]) -> None:
        line = json.dumps(entry, ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping corrupt journal line {line_no} in {self.path}: {e}")
        return entries


def journal_entry(kind: str, **fields: Any) -> Dict[str, Any]:
    entry = {"kind": kind, "at": datetime.now(timezone.utc).isoformat()}
    entry.update(fields)
    return entry


def safe_append(sink: Optional[JournalSink], entry: Dict[str, Any]) -> bool:
    """Append without ever raising into the caller."""
    if sink is None:
        return False
    try:
        sink.append(entry)
        return True
    except Exception as e:
        logger.error(f"Journal append failed for {entry.get('kind')}: {e}")
        return False
