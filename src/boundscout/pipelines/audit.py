"""Run audit log: what the localization run asked, got and decided."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One logged event."""

    timestamp: datetime
    kind: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SliceRecord:
    """A crop sent to the oracle during recursive refinement."""

    reference_name: str
    depth: int
    x: int
    y: int
    width: int
    height: int
    path: str | None = None


class AuditLog:
    """Append-only event log, mirrored to the module logger at DEBUG level.

    Kinds used by the pipelines: "api-call", "api-response", "refine", "align",
    "slice" and "error".
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._slices: list[SliceRecord] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    @property
    def slices(self) -> list[SliceRecord]:
        return list(self._slices)

    def add(self, kind: str, message: str, **data: Any) -> AuditEntry:
        entry = AuditEntry(timestamp=datetime.now(timezone.utc), kind=kind, message=message, data=data)
        self._entries.append(entry)
        LOG.debug("[%s] %s %s", kind, message, data or "")
        return entry

    def add_slice(self, record: SliceRecord) -> None:
        self._slices.append(record)
        self.add(
            "slice",
            f"Slice d{record.depth} for {record.reference_name}",
            **{k: v for k, v in asdict(record).items() if k != "reference_name"},
        )

    def clear(self) -> None:
        self._entries.clear()
        self._slices.clear()

    def by_kind(self, kind: str) -> list[AuditEntry]:
        return [e for e in self._entries if e.kind == kind]

    def between(self, start: datetime, end: datetime) -> list[AuditEntry]:
        return [e for e in self._entries if start <= e.timestamp <= end]

    def search(self, term: str) -> list[AuditEntry]:
        """Case-insensitive search over messages and serialized data."""
        needle = term.lower()
        return [
            e
            for e in self._entries
            if needle in e.message.lower() or needle in json.dumps(e.data, default=str).lower()
        ]

    def summary(self) -> dict[str, Any]:
        by_kind: dict[str, int] = {}
        for e in self._entries:
            by_kind[e.kind] = by_kind.get(e.kind, 0) + 1
        return {
            "total_entries": len(self._entries),
            "by_kind": by_kind,
            "api_calls": by_kind.get("api-call", 0),
            "errors": by_kind.get("error", 0),
            "slices": len(self._slices),
            "first": self._entries[0].timestamp.isoformat() if self._entries else None,
            "last": self._entries[-1].timestamp.isoformat() if self._entries else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "entries": [
                {
                    "timestamp": e.timestamp.isoformat(),
                    "kind": e.kind,
                    "message": e.message,
                    "data": e.data,
                }
                for e in self._entries
            ],
            "slices": [asdict(s) for s in self._slices],
        }

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2, default=str), encoding="utf-8")
