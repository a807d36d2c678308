"""Append-only audit sink kept in process memory."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping


@dataclass(frozen=True, slots=True)
class AuditRecord:
    event: str
    payload: Mapping[str, Any]
    at: datetime


@dataclass(slots=True)
class InMemoryAuditLog:
    """Audit sink keeping records in a list."""

    records: list[AuditRecord] = field(default_factory=list)

    def write(self, event: str, payload: Mapping[str, Any], *, at: datetime) -> None:
        self.records.append(AuditRecord(event=event, payload=dict(payload), at=at))

    def events(self, event: str) -> list[AuditRecord]:
        return [record for record in self.records if record.event == event]


__all__ = ["AuditRecord", "InMemoryAuditLog"]
