"""Audit entries for administrative mutations.

Persisting audit entries is the job of an external collaborator; this module
only builds the entries and hands them to a sink. The default sink writes them
to the ``bankadmin.audit`` logger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger("bankadmin.audit")


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _display(name: str) -> str:
    return name.replace("_", " ").title()


@dataclass(frozen=True)
class AuditEntry:
    shard_key: str
    action: AuditAction
    table_name: str
    record_id: str
    changes_summary: str
    actor: Optional[str] = None
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=_utcnow)


def summarize_changes(
    action: AuditAction,
    table_name: str,
    old_data: Optional[Mapping[str, Any]] = None,
    new_data: Optional[Mapping[str, Any]] = None,
) -> str:
    """Describe a mutation in one human readable line."""

    table = _display(table_name)
    if action is AuditAction.CREATE:
        return f"Created new {table} record"
    if action is AuditAction.DELETE:
        return f"Deleted {table} record"

    if old_data is not None and new_data is not None:
        changes = [
            f'{_display(key)}: "{old_data.get(key)}" → "{value}"'
            for key, value in new_data.items()
            if old_data.get(key) != value
        ]
        if changes:
            return f"Updated {table}: {', '.join(changes)}"
    return f"Updated {table} record"


def log_entry(entry: AuditEntry) -> None:
    logger.info(
        "[%s] %s %s/%s by %s: %s",
        entry.shard_key,
        entry.action.value,
        entry.table_name,
        entry.record_id,
        entry.actor or "system",
        entry.changes_summary,
    )


AuditSink = Callable[[AuditEntry], None]


class AuditTrail:
    """Build audit entries and forward them to a sink without ever failing the caller."""

    def __init__(self, sink: AuditSink | None = None) -> None:
        self._sink = sink or log_entry

    def record(
        self,
        shard_key: str,
        action: AuditAction,
        table_name: str,
        record_id: str,
        *,
        actor: Optional[str] = None,
        old_data: Optional[Mapping[str, Any]] = None,
        new_data: Optional[Mapping[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            shard_key=shard_key,
            action=action,
            table_name=table_name,
            record_id=record_id,
            changes_summary=summarize_changes(action, table_name, old_data, new_data),
            actor=actor,
            old_data=dict(old_data) if old_data is not None else None,
            new_data=dict(new_data) if new_data is not None else None,
        )
        try:
            self._sink(entry)
        except Exception:
            logger.exception("Failed to record audit entry for %s/%s on shard %s", table_name, record_id, shard_key)
        return entry


__all__ = ["AuditAction", "AuditEntry", "AuditSink", "AuditTrail", "log_entry", "summarize_changes"]
