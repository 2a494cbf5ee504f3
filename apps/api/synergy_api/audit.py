from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from synergy_api.context import get_actor_user_id, get_correlation_id

audit_entries: list[dict[str, Any]] = []

# Bookkeeping columns change on every write and are left out of changed_fields.
_UNTRACKED_FIELDS = frozenset({"updated_at"})


def record(
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    actor_user_id: str | None = None,
    correlation_id: str | None = None,
) -> None:
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id or get_actor_user_id(),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "changed_fields": changed_fields(before, after),
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
    ]


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    """Fields present in both snapshots whose values differ."""
    if before is None or after is None:
        return []
    keys = (before.keys() & after.keys()) - _UNTRACKED_FIELDS
    return sorted(key for key in keys if before.get(key) != after.get(key))
