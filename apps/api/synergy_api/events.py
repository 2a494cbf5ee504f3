from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from synergy_api.context import get_actor_user_id, get_correlation_id
from synergy_api.core.events import event_bus

published_events: list[dict[str, Any]] = []

# Payload key naming the record an event is about, per CRM kind. Kinds written through the
# entity store use entity_id.
_ENTITY_ID_KEYS = {
    "crm.deal": "deal_id",
    "crm.synergy": "synergy_id",
    "crm.area_of_activity": "area_id",
    "crm.contact_email": "email_id",
}


def build_envelope(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    entity_type = entity_type_of(event_type)
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "entity_type": entity_type,
        "entity_id": payload.get(_ENTITY_ID_KEYS.get(entity_type or "", "entity_id")),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": get_actor_user_id(),
        "payload": payload,
    }


def entity_type_of(event_type: str) -> str | None:
    """``crm.synergy.created`` -> ``crm.synergy``; names outside the crm namespace have none."""
    namespace, _, rest = event_type.partition(".")
    kind, _, action = rest.partition(".")
    if namespace != "crm" or not kind or not action:
        return None
    return f"crm.{kind}"


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def emit(event_type: str, **payload: Any) -> None:
    publish(build_envelope(event_type, {key: _serialize(value) for key, value in payload.items()}))


def _serialize(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    return value
