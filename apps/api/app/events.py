from __future__ import annotations

from typing import Any

from app.context import get_actor_id, get_correlation_id
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Stamp request context onto the envelope and fan it out to in-process subscribers."""

    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    actor_id = get_actor_id()
    if actor_id is not None and "actor_id" not in meta:
        meta["actor_id"] = actor_id
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
