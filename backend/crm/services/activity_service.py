# Overview: Append-only activity trail for sales, repairs and stock movements.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import ActivityEvent
from crm.time_utils import utcnow
"""
Activity trail invariants

- Append-only; existing events are never updated or deleted.
- Events are written inside the same DB transaction as the change they record.
- occurred_at is business time.
"""


def append_activity(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    store_id: int | None = None,
    actor_user_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
) -> ActivityEvent:
    ev = ActivityEvent(
        store_id=store_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        occurred_at=occurred_at or utcnow(),
        note=note[:255] if note else None,
    )
    db.session.add(ev)
    return ev


def list_activity(*, entity_type: str, entity_id: int) -> list[ActivityEvent]:
    return (
        db.session.query(ActivityEvent)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(ActivityEvent.occurred_at.asc(), ActivityEvent.id.asc())
        .all()
    )
