from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.db import models
from app.orders.enums import HistoryEvent, OrderState


def append(
    db: Session,
    order_id: str,
    from_state: Optional[OrderState],
    to_state: OrderState,
    actor_id: Optional[str],
    note: Optional[str] = None,
    event: HistoryEvent = HistoryEvent.ORDER_STATE,
    at: Optional[datetime] = None,
) -> models.StateHistoryEntry:
    """Append one immutable history row; it is written with the caller's transaction."""
    entry = models.StateHistoryEntry(
        order_id=order_id,
        event=event,
        previous_state=from_state,
        new_state=to_state,
        actor_id=actor_id,
        note=note,
        created_at=at or datetime.utcnow(),
    )
    db.add(entry)
    db.flush()
    return entry


def history(db: Session, order_id: str) -> list[models.StateHistoryEntry]:
    return (
        db.query(models.StateHistoryEntry)
        .filter(models.StateHistoryEntry.order_id == order_id)
        .order_by(models.StateHistoryEntry.id.asc())
        .all()
    )
