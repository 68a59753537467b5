"""
Stock adjustments for items and office supplies.
Every change writes a StockMutation row; the Stock Monitor picks up the new
quantity on flush.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from ..errors import InsufficientStock, InvalidRequestData
from ..models.models import StockMutation
from .stock_monitor import TRACKED_ENTITIES


logger = structlog.get_logger(__name__)


def adjust_stock(
    db: Session,
    entity,
    delta: int,
    *,
    direction: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    note: Optional[str] = None,
) -> StockMutation:
    """
    Apply ``delta`` to the entity's stock and record the mutation.

    Does not commit; the caller owns the transaction.

    Raises:
        InsufficientStock: if the result would be negative
    """
    if type(entity) not in TRACKED_ENTITIES:
        raise InvalidRequestData(f"Stock is not tracked for {type(entity).__name__}")
    if delta == 0:
        raise InvalidRequestData("Stock adjustment must not be zero")

    before = entity.stock or 0
    after = before + delta
    if after < 0:
        raise InsufficientStock(
            f"Insufficient stock for {entity.name}: available {before}, requested {-delta}"
        )

    entity.stock = after
    mutation = StockMutation(
        entity_type=TRACKED_ENTITIES[type(entity)],
        entity_id=entity.id,
        direction=direction or ("in" if delta > 0 else "out"),
        quantity=abs(delta),
        stock_before=before,
        stock_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
        note=note,
    )
    db.add(mutation)
    db.flush()

    logger.info(
        "stock_adjusted",
        entity_type=mutation.entity_type,
        entity_id=str(entity.id),
        before=before,
        after=after,
        reference_type=reference_type,
    )
    return mutation


def set_stock(db: Session, entity, quantity: int, *, user_id=None, note: Optional[str] = None) -> Optional[StockMutation]:
    """Stock-opname style correction to an absolute quantity."""
    if quantity < 0:
        raise InvalidRequestData("Stock cannot be negative")
    delta = quantity - (entity.stock or 0)
    if delta == 0:
        return None
    return adjust_stock(db, entity, delta, direction="adjust", reference_type="manual", user_id=user_id, note=note)

