import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.authorization import ADJUST_STOCK, MANAGE_OFFICE_SUPPLIES
from ..auth.security import require_permissions
from ..db import get_db
from ..errors import WorkflowError
from ..models.models import Item, OfficeSupply, User
from ..schemas.requests import StockAdjustment
from ..services.stock import adjust_stock
from ..services.stock_monitor import is_below_reorder_point, low_stock_query
from .common import http_error


router = APIRouter(prefix="/items", tags=["items"])


def _serialize_stock(entity) -> Dict[str, Any]:
    return {
        "id": str(entity.id),
        "code": entity.code,
        "name": entity.name,
        "unit": entity.unit,
        "stock": entity.stock,
        "min_stock": entity.min_stock,
        "below_reorder_point": is_below_reorder_point(entity),
    }


@router.get("/low-stock")
def list_low_stock(
    kind: str = Query(default="item", pattern="^(item|office_supply)$"),
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions(ADJUST_STOCK, MANAGE_OFFICE_SUPPLIES)),
):
    model = Item if kind == "item" else OfficeSupply
    return [_serialize_stock(entity) for entity in low_stock_query(db, model).all()]


@router.post("/{item_id}/adjust-stock")
def adjust_item_stock(
    item_id: uuid.UUID,
    payload: StockAdjustment,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions(ADJUST_STOCK)),
):
    item = db.get(Item, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    try:
        mutation = adjust_stock(
            db,
            item,
            payload.delta,
            reference_type="manual",
            user_id=user.id,
            note=payload.note,
        )
    except WorkflowError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    db.refresh(item)
    data = _serialize_stock(item)
    data["mutation"] = {
        "id": str(mutation.id),
        "direction": mutation.direction,
        "quantity": mutation.quantity,
        "stock_before": mutation.stock_before,
        "stock_after": mutation.stock_after,
    }
    return data
