from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ItemRequestLineIn(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)


class ItemRequestCreate(BaseModel):
    department_id: Optional[str] = None
    request_date: Optional[date] = None
    notes: Optional[str] = None
    submit: bool = True
    items: List[ItemRequestLineIn] = Field(min_length=1)


class OfficeRequestLineIn(BaseModel):
    supply_id: str
    quantity: int = Field(gt=0)


class OfficeRequestCreate(BaseModel):
    department_id: Optional[str] = None
    request_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[OfficeRequestLineIn] = Field(min_length=1)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class CompleteRequest(BaseModel):
    # line id -> quantity handed over; omitted lines use the default quantity
    fulfilled: Dict[str, int] = Field(default_factory=dict)

    @field_validator("fulfilled")
    @classmethod
    def _non_negative(cls, v: Dict[str, int]) -> Dict[str, int]:
        if any(q < 0 for q in v.values()):
            raise ValueError("fulfilled quantities cannot be negative")
        return v


class StockAdjustment(BaseModel):
    delta: int
    note: Optional[str] = None

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must not be zero")
        return v
