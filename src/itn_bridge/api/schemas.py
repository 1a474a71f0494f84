from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProcessItnResponse(BaseModel):
    status: str
    state: str
    transaction_id: Optional[str] = None
    donation_id: Optional[int] = None
    gift_donation_id: Optional[int] = None
    amount_donated: Optional[Decimal] = None
    total_points: Optional[int] = None
    biome_total_donated: Optional[Decimal] = None
    granted_cards: list[int] = []


class CancelSubscriptionRequest(BaseModel):
    token: str = Field(min_length=1)


class CancelSubscriptionResponse(BaseModel):
    status: str
    data: Optional[Any] = None
