"""Pydantic models for wishlist items, alerts and price updates."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

Priority = Literal["high", "medium", "low"]


class WishlistItemCreate(BaseModel):
    product_id: str = Field(min_length=1, max_length=128)
    product_name: str = ""
    price: Decimal = Field(gt=0)
    alert_on_price_drop: bool = True
    alert_on_restock: bool = True
    priority: Priority = "medium"


class WishlistItemOut(BaseModel):
    id: int
    product_id: str
    product_name: str
    price_when_added: Decimal
    current_price: Decimal
    alert_on_price_drop: bool
    alert_on_restock: bool
    priority: str
    added_at: datetime

    model_config = {"from_attributes": True}


class WishlistAlertOut(BaseModel):
    id: int
    wishlist_item_id: int | None
    type: str
    message: str
    discount: int | None
    expires_at: datetime | None
    created_at: datetime
    read_at: datetime | None

    model_config = {"from_attributes": True}


class WishlistStats(BaseModel):
    total_items: int
    total_value: Decimal
    potential_savings: Decimal
    items_on_sale: int
    average_days_in_wishlist: int


class PriceUpdate(BaseModel):
    """One catalogue change, as pushed onto the sweep queue."""

    product_id: str
    new_price: Decimal | None = None
    restocked: bool = False


class SweepResult(BaseModel):
    alerts_created: int = 0
    price_drops: int = 0
    restocks: int = 0
    errors: int = 0


class PurchaseRequest(BaseModel):
    order_id: str = Field(min_length=1)
    product_ids: list[str]


class PurchaseXPResult(BaseModel):
    items_purchased: int
    base_xp: int
    bonus_xp: int
    completed_wishlist: bool
    message: str
