"""交易核心对外输出的 Pydantic 模型（API 响应 + Redis 投影）"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.status import OfferStatus, TradeStatus


class ItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    asset_id: str
    owner_id: int
    market_hash_name: str
    wear: Optional[str] = None
    image_url: Optional[str] = None
    price: Decimal
    price_gel: Decimal
    currency_rate: Decimal
    is_listed: bool
    allow_offers: bool
    reserved_by_id: Optional[int] = None
    reserved_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


class OfferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_id: int
    buyer_id: int
    proposed_by_id: int
    amount: Decimal
    currency: str
    message: str = ""
    status: OfferStatus
    expires_at: datetime
    is_counter: bool = False
    original_offer_id: Optional[int] = None
    counter_offer_id: Optional[int] = None
    trade_id: Optional[int] = None
    decline_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class TradeHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: TradeStatus
    note: Optional[str] = None
    actor_id: Optional[int] = None
    created_at: Optional[datetime] = None


class TradeOut(BaseModel):
    """单笔交易的完整投影，同时作为 Redis 缓存内容"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    item_id: int
    buyer_id: int
    seller_id: int
    offer_id: Optional[int] = None
    price: Decimal
    currency: str
    fee_amount: Decimal
    status: TradeStatus
    version: int
    asset_id: str
    item_name: str
    trade_offer_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    history: List[TradeHistoryOut] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


class TradeStatusEvent(BaseModel):
    """trade:status:changed 频道上的消息体"""

    trade_id: int
    old_status: Optional[TradeStatus] = None
    new_status: TradeStatus
    version: int
    buyer_id: Optional[int] = None
    seller_id: Optional[int] = None
    timestamp: datetime


class SweepResult(BaseModel):
    items_updated: int = 0
    trades_updated: int = 0


class ExpireResult(BaseModel):
    offers_expired: int = 0
    trades_expired: int = 0


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    title: str
    message: str
    link: Optional[str] = None
    read: bool = False
    created_at: Optional[datetime] = None


class NotificationPage(BaseModel):
    notifications: List[NotificationOut] = Field(default_factory=list)
    total: int = 0
    unread_count: int = 0
    limit: int = 20
    offset: int = 0
