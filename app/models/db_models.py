"""
数据库 ORM 模型

表设计：
  user                  平台用户（Steam 身份、双币种钱包、交易链接）
  item                  上架的饰品（asset_id 标识 Steam 中唯一的一件实物）
  offer                 针对某件上架饰品的报价 / 还价
  trade                 一笔成交的完整生命周期（状态机见 app/models/status.py）
  trade_status_history  交易状态变更日志（有序，只追加）
  wallet_transaction    钱包流水（冻结 / 结算 / 手续费 / 退款）
  notification          站内通知

不变量由部分唯一索引兜底：
  uq_item_listed_asset   同一 asset_id 同时最多一条 is_listed=1 的记录
  uq_trade_active_item   同一 item 同时最多一笔未终止的交易
  uq_trade_active_asset  同一 asset_id 同时最多一笔未终止的交易
  uq_offer_accepted_item 同一 item 同时最多一个 accepted 报价
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.status import ACTIVE_TRADE_STATUSES, OfferStatus, TradeStatus

Money = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _status_enum(enum_cls):
    # 以字符串值落库，Python 侧始终是枚举
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


_ACTIVE_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_TRADE_STATUSES, key=lambda s: s.value))
)


class User(Base):
    __tablename__ = "user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    steam_id: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    balance_usd: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    balance_gel: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)

    trade_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    trade_url_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Item(Base):
    __tablename__ = "item"
    __table_args__ = (
        Index(
            "uq_item_listed_asset", "asset_id", unique=True,
            sqlite_where=text("is_listed = 1"),
            postgresql_where=text("is_listed"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True, nullable=False)

    market_hash_name: Mapped[str] = mapped_column(String, nullable=False)
    wear: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    price: Mapped[Decimal] = mapped_column(Money, nullable=False)          # USD
    price_gel: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency_rate: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)

    is_listed: Mapped[bool] = mapped_column(Boolean, default=True, index=True, nullable=False)
    allow_offers: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # 接受报价后的软锁定
    reserved_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("user.id"), nullable=True)
    reserved_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Offer(Base):
    __tablename__ = "offer"
    __table_args__ = (
        Index(
            "uq_offer_accepted_item", "item_id", unique=True,
            sqlite_where=text("status = 'accepted'"),
            postgresql_where=text("status = 'accepted'"),
        ),
        Index("ix_offer_item_status", "item_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("item.id"), nullable=False)

    # buyer_id 始终是潜在买家；proposed_by_id 是提出这一轮价格的人（还价时为卖家）
    buyer_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True, nullable=False)
    proposed_by_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    message: Mapped[str] = mapped_column(Text, default="")

    status: Mapped[OfferStatus] = mapped_column(
        _status_enum(OfferStatus), default=OfferStatus.PENDING, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)

    is_counter: Mapped[bool] = mapped_column(Boolean, default=False)
    original_offer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("offer.id"), nullable=True)
    counter_offer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("offer.id"), nullable=True)
    trade_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trade.id"), nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Trade(Base):
    """
    一笔交易。资金在开单时冻结（直接从买家余额扣除并记一条 pending 流水），
    完成时结算给卖家（扣 2.5% 平台费），其余终止状态全额退回。
    """

    __tablename__ = "trade"
    __table_args__ = (
        Index(
            "uq_trade_active_item", "item_id", unique=True,
            sqlite_where=text(_ACTIVE_SQL),
            postgresql_where=text(_ACTIVE_SQL),
        ),
        Index(
            "uq_trade_active_asset", "asset_id", unique=True,
            sqlite_where=text(_ACTIVE_SQL),
            postgresql_where=text(_ACTIVE_SQL),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("item.id"), index=True, nullable=False)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True, nullable=False)
    seller_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True, nullable=False)
    offer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    status: Mapped[TradeStatus] = mapped_column(
        _status_enum(TradeStatus), default=TradeStatus.CREATED, index=True, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # 开单时的快照，防止 item 在交易过程中被改动
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    item_name: Mapped[str] = mapped_column(String, nullable=False)

    trade_offer_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    history: Mapped[List["TradeStatusHistory"]] = relationship(
        order_by="TradeStatusHistory.id",
        lazy="selectin",
    )


class TradeStatusHistory(Base):
    __tablename__ = "trade_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[int] = mapped_column(ForeignKey("trade.id"), index=True, nullable=False)
    status: Mapped[TradeStatus] = mapped_column(_status_enum(TradeStatus), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Transaction(Base):
    """钱包流水。amount 带符号：买家付款为负，卖家收款为正。"""

    __tablename__ = "wallet_transaction"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)     # purchase | sale | fee | refund
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    trade_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | completed | cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Notification(Base):
    __tablename__ = "notification"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)     # trade | offer | system
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
