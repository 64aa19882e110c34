"""
交易 / 报价状态定义与合法转换表。

所有状态变化都必须经过 ensure_transition()，不允许在各处散落字符串比较。

交易状态机：
  created ──────────→ awaiting_seller        （购买 / 接受报价）
  awaiting_seller ──→ accepted               （卖家确认）
  accepted ─────────→ offer_sent             （卖家填写 Steam 交易报价号）
  offer_sent ───────→ completed              （买家确认收货）
  accepted ─────────→ completed              （漏掉了中间一步）
  created/awaiting_seller/accepted/offer_sent → cancelled | failed | expired
  awaiting_seller ──→ rejected               （卖家拒绝，管理操作）
"""

from __future__ import annotations

import enum
from typing import Dict, FrozenSet

from app.core.errors import PreconditionFailed


class TradeStatus(str, enum.Enum):
    CREATED = "created"
    AWAITING_SELLER = "awaiting_seller"
    ACCEPTED = "accepted"
    OFFER_SENT = "offer_sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TRADE_STATUSES


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COUNTERED = "countered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_TRADE_STATUSES: FrozenSet[TradeStatus] = frozenset({
    TradeStatus.CREATED,
    TradeStatus.AWAITING_SELLER,
    TradeStatus.ACCEPTED,
    TradeStatus.OFFER_SENT,
})

TERMINAL_TRADE_STATUSES: FrozenSet[TradeStatus] = frozenset(TradeStatus) - ACTIVE_TRADE_STATUSES

# 非完成的终止状态：都要退还买家冻结资金
RELEASE_STATUSES: FrozenSet[TradeStatus] = TERMINAL_TRADE_STATUSES - {TradeStatus.COMPLETED}

_ABORT = {TradeStatus.CANCELLED, TradeStatus.FAILED, TradeStatus.EXPIRED}

TRANSITIONS: Dict[TradeStatus, FrozenSet[TradeStatus]] = {
    TradeStatus.CREATED: frozenset({TradeStatus.AWAITING_SELLER} | _ABORT),
    TradeStatus.AWAITING_SELLER: frozenset({TradeStatus.ACCEPTED, TradeStatus.REJECTED} | _ABORT),
    TradeStatus.ACCEPTED: frozenset({TradeStatus.OFFER_SENT, TradeStatus.COMPLETED} | _ABORT),
    TradeStatus.OFFER_SENT: frozenset({TradeStatus.COMPLETED} | _ABORT),
    TradeStatus.COMPLETED: frozenset(),
    TradeStatus.CANCELLED: frozenset(),
    TradeStatus.FAILED: frozenset(),
    TradeStatus.REJECTED: frozenset(),
    TradeStatus.EXPIRED: frozenset(),
}


def sources_for(target: TradeStatus) -> FrozenSet[TradeStatus]:
    """能够转换到 target 的所有起始状态（转换表反查）"""
    return frozenset(src for src, dsts in TRANSITIONS.items() if target in dsts)


def can_transition(src: TradeStatus, dst: TradeStatus) -> bool:
    return dst in TRANSITIONS[TradeStatus(src)]


def ensure_transition(src: TradeStatus, dst: TradeStatus) -> None:
    """非法转换直接拒绝，不做静默修正"""
    src, dst = TradeStatus(src), TradeStatus(dst)
    if not can_transition(src, dst):
        if src.is_terminal:
            raise PreconditionFailed(
                f"交易已处于终止状态 {src.value}，不能再变更为 {dst.value}",
                code="trade_terminal",
            )
        raise PreconditionFailed(
            f"交易当前状态为 {src.value}，不能变更为 {dst.value}",
            code="illegal_transition",
        )
