"""
钱包账本

资金流转（全部在调用方的数据库事务内完成，不自行提交）：
  hold_funds  开单 / 接受报价时从买家余额扣除成交价，记一条 pending 的 purchase 流水
  settle      交易完成：purchase → completed，卖家入账 price - fee，写 sale + fee 两条流水
  refund      交易以非完成状态终止：退回买家，purchase → cancelled，写一条 refund 流水

余额扣减使用条件更新（WHERE balance >= amount），并发下不会扣成负数。
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import PreconditionFailed, ValidationError
from app.models.db_models import Trade, Transaction, User

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
SUPPORTED_CURRENCIES = ("USD", "GEL")


def to_money(value: Any, *, field: str = "price") -> Decimal:
    """把任意输入转换为两位小数的金额，必须为正"""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} 不是合法的金额: {value!r}", code="invalid_amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} 必须大于 0", code="invalid_amount")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_currency(currency: str) -> str:
    cur = (currency or "USD").upper()
    if cur not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"不支持的币种: {currency}", code="invalid_currency")
    return cur


def compute_fee(price: Decimal) -> Decimal:
    rate = Decimal(str(settings.platform_fee_rate))
    return (Decimal(price) * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def _balance_column(currency: str):
    return User.balance_gel if normalize_currency(currency) == "GEL" else User.balance_usd


async def hold_funds(
    db: AsyncSession,
    *,
    user_id: int,
    amount: Decimal,
    currency: str,
    item_id: int,
    trade_id: int,
) -> Transaction:
    col = _balance_column(currency)
    res = await db.execute(
        update(User)
        .where(User.id == user_id, col >= amount)
        .values({col.key: col - amount})
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise PreconditionFailed(
            f"余额不足，需要 {amount} {currency}", code="insufficient_funds"
        )

    tx = Transaction(
        user_id=user_id,
        type="purchase",
        amount=-amount,
        currency=currency,
        item_id=item_id,
        trade_id=trade_id,
        status="pending",
    )
    db.add(tx)
    await db.flush()
    logger.info("hold_funds: user=%s  trade=%s  %s %s", user_id, trade_id, amount, currency)
    return tx


async def _credit(db: AsyncSession, user_id: int, amount: Decimal, currency: str) -> None:
    col = _balance_column(currency)
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values({col.key: col + amount})
        .execution_options(synchronize_session=False)
    )


async def _close_purchase(db: AsyncSession, trade: Trade, status: str, now: datetime) -> int:
    res = await db.execute(
        update(Transaction)
        .where(
            Transaction.trade_id == trade.id,
            Transaction.type == "purchase",
            Transaction.status == "pending",
        )
        .values(status=status, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


async def settle(db: AsyncSession, trade: Trade, now: datetime) -> Decimal:
    """交易完成结算，返回卖家实际到账金额"""
    payout = trade.price - trade.fee_amount
    await _close_purchase(db, trade, "completed", now)
    await _credit(db, trade.seller_id, payout, trade.currency)
    db.add_all([
        Transaction(
            user_id=trade.seller_id, type="sale", amount=payout, currency=trade.currency,
            item_id=trade.item_id, trade_id=trade.id, status="completed", completed_at=now,
        ),
        Transaction(
            user_id=trade.seller_id, type="fee", amount=-trade.fee_amount, currency=trade.currency,
            item_id=trade.item_id, trade_id=trade.id, status="completed", completed_at=now,
        ),
    ])
    await db.flush()
    logger.info(
        "settle: trade=%s  seller=%s  payout=%s  fee=%s %s",
        trade.id, trade.seller_id, payout, trade.fee_amount, trade.currency,
    )
    return payout


async def refund(db: AsyncSession, trade: Trade, now: datetime) -> None:
    """退回买家冻结资金；没有 pending 流水（已退过）时不重复退款"""
    closed = await _close_purchase(db, trade, "cancelled", now)
    if closed == 0:
        logger.warning("refund: trade=%s 没有待结算的 purchase 流水，跳过", trade.id)
        return
    await _credit(db, trade.buyer_id, trade.price, trade.currency)
    db.add(Transaction(
        user_id=trade.buyer_id, type="refund", amount=trade.price, currency=trade.currency,
        item_id=trade.item_id, trade_id=trade.id, status="completed", completed_at=now,
    ))
    await db.flush()
    logger.info("refund: trade=%s  buyer=%s  %s %s", trade.id, trade.buyer_id, trade.price, trade.currency)
