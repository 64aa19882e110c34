"""
对账 / 清理任务

sweep_cleanup(user_id=None)
  全量（或单个用户范围内）下架所有在架饰品，并把所有未终止交易逐笔取消：
  退款、释放报价。每笔交易单独事务 + 条件更新，和线上流量并发执行也安全；
  第二次执行不会再修改任何数据。
  全量执行结束后清空对账标记（所有未终止交易都已处理）。

expire_stale()
  pending 报价超过 expires_at → expired
  awaiting_seller 交易超过卖家确认期限 → expired（退款）

定时任务包装（run_*）捕获所有异常，结果和错误记录在 cleanup_state，
由 /api/admin/status 展示。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import or_, select, update

from app.models.db_models import Item, Trade, utcnow
from app.models.status import ACTIVE_TRADE_STATUSES, TradeStatus
from app.schemas.trade import ExpireResult, SweepResult
from app.services.offers import expire_pending_offers
from app.services.trades import TradeService, clear_reconciliation

logger = logging.getLogger(__name__)

SWEEP_NOTE = "cancelled by cleanup sweep"

cleanup_state: Dict[str, Any] = {
    "status": "idle",        # idle | running | error
    "last_error": None,
    "last_sweep_at": None,
    "last_sweep_result": None,
    "last_expire_at": None,
    "last_expire_result": None,
}


def _record_error(job: str, e: Exception) -> None:
    cleanup_state["status"] = "error"
    cleanup_state["last_error"] = f"{job}: {e}"


async def sweep_cleanup(user_id: Optional[int] = None, *, trades: TradeService) -> SweepResult:
    now = utcnow()

    async with trades.session_factory() as db, db.begin():
        stmt = update(Item).where(Item.is_listed.is_(True))
        if user_id is not None:
            stmt = stmt.where(Item.owner_id == user_id)
        res = await db.execute(
            stmt.values(is_listed=False, updated_at=now).execution_options(synchronize_session=False)
        )
        items_updated = res.rowcount

    async with trades.session_factory() as db:
        stmt = select(Trade.id).where(Trade.status.in_(ACTIVE_TRADE_STATUSES)).order_by(Trade.id)
        if user_id is not None:
            stmt = stmt.where(or_(Trade.buyer_id == user_id, Trade.seller_id == user_id))
        trade_ids = list((await db.execute(stmt)).scalars().all())

    trades_updated = 0
    for trade_id in trade_ids:
        if await trades.terminate(trade_id, TradeStatus.CANCELLED, note=SWEEP_NOTE, now=now):
            trades_updated += 1

    if user_id is None:
        clear_reconciliation()

    result = SweepResult(items_updated=items_updated, trades_updated=trades_updated)
    logger.info(
        "sweep_cleanup: scope=%s  items_updated=%d  trades_updated=%d",
        user_id if user_id is not None else "all", items_updated, trades_updated,
    )
    return result


async def expire_stale(*, trades: TradeService) -> ExpireResult:
    now = utcnow()

    async with trades.session_factory() as db, db.begin():
        offers_expired = await expire_pending_offers(db, now)

    async with trades.session_factory() as db:
        trade_ids = list((await db.execute(
            select(Trade.id).where(
                Trade.status == TradeStatus.AWAITING_SELLER,
                Trade.expires_at.is_not(None),
                Trade.expires_at <= now,
            ).order_by(Trade.id)
        )).scalars().all())

    trades_expired = 0
    for trade_id in trade_ids:
        if await trades.terminate(
            trade_id, TradeStatus.EXPIRED, note="卖家未在期限内确认",
            expected_status=TradeStatus.AWAITING_SELLER, now=now,
        ):
            trades_expired += 1

    result = ExpireResult(offers_expired=offers_expired, trades_expired=trades_expired)
    if offers_expired or trades_expired:
        logger.info("expire_stale: offers=%d  trades=%d", offers_expired, trades_expired)
    return result


# ── 定时任务入口 ────────────────────────────────────────────────────────────

async def run_sweep_job(trades: TradeService, user_id: Optional[int] = None) -> Optional[SweepResult]:
    cleanup_state["status"] = "running"
    try:
        result = await sweep_cleanup(user_id, trades=trades)
    except Exception as e:
        logger.exception("sweep_cleanup 任务失败")
        _record_error("sweep_cleanup", e)
        return None
    cleanup_state["last_sweep_at"] = datetime.now(timezone.utc).isoformat()
    cleanup_state["last_sweep_result"] = result.model_dump()
    cleanup_state["status"] = "idle"
    return result


async def run_expire_job(trades: TradeService) -> Optional[ExpireResult]:
    cleanup_state["status"] = "running"
    try:
        result = await expire_stale(trades=trades)
    except Exception as e:
        logger.exception("expire_stale 任务失败")
        _record_error("expire_stale", e)
        return None
    cleanup_state["last_expire_at"] = datetime.now(timezone.utc).isoformat()
    cleanup_state["last_expire_result"] = result.model_dump()
    cleanup_state["status"] = "idle"
    return result
