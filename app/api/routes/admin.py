"""
管理与对账 API

GET  /api/admin/status                   系统状态（清理任务、对账标记、缓存、交易数量）
POST /api/admin/cleanup                  手动执行清理（可指定 user_id）
POST /api/admin/expire                   手动执行过期扫描
POST /api/admin/reconciliation/clear     清空对账标记
POST /api/admin/trades/{trade_id}/status  管理员强制变更交易状态（遵守状态转换表）
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func, select

from app.api.deps import current_admin_id, get_trade_service
from app.api.routes._errors import handle_market_error
from app.core.errors import MarketError
from app.models.db_models import Item, Trade
from app.models.status import TradeStatus
from app.schemas.trade import ExpireResult, SweepResult, TradeOut
from app.services.cleanup import cleanup_state, run_expire_job, run_sweep_job
from app.services.trades import TradeService, clear_reconciliation, reconciliation_state

router = APIRouter()

_START_TIME = datetime.now(timezone.utc)


class StatusUpdateRequest(BaseModel):
    status: TradeStatus
    note: Optional[str] = None


# ── System Status ────────────────────────────────────────────────────────

@router.get("/status")
async def system_status(
    _: int = Depends(current_admin_id),
    svc: TradeService = Depends(get_trade_service),
):
    """清理任务状态、对账标记、各状态交易数量"""
    now = datetime.now(timezone.utc)
    uptime_seconds = int((now - _START_TIME).total_seconds())

    async with svc.session_factory() as db:
        rows = (await db.execute(select(Trade.status, func.count()).group_by(Trade.status))).all()
        listed = (await db.execute(select(func.count()).select_from(Item).where(Item.is_listed.is_(True)))).scalar()

    trade_counts = {status.value: count for status, count in rows}
    flagged = list(reconciliation_state["flagged"])

    return {
        "status": "degraded" if flagged or cleanup_state["status"] == "error" else "healthy",
        "uptime_seconds": uptime_seconds,
        "timestamp": now.isoformat(),
        "cache_enabled": svc.cache.enabled,
        "inventory_check_enabled": svc.inventory_checker is not None,
        "cleanup": cleanup_state,
        "reconciliation": {"flagged": flagged, "count": len(flagged)},
        "database": {
            "listed_items": listed or 0,
            "trades_by_status": trade_counts,
        },
    }


# ── Cleanup ──────────────────────────────────────────────────────────────

@router.post("/cleanup", response_model=SweepResult)
async def trigger_cleanup(
    user_id: Optional[int] = Query(None),
    _: int = Depends(current_admin_id),
    svc: TradeService = Depends(get_trade_service),
):
    """下架范围内所有饰品并取消所有未终止交易（退款）"""
    result = await run_sweep_job(svc, user_id)
    return result or SweepResult()


@router.post("/expire", response_model=ExpireResult)
async def trigger_expire(
    _: int = Depends(current_admin_id),
    svc: TradeService = Depends(get_trade_service),
):
    result = await run_expire_job(svc)
    return result or ExpireResult()


@router.post("/reconciliation/clear")
async def clear_reconciliation_flags(_: int = Depends(current_admin_id)):
    return {"cleared": clear_reconciliation()}


# ── Trade status override ────────────────────────────────────────────────

@router.post("/trades/{trade_id}/status", response_model=TradeOut)
async def update_trade_status(
    trade_id: int,
    body: StatusUpdateRequest,
    admin_id: int = Depends(current_admin_id),
    svc: TradeService = Depends(get_trade_service),
):
    try:
        return await svc.update_status(trade_id, body.status, body.note, actor_id=admin_id)
    except MarketError as e:
        handle_market_error(e)
