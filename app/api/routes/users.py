"""
用户 API

PUT  /api/users/me/trade-url            设置 Steam 交易链接（30 天有效）
GET  /api/users/me/notifications        站内通知（分页，可只看未读）
POST /api/users/me/notifications/read   标记已读（不传 ids 即全部）
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.api.deps import current_user_id, get_notifier, get_user_service
from app.api.routes._errors import handle_market_error
from app.core.errors import MarketError
from app.schemas.trade import NotificationPage
from app.services.notifications import Notifier
from app.services.users import UserService

router = APIRouter()


class TradeUrlRequest(BaseModel):
    trade_url: str


class MarkReadRequest(BaseModel):
    ids: Optional[List[int]] = None


@router.put("/me/trade-url")
async def set_trade_url_api(
    body: TradeUrlRequest,
    user_id: int = Depends(current_user_id),
    svc: UserService = Depends(get_user_service),
):
    try:
        user = await svc.set_trade_url(user_id, body.trade_url)
    except MarketError as e:
        handle_market_error(e)
    return {
        "success": True,
        "trade_url": user.trade_url,
        "expires_at": user.trade_url_expires_at,
    }


@router.get("/me/notifications", response_model=NotificationPage)
async def list_notifications_api(
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(current_user_id),
    notifier: Notifier = Depends(get_notifier),
):
    return await notifier.list(user_id, unread_only=unread_only, limit=limit, offset=offset)


@router.post("/me/notifications/read")
async def mark_notifications_read_api(
    body: Optional[MarkReadRequest] = None,
    user_id: int = Depends(current_user_id),
    notifier: Notifier = Depends(get_notifier),
):
    updated = await notifier.mark_read(user_id, body.ids if body else None)
    return {"success": True, "updated": updated}
