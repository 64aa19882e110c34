"""
交易 API

POST /api/trades                        直接购买（开单）
GET  /api/trades                        我的交易（默认只看进行中）
GET  /api/trades/{trade_id}             交易详情
POST /api/trades/{trade_id}/approve     卖家确认
POST /api/trades/{trade_id}/shipment    卖家填写 Steam 交易报价号
POST /api/trades/{trade_id}/confirm     买家确认收货
POST /api/trades/{trade_id}/cancel      买家或卖家取消
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.api.deps import current_user_id, get_trade_service
from app.api.routes._errors import handle_market_error
from app.core.errors import MarketError, PermissionDenied
from app.schemas.trade import TradeOut
from app.services.trades import TradeService

router = APIRouter()


class OpenTradeRequest(BaseModel):
    item_id: int
    currency: str = "USD"
    trade_url: Optional[str] = None


class ShipmentRequest(BaseModel):
    trade_offer: str        # 交易报价号或完整链接


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    relist: bool = False


@router.post("", response_model=TradeOut, status_code=201)
async def open_trade_api(
    body: OpenTradeRequest,
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    try:
        return await svc.open_trade(body.item_id, user_id, currency=body.currency, trade_url=body.trade_url)
    except MarketError as e:
        handle_market_error(e)


@router.get("", response_model=List[TradeOut])
async def list_trades_api(
    active_only: bool = Query(True),
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    return await svc.list_user_trades(user_id, active_only=active_only)


@router.get("/{trade_id}", response_model=TradeOut)
async def get_trade_api(
    trade_id: int,
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    try:
        trade = await svc.get_trade(trade_id)
    except MarketError as e:
        handle_market_error(e)
    if user_id not in (trade.buyer_id, trade.seller_id):
        handle_market_error(PermissionDenied("只有交易双方可以查看该交易"))
    return trade


@router.post("/{trade_id}/approve", response_model=TradeOut)
async def approve_trade_api(
    trade_id: int,
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    try:
        return await svc.seller_approve(trade_id, user_id)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{trade_id}/shipment", response_model=TradeOut)
async def record_shipment_api(
    trade_id: int,
    body: ShipmentRequest,
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    try:
        return await svc.seller_record_shipment(trade_id, user_id, body.trade_offer)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{trade_id}/confirm", response_model=TradeOut)
async def confirm_receipt_api(
    trade_id: int,
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    try:
        return await svc.buyer_confirm_receipt(trade_id, user_id)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{trade_id}/cancel", response_model=TradeOut)
async def cancel_trade_api(
    trade_id: int,
    body: Optional[CancelRequest] = None,
    user_id: int = Depends(current_user_id),
    svc: TradeService = Depends(get_trade_service),
):
    body = body or CancelRequest()
    try:
        return await svc.cancel_trade(trade_id, user_id, reason=body.reason, relist=body.relist)
    except MarketError as e:
        handle_market_error(e)
