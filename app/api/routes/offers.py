"""
报价 API

POST /api/offers                          出价
GET  /api/offers/item/{item_id}           某件饰品的全部报价
GET  /api/offers/mine?role=            我参与的报价（sent / received / all）
GET  /api/offers/{offer_id}               报价详情
POST /api/offers/{offer_id}/accept        接受（生成交易）
POST /api/offers/{offer_id}/decline       拒绝
POST /api/offers/{offer_id}/counter       还价
POST /api/offers/{offer_id}/cancel        撤回
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.api.deps import current_user_id, get_offer_service
from app.api.routes._errors import handle_market_error
from app.core.errors import MarketError
from app.models.status import OfferStatus
from app.schemas.trade import OfferOut, TradeOut
from app.services.offers import OfferService

router = APIRouter()


class CreateOfferRequest(BaseModel):
    item_id: int
    amount: Decimal
    currency: str = "USD"
    message: Optional[str] = None


class CounterRequest(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    message: Optional[str] = None


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


@router.post("", response_model=OfferOut, status_code=201)
async def create_offer_api(
    body: CreateOfferRequest,
    user_id: int = Depends(current_user_id),
    svc: OfferService = Depends(get_offer_service),
):
    try:
        return await svc.create_offer(body.item_id, user_id, body.amount, body.currency, body.message)
    except MarketError as e:
        handle_market_error(e)


@router.get("/item/{item_id}", response_model=List[OfferOut])
async def list_item_offers_api(
    item_id: int,
    status: Optional[OfferStatus] = Query(None),
    svc: OfferService = Depends(get_offer_service),
):
    return await svc.list_item_offers(item_id, status)


@router.get("/mine", response_model=List[OfferOut])
async def list_my_offers_api(
    role: str = Query("all"),
    status: Optional[OfferStatus] = Query(None),
    user_id: int = Depends(current_user_id),
    svc: OfferService = Depends(get_offer_service),
):
    try:
        return await svc.list_user_offers(user_id, role, status)
    except MarketError as e:
        handle_market_error(e)


@router.get("/{offer_id}", response_model=OfferOut)
async def get_offer_api(offer_id: int, svc: OfferService = Depends(get_offer_service)):
    try:
        return await svc.get_offer(offer_id)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{offer_id}/accept", response_model=TradeOut)
async def accept_offer_api(
    offer_id: int,
    user_id: int = Depends(current_user_id),
    svc: OfferService = Depends(get_offer_service),
):
    try:
        return await svc.accept_offer(offer_id, user_id)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{offer_id}/decline", response_model=OfferOut)
async def decline_offer_api(
    offer_id: int,
    body: Optional[DeclineRequest] = None,
    user_id: int = Depends(current_user_id),
    svc: OfferService = Depends(get_offer_service),
):
    try:
        return await svc.decline_offer(offer_id, user_id, reason=body.reason if body else None)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{offer_id}/counter", response_model=OfferOut, status_code=201)
async def counter_offer_api(
    offer_id: int,
    body: CounterRequest,
    user_id: int = Depends(current_user_id),
    svc: OfferService = Depends(get_offer_service),
):
    try:
        return await svc.counter_offer(offer_id, user_id, body.amount, body.currency, body.message)
    except MarketError as e:
        handle_market_error(e)


@router.post("/{offer_id}/cancel", response_model=OfferOut)
async def cancel_offer_api(
    offer_id: int,
    user_id: int = Depends(current_user_id),
    svc: OfferService = Depends(get_offer_service),
):
    try:
        return await svc.cancel_offer(offer_id, user_id)
    except MarketError as e:
        handle_market_error(e)
