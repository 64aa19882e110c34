"""
上架 API

GET    /api/listings                  在架饰品（可按卖家过滤）
POST   /api/listings                  上架
GET    /api/listings/{item_id}        饰品详情
PUT    /api/listings/{item_id}/price  改价
DELETE /api/listings/{item_id}        下架（同时拒绝该饰品上所有待处理报价）
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.api.deps import current_user_id, get_listing_service
from app.api.routes._errors import handle_market_error
from app.core.errors import MarketError
from app.schemas.trade import ItemOut
from app.services.listings import ListingService

router = APIRouter()


class ListItemRequest(BaseModel):
    asset_id: str
    market_hash_name: str
    price: Decimal
    price_gel: Optional[Decimal] = None
    currency_rate: Optional[Decimal] = None
    allow_offers: bool = True
    wear: Optional[str] = None
    image_url: Optional[str] = None


class RepriceRequest(BaseModel):
    price: Decimal
    price_gel: Optional[Decimal] = None


@router.get("", response_model=List[ItemOut])
async def list_listings_api(
    owner_id: Optional[int] = Query(None),
    svc: ListingService = Depends(get_listing_service),
):
    return await svc.list_items(owner_id=owner_id)


@router.post("", response_model=ItemOut, status_code=201)
async def list_item_api(
    body: ListItemRequest,
    user_id: int = Depends(current_user_id),
    svc: ListingService = Depends(get_listing_service),
):
    try:
        return await svc.list_item(user_id, **body.model_dump())
    except MarketError as e:
        handle_market_error(e)


@router.get("/{item_id}", response_model=ItemOut)
async def get_item_api(item_id: int, svc: ListingService = Depends(get_listing_service)):
    try:
        return await svc.get_item(item_id)
    except MarketError as e:
        handle_market_error(e)


@router.put("/{item_id}/price", response_model=ItemOut)
async def reprice_api(
    item_id: int,
    body: RepriceRequest,
    user_id: int = Depends(current_user_id),
    svc: ListingService = Depends(get_listing_service),
):
    try:
        return await svc.update_price(item_id, user_id, body.price, body.price_gel)
    except MarketError as e:
        handle_market_error(e)


@router.delete("/{item_id}", response_model=ItemOut)
async def cancel_listing_api(
    item_id: int,
    user_id: int = Depends(current_user_id),
    svc: ListingService = Depends(get_listing_service),
):
    try:
        return await svc.cancel_listing(item_id, user_id)
    except MarketError as e:
        handle_market_error(e)
