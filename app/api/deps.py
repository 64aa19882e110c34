"""
路由依赖：进程级共享的缓存 / 库存校验 / 服务实例

当前用户由外部认证层通过 X-User-Id 请求头传入。
测试中用 app.dependency_overrides 替换 get_*_service。
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException

from app.core.database import AsyncSessionLocal
from app.core.errors import NotFoundError
from app.services.listings import ListingService
from app.services.notifications import Notifier
from app.services.offers import OfferService
from app.services.steam import build_inventory_checker
from app.services.trade_cache import TradeCache
from app.services.trades import TradeService
from app.services.users import UserService

trade_cache = TradeCache()

_trade_service: Optional[TradeService] = None


def get_trade_service() -> TradeService:
    global _trade_service
    if _trade_service is None:
        _trade_service = TradeService(
            AsyncSessionLocal,
            cache=trade_cache,
            inventory_checker=build_inventory_checker(),
        )
    return _trade_service


def get_offer_service() -> OfferService:
    return OfferService(trades=get_trade_service())


def get_listing_service() -> ListingService:
    trades = get_trade_service()
    return ListingService(trades.session_factory, notifier=trades.notifier)


def get_user_service() -> UserService:
    return UserService(AsyncSessionLocal)


def get_notifier() -> Notifier:
    return get_trade_service().notifier


def current_user_id(x_user_id: Optional[int] = Header(None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="缺少 X-User-Id 请求头")
    return x_user_id


async def current_admin_id(
    user_id: int = Depends(current_user_id),
    users: UserService = Depends(get_user_service),
) -> int:
    try:
        user = await users.get_user(user_id)
    except NotFoundError:
        raise HTTPException(status_code=403, detail="需要管理员权限")
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="需要管理员权限")
    return user_id
