"""用户交易链接（Steam trade URL）管理"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.errors import NotFoundError, PreconditionFailed, ValidationError
from app.models.db_models import User, utcnow

logger = logging.getLogger(__name__)

TRADE_URL_MARKER = "steamcommunity.com/tradeoffer/new/"


def validate_trade_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    if not url:
        raise ValidationError("请填写 Steam 交易链接", code="trade_url_required")
    if TRADE_URL_MARKER not in url:
        raise ValidationError("交易链接格式不正确，应包含 steamcommunity.com/tradeoffer/new/", code="invalid_trade_url")
    return url


def apply_trade_url(user: User, url: str, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    user.trade_url = validate_trade_url(url)
    user.trade_url_expires_at = now + timedelta(days=settings.trade_url_valid_days)


def ensure_trade_url(user: User, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    if not user.trade_url:
        raise PreconditionFailed("请先设置 Steam 交易链接", code="trade_url_missing")
    if user.trade_url_expires_at is not None and user.trade_url_expires_at <= now:
        raise PreconditionFailed("Steam 交易链接已过期，请重新设置", code="trade_url_expired")


class UserService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def set_trade_url(self, user_id: int, url: str) -> User:
        url = validate_trade_url(url)
        async with self.session_factory() as db, db.begin():
            user = await db.get(User, user_id)
            if user is None:
                raise NotFoundError(f"用户 {user_id} 不存在")
            apply_trade_url(user, url)
        logger.info("set_trade_url: user=%s  expires=%s", user_id, user.trade_url_expires_at)
        return user

    async def get_user(self, user_id: int) -> User:
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"用户 {user_id} 不存在")
        return user
