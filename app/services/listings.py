"""
饰品上架管理

一件 Steam 实物（asset_id）同一时间最多只有一条在架记录，
由部分唯一索引 uq_item_listed_asset 保证；并发重复上架时后到者得到 ConflictError。
处于未终止交易中的实物不能再次上架。
"""

from __future__ import annotations

import logging
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    ValidationError,
)
from app.models.db_models import Item, User, utcnow
from app.schemas.trade import ItemOut
from app.services import ledger
from app.services.offers import decline_pending_for_item
from app.services.trades import has_active_asset_trade

logger = logging.getLogger(__name__)

_WEAR_RE = re.compile(r"\((Factory New|Minimal Wear|Field-Tested|Well-Worn|Battle-Scarred)\)")

LISTING_CANCELLED = "卖家已下架该饰品"


def parse_wear(market_hash_name: str) -> Optional[str]:
    """AK-47 | Redline (Field-Tested) → Field-Tested"""
    m = _WEAR_RE.search(market_hash_name or "")
    return m.group(1) if m else None


def _gel_price(price: Decimal, rate: Decimal) -> Decimal:
    return (price * rate).quantize(ledger.CENT, rounding=ROUND_HALF_UP)


class ListingService:
    def __init__(self, session_factory=None, *, notifier=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.notifier = notifier

    async def list_item(
        self,
        owner_id: int,
        asset_id: str,
        market_hash_name: str,
        price,
        price_gel=None,
        currency_rate=None,
        allow_offers: bool = True,
        wear: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> ItemOut:
        asset_id = str(asset_id or "").strip()
        if not asset_id:
            raise ValidationError("缺少 asset_id", code="asset_id_required")
        if not market_hash_name:
            raise ValidationError("缺少饰品名称", code="name_required")
        price = ledger.to_money(price)
        rate = Decimal(str(currency_rate if currency_rate is not None else settings.default_currency_rate))
        if rate <= 0:
            raise ValidationError("汇率必须大于 0", code="invalid_rate")
        gel = ledger.to_money(price_gel, field="price_gel") if price_gel is not None else _gel_price(price, rate)

        try:
            async with self.session_factory() as db, db.begin():
                if await db.get(User, owner_id) is None:
                    raise NotFoundError(f"用户 {owner_id} 不存在")
                listed = await db.scalar(
                    select(Item.id).where(Item.asset_id == asset_id, Item.is_listed.is_(True)).limit(1)
                )
                if listed is not None:
                    raise ConflictError(f"该饰品已在架 (item={listed})", code="already_listed")
                if await has_active_asset_trade(db, asset_id):
                    raise ConflictError("该饰品正在交易中，交易结束前不能重新上架", code="item_in_trade")
                item = Item(
                    asset_id=asset_id,
                    owner_id=owner_id,
                    market_hash_name=market_hash_name,
                    wear=wear or parse_wear(market_hash_name),
                    image_url=image_url,
                    price=price,
                    price_gel=gel,
                    currency_rate=rate,
                    is_listed=True,
                    allow_offers=allow_offers,
                )
                db.add(item)
                await db.flush()
                out = ItemOut.model_validate(item)
        except IntegrityError:
            raise ConflictError("该饰品已在架", code="already_listed")

        logger.info("list_item: item=%s  asset=%s  owner=%s  $%s", out.id, asset_id, owner_id, price)
        return out

    async def _owned_listed(self, db, item_id: int, user_id: int) -> Item:
        item = await db.get(Item, item_id, populate_existing=True)
        if item is None:
            raise NotFoundError(f"饰品 {item_id} 不存在")
        if item.owner_id != user_id:
            raise PermissionDenied("只能操作自己上架的饰品")
        if not item.is_listed:
            raise PreconditionFailed("该饰品当前未上架", code="item_not_listed")
        return item

    async def cancel_listing(self, item_id: int, user_id: int) -> ItemOut:
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            item = await self._owned_listed(db, item_id, user_id)
            res = await db.execute(
                update(Item)
                .where(Item.id == item_id, Item.is_listed.is_(True))
                .values(is_listed=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                raise ConflictError("该饰品刚刚被购买，无法下架", code="item_taken")
            declined = await decline_pending_for_item(db, item_id, LISTING_CANCELLED, now)
            out = ItemOut.model_validate(await db.get(Item, item_id, populate_existing=True))

        logger.info("cancel_listing: item=%s  declined_offers=%d", item_id, len(declined))
        if self.notifier is not None:
            for offer_id, proposer in declined:
                await self.notifier.notify(proposer, {
                    "type": "offer", "title": "报价已失效",
                    "message": f"{item.market_hash_name}：{LISTING_CANCELLED}",
                    "link": f"/offers/{offer_id}",
                })
        return out

    async def update_price(self, item_id: int, user_id: int, price, price_gel=None) -> ItemOut:
        price = ledger.to_money(price)
        async with self.session_factory() as db, db.begin():
            item = await self._owned_listed(db, item_id, user_id)
            item.price = price
            item.price_gel = (
                ledger.to_money(price_gel, field="price_gel") if price_gel is not None
                else _gel_price(price, Decimal(item.currency_rate))
            )
            await db.flush()
            out = ItemOut.model_validate(item)
        logger.info("update_price: item=%s  $%s", item_id, price)
        return out

    async def get_item(self, item_id: int) -> ItemOut:
        async with self.session_factory() as db:
            item = await db.get(Item, item_id)
            if item is None:
                raise NotFoundError(f"饰品 {item_id} 不存在")
            return ItemOut.model_validate(item)

    async def list_items(self, owner_id: Optional[int] = None, listed_only: bool = True) -> List[ItemOut]:
        async with self.session_factory() as db:
            stmt = select(Item).order_by(Item.created_at.desc(), Item.id.desc())
            if owner_id is not None:
                stmt = stmt.where(Item.owner_id == owner_id)
            if listed_only:
                stmt = stmt.where(Item.is_listed.is_(True))
            rows = (await db.execute(stmt)).scalars().all()
            return [ItemOut.model_validate(i) for i in rows]
