"""
报价 / 还价

状态：pending → accepted | declined | countered | cancelled | expired（均为终止）
  - 接受：由报价提出方的对手方操作（买家出价由卖家接受，卖家还价由买家接受），
    同一事务内：本报价 pending→accepted、其余 pending 报价→declined、
    item 条件下架并预留 24 小时、冻结买家资金、创建 awaiting_seller 交易
    买家的 Steam 交易链接缺失或过期时拒绝接受，报价保持 pending
  - 还价：双方都可以，原报价→countered，生成一条新的 pending 报价
  - 撤回：只有提出方可以撤回
  - 过期：读取时按 expires_at 显示为 expired，转换时落库，定时任务批量清理
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    ValidationError,
)
from app.models.db_models import Item, Offer, User, utcnow
from app.models.status import OfferStatus
from app.schemas.trade import OfferOut, TradeOut
from app.services import ledger
from app.services.trades import (
    Notes,
    TradeService,
    create_trade,
    has_active_trade,
    integrity_to_error,
    load_trade,
)
from app.services.users import ensure_trade_url

logger = logging.getLogger(__name__)

ANOTHER_ACCEPTED = "已接受其他报价"
USER_OFFER_ROLES = ("all", "sent", "received")


def _note(title: str, message: str, link: Optional[str] = None) -> dict:
    return {"type": "offer", "title": title, "message": message, "link": link}


def _is_expired(offer: Offer, now: datetime) -> bool:
    return offer.status == OfferStatus.PENDING and offer.expires_at <= now


def offer_view(offer: Offer, now: Optional[datetime] = None) -> OfferOut:
    """读取视图：过期但尚未落库的 pending 报价显示为 expired"""
    out = OfferOut.model_validate(offer)
    if _is_expired(offer, now or utcnow()):
        out.status = OfferStatus.EXPIRED
    return out


def counterparty_of(offer: Offer, item: Item) -> int:
    """有权接受 / 拒绝该报价的一方"""
    return item.owner_id if offer.proposed_by_id == offer.buyer_id else offer.buyer_id


async def _load_offer(db: AsyncSession, offer_id: int) -> Tuple[Offer, Item]:
    offer = (
        await db.execute(
            select(Offer).where(Offer.id == offer_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if offer is None:
        raise NotFoundError(f"报价 {offer_id} 不存在")
    item = await db.get(Item, offer.item_id, populate_existing=True)
    return offer, item


async def _set_status(
    db: AsyncSession,
    offer_id: int,
    status: OfferStatus,
    now: datetime,
    **values,
) -> bool:
    """pending → status 的条件更新"""
    res = await db.execute(
        update(Offer)
        .where(Offer.id == offer_id, Offer.status == OfferStatus.PENDING)
        .values(status=status, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def expire_pending_offers(db: AsyncSession, now: datetime) -> int:
    res = await db.execute(
        update(Offer)
        .where(Offer.status == OfferStatus.PENDING, Offer.expires_at <= now)
        .values(status=OfferStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


async def decline_pending_for_item(
    db: AsyncSession, item_id: int, reason: str, now: datetime, exclude_id: Optional[int] = None,
) -> List[Tuple[int, int]]:
    """把 item 上其余 pending 报价全部拒绝，返回 [(offer_id, 提出方)]"""
    stmt = select(Offer.id, Offer.proposed_by_id).where(
        Offer.item_id == item_id, Offer.status == OfferStatus.PENDING
    )
    if exclude_id is not None:
        stmt = stmt.where(Offer.id != exclude_id)
    rows = (await db.execute(stmt)).all()
    if not rows:
        return []
    await db.execute(
        update(Offer)
        .where(Offer.id.in_([r.id for r in rows]), Offer.status == OfferStatus.PENDING)
        .values(status=OfferStatus.DECLINED, decline_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return [(r.id, r.proposed_by_id) for r in rows]


class OfferService:
    def __init__(self, session_factory=None, *, trades: Optional[TradeService] = None):
        self.trades = trades or TradeService(session_factory)
        self.session_factory = self.trades.session_factory
        self.notifier = self.trades.notifier

    async def _expire_and_fail(self, offer_id: int) -> None:
        """转换时发现已过期：先把过期落库，再报错"""
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            await _set_status(db, offer_id, OfferStatus.EXPIRED, now)
        raise PreconditionFailed("报价已过期", code="offer_expired")

    # ── 出价 ────────────────────────────────────────────────────────────────

    async def create_offer(
        self,
        item_id: int,
        buyer_id: int,
        amount,
        currency: str = "USD",
        message: Optional[str] = None,
    ) -> OfferOut:
        amount = ledger.to_money(amount, field="amount")
        currency = ledger.normalize_currency(currency)
        now = utcnow()

        async with self.session_factory() as db, db.begin():
            item = await db.get(Item, item_id)
            if item is None:
                raise NotFoundError(f"饰品 {item_id} 不存在")
            if not item.is_listed:
                raise PreconditionFailed("该饰品当前未上架", code="item_not_listed")
            if not item.allow_offers:
                raise PreconditionFailed("该饰品不接受报价", code="offers_not_allowed")
            if item.owner_id == buyer_id:
                raise PreconditionFailed("不能对自己的饰品出价", code="own_item")

            existing = await db.scalar(
                select(Offer.id).where(
                    Offer.item_id == item_id,
                    Offer.buyer_id == buyer_id,
                    Offer.status == OfferStatus.PENDING,
                    Offer.expires_at > now,
                ).limit(1)
            )
            if existing is not None:
                raise PreconditionFailed("你对该饰品已有一个待处理的报价，请先撤回", code="duplicate_offer")

            offer = Offer(
                item_id=item_id,
                buyer_id=buyer_id,
                proposed_by_id=buyer_id,
                amount=amount,
                currency=currency,
                message=message or "",
                status=OfferStatus.PENDING,
                expires_at=now + timedelta(hours=settings.offer_ttl_hours),
                created_at=now,
            )
            db.add(offer)
            await db.flush()
            out = OfferOut.model_validate(offer)
            owner_id, name = item.owner_id, item.market_hash_name

        logger.info("create_offer: offer=%s  item=%s  buyer=%s  %s %s", out.id, item_id, buyer_id, amount, currency)
        await self.notifier.notify(owner_id, _note("收到新报价", f"{name} 收到 {amount} {currency} 的报价", f"/offers/{out.id}"))
        return out

    # ── 接受 ────────────────────────────────────────────────────────────────

    async def accept_offer(self, offer_id: int, actor_id: int) -> TradeOut:
        now = utcnow()
        notes: Notes = []

        try:
            async with self.session_factory() as db, db.begin():
                offer, item = await _load_offer(db, offer_id)
                if actor_id != counterparty_of(offer, item):
                    raise PermissionDenied("你无权接受该报价")
                if _is_expired(offer, now):
                    expired = True
                else:
                    expired = False
                    if offer.status == OfferStatus.ACCEPTED or (
                        offer.status == OfferStatus.DECLINED and offer.decline_reason == ANOTHER_ACCEPTED
                    ):
                        raise ConflictError("该饰品已接受了其他报价", code="offer_taken")
                    if offer.status != OfferStatus.PENDING:
                        raise PreconditionFailed(
                            f"报价已处于 {offer.status.value} 状态，无法接受", code="offer_not_pending"
                        )

                    buyer = await db.get(User, offer.buyer_id, populate_existing=True)
                    if buyer is None:
                        raise NotFoundError(f"用户 {offer.buyer_id} 不存在")
                    ensure_trade_url(buyer, now)

                    if not await _set_status(db, offer_id, OfferStatus.ACCEPTED, now):
                        raise ConflictError("该报价已被处理，请刷新后重试", code="offer_taken")

                    declined = await decline_pending_for_item(db, item.id, ANOTHER_ACCEPTED, now, exclude_id=offer_id)

                    res = await db.execute(
                        update(Item)
                        .where(Item.id == item.id, Item.is_listed.is_(True))
                        .values(
                            is_listed=False,
                            reserved_by_id=offer.buyer_id,
                            reserved_until=now + timedelta(hours=settings.seller_response_hours),
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 0:
                        if await has_active_trade(db, item.id):
                            raise ConflictError("该饰品正在交易中", code="item_in_trade")
                        raise PreconditionFailed("该饰品已下架", code="item_not_listed")

                    trade = await create_trade(
                        db, item=item, buyer_id=offer.buyer_id, price=offer.amount,
                        currency=offer.currency, actor_id=actor_id, now=now, offer_id=offer_id,
                    )
                    await db.execute(
                        update(Offer)
                        .where(Offer.id == offer_id)
                        .values(trade_id=trade.id)
                        .execution_options(synchronize_session=False)
                    )
                    out = TradeOut.model_validate(await load_trade(db, trade.id))

                    proposer = offer.proposed_by_id
                    notes.append((proposer, _note("报价已被接受", f"{item.market_hash_name} 的报价 {offer.amount} {offer.currency} 已被接受", f"/trades/{trade.id}")))
                    notes.extend(
                        (uid, _note("报价已被拒绝", f"{item.market_hash_name}：{ANOTHER_ACCEPTED}", f"/offers/{oid}"))
                        for oid, uid in declined
                    )
        except IntegrityError as e:
            raise integrity_to_error(e, item_id=offer.item_id)

        if expired:
            await self._expire_and_fail(offer_id)

        logger.info("accept_offer: offer=%s → trade=%s  declined=%d", offer_id, out.id, len(notes) - 1)
        await self.trades.after_commit(out, None, notes)
        return out

    # ── 拒绝 / 撤回 ─────────────────────────────────────────────────────────

    async def decline_offer(self, offer_id: int, actor_id: int, reason: Optional[str] = None) -> OfferOut:
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            offer, item = await _load_offer(db, offer_id)
            if actor_id != counterparty_of(offer, item):
                raise PermissionDenied("你无权拒绝该报价")
            if not _is_expired(offer, now):
                if offer.status != OfferStatus.PENDING:
                    raise PreconditionFailed(
                        f"报价已处于 {offer.status.value} 状态，无法拒绝", code="offer_not_pending"
                    )
                if not await _set_status(db, offer_id, OfferStatus.DECLINED, now, decline_reason=reason):
                    raise ConflictError("该报价已被处理，请刷新后重试", code="offer_taken")
                offer, item = await _load_offer(db, offer_id)
                out = OfferOut.model_validate(offer)
                expired = False
            else:
                expired = True
        if expired:
            await self._expire_and_fail(offer_id)

        await self.notifier.notify(out.proposed_by_id, _note(
            "报价已被拒绝", f"{item.market_hash_name} 的报价被拒绝" + (f"：{reason}" if reason else ""), f"/offers/{offer_id}",
        ))
        return out

    async def cancel_offer(self, offer_id: int, actor_id: int) -> OfferOut:
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            offer, item = await _load_offer(db, offer_id)
            if actor_id != offer.proposed_by_id:
                raise PermissionDenied("只有报价提出方可以撤回")
            if offer.status != OfferStatus.PENDING:
                raise PreconditionFailed(
                    f"报价已处于 {offer.status.value} 状态，无法撤回", code="offer_not_pending"
                )
            # 过期的报价撤回也无妨，直接记为 cancelled
            if not await _set_status(db, offer_id, OfferStatus.CANCELLED, now):
                raise ConflictError("该报价已被处理，请刷新后重试", code="offer_taken")
            offer, item = await _load_offer(db, offer_id)
            out = OfferOut.model_validate(offer)

        logger.info("cancel_offer: offer=%s  actor=%s", offer_id, actor_id)
        return out

    # ── 还价 ────────────────────────────────────────────────────────────────

    async def counter_offer(
        self,
        offer_id: int,
        actor_id: int,
        amount,
        currency: Optional[str] = None,
        message: Optional[str] = None,
    ) -> OfferOut:
        amount = ledger.to_money(amount, field="amount")
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            offer, item = await _load_offer(db, offer_id)
            if actor_id not in (offer.buyer_id, item.owner_id):
                raise PermissionDenied("你无权对该报价还价")
            if not _is_expired(offer, now):
                if offer.status != OfferStatus.PENDING:
                    raise PreconditionFailed(
                        f"报价已处于 {offer.status.value} 状态，无法还价", code="offer_not_pending"
                    )
                cur = ledger.normalize_currency(currency or offer.currency)

                counter = Offer(
                    item_id=offer.item_id,
                    buyer_id=offer.buyer_id,
                    proposed_by_id=actor_id,
                    amount=amount,
                    currency=cur,
                    message=message or "",
                    status=OfferStatus.PENDING,
                    expires_at=now + timedelta(hours=settings.offer_ttl_hours),
                    is_counter=True,
                    original_offer_id=offer_id,
                    created_at=now,
                )
                db.add(counter)
                await db.flush()
                if not await _set_status(db, offer_id, OfferStatus.COUNTERED, now, counter_offer_id=counter.id):
                    raise ConflictError("该报价已被处理，请刷新后重试", code="offer_taken")
                out = OfferOut.model_validate(counter)
                other = offer.buyer_id if actor_id == item.owner_id else item.owner_id
                expired = False
            else:
                expired = True
        if expired:
            await self._expire_and_fail(offer_id)

        logger.info("counter_offer: offer=%s → counter=%s  %s %s", offer_id, out.id, amount, out.currency)
        await self.notifier.notify(other, _note(
            "收到还价", f"{item.market_hash_name} 收到 {amount} {out.currency} 的还价", f"/offers/{out.id}",
        ))
        return out

    # ── 读取 ────────────────────────────────────────────────────────────────

    async def get_offer(self, offer_id: int) -> OfferOut:
        async with self.session_factory() as db:
            offer, _ = await _load_offer(db, offer_id)
            return offer_view(offer)

    async def list_item_offers(self, item_id: int, status: Optional[OfferStatus] = None) -> List[OfferOut]:
        now = utcnow()
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(Offer).where(Offer.item_id == item_id).order_by(Offer.created_at.desc(), Offer.id.desc())
                )
            ).scalars().all()
            offers = [offer_view(o, now) for o in rows]
        if status is not None:
            offers = [o for o in offers if o.status == OfferStatus(status)]
        return offers

    async def list_user_offers(
        self,
        user_id: int,
        role: str = "all",
        status: Optional[OfferStatus] = None,
    ) -> List[OfferOut]:
        """
        用户参与的报价，按时间倒序。

        role:
          sent      自己提出的（出价或还价）
          received  对方提出、等自己处理的（自己饰品上的出价，或卖家给自己的还价）
          all       两者合并
        """
        if role not in USER_OFFER_ROLES:
            raise ValidationError(f"role 只能是 {', '.join(USER_OFFER_ROLES)}", code="invalid_role")
        now = utcnow()
        party = or_(Offer.buyer_id == user_id, Item.owner_id == user_id)
        stmt = select(Offer).join(Item, Item.id == Offer.item_id)
        if role == "sent":
            stmt = stmt.where(Offer.proposed_by_id == user_id)
        elif role == "received":
            stmt = stmt.where(party, Offer.proposed_by_id != user_id)
        else:
            stmt = stmt.where(or_(party, Offer.proposed_by_id == user_id))

        async with self.session_factory() as db:
            rows = (
                await db.execute(stmt.order_by(Offer.created_at.desc(), Offer.id.desc()))
            ).scalars().all()
            offers = [offer_view(o, now) for o in rows]
        if status is not None:
            offers = [o for o in offers if o.status == OfferStatus(status)]
        return offers
