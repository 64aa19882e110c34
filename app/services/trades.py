"""
交易状态机服务

每个操作独立开一个会话、一个事务：
  先做全部前置检查 → 条件更新（WHERE status / is_listed / version）→ 账本 → 历史记录
任何一步失败整个事务回滚，不会留下半完成的状态。
事务提交之后才刷新 Redis 投影、发布状态事件、发通知（都是尽力而为）。

并发保护：
  - item 下架：UPDATE item SET is_listed=0 WHERE id=? AND is_listed=1
  - 状态转换：UPDATE trade ... WHERE id=? AND version=?（乐观锁）
  - 部分唯一索引 uq_trade_active_item 兜底同一 item 只有一笔活跃交易
"""

from __future__ import annotations

import logging
import re
from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.errors import (
    AssetStillHeldError,
    ConflictError,
    ExternalDependencyError,
    FatalInvariantViolation,
    MarketError,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    ValidationError,
)
from app.models.db_models import (
    Item,
    Offer,
    Trade,
    TradeStatusHistory,
    User,
    utcnow,
)
from app.models.status import (
    ACTIVE_TRADE_STATUSES,
    RELEASE_STATUSES,
    OfferStatus,
    TradeStatus,
    ensure_transition,
)
from app.schemas.trade import TradeOut
from app.services import ledger
from app.services.notifications import Notifier
from app.services.trade_cache import CHANNEL_CREATED, CHANNEL_UPDATED, TradeCache
from app.services.users import apply_trade_url, ensure_trade_url

logger = logging.getLogger(__name__)

Notes = List[Tuple[int, dict]]

_TRADE_OFFER_URL_RE = re.compile(r"tradeoffer/(\d+)")
_DIGITS_RE = re.compile(r"^\d+$")

# 对账标记：其他操作发现的不变量冲突，供清理任务 / 管理接口处理；只保留最近的若干条
reconciliation_state: Dict[str, Any] = {
    "flagged": deque(maxlen=settings.reconciliation_max_flags),
}


def flag_for_reconciliation(kind: str, **details) -> None:
    entry = {"kind": kind, "at": utcnow().isoformat(), **details}
    reconciliation_state["flagged"].append(entry)
    logger.critical("不变量冲突，已标记待对账: %s", entry)


def clear_reconciliation() -> int:
    """清空对账标记，返回清掉的条数"""
    flagged = reconciliation_state["flagged"]
    count = len(flagged)
    flagged.clear()
    if count:
        logger.info("clear_reconciliation: 清除 %d 条对账标记", count)
    return count


def trade_offer_link(trade_offer_id: Optional[str]) -> Optional[str]:
    if not trade_offer_id:
        return None
    return f"https://steamcommunity.com/tradeoffer/{trade_offer_id}/"


def parse_trade_offer_ref(ref: Optional[str]) -> str:
    """纯数字，或包含 tradeoffer/<数字> 的 Steam 链接"""
    ref = (ref or "").strip()
    if _DIGITS_RE.match(ref):
        return ref
    m = _TRADE_OFFER_URL_RE.search(ref)
    if m and "steamcommunity.com" in ref:
        return m.group(1)
    raise ValidationError(
        "无效的 Steam 交易报价号，请填写数字编号或 steamcommunity.com/tradeoffer/<编号> 链接",
        code="invalid_trade_offer_ref",
    )


def _note(kind: str, title: str, message: str, link: Optional[str] = None) -> dict:
    return {"type": kind, "title": title, "message": message, "link": link}


# ── 会话内的共用步骤（offers / cleanup 也会用到）────────────────────────────

async def load_trade(db: AsyncSession, trade_id: int) -> Trade:
    trade = (
        await db.execute(
            select(Trade)
            .where(Trade.id == trade_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if trade is None:
        raise NotFoundError(f"交易 {trade_id} 不存在")
    return trade


async def has_active_trade(db: AsyncSession, item_id: int) -> bool:
    found = await db.scalar(
        select(Trade.id).where(Trade.item_id == item_id, Trade.status.in_(ACTIVE_TRADE_STATUSES)).limit(1)
    )
    return found is not None


async def has_active_asset_trade(db: AsyncSession, asset_id: str) -> bool:
    """同一件 Steam 实物（可能对应多条 item 记录）是否已有未终止的交易"""
    found = await db.scalar(
        select(Trade.id).where(Trade.asset_id == asset_id, Trade.status.in_(ACTIVE_TRADE_STATUSES)).limit(1)
    )
    return found is not None


async def create_trade(
    db: AsyncSession,
    *,
    item: Item,
    buyer_id: int,
    price: Decimal,
    currency: str,
    actor_id: int,
    now: datetime,
    offer_id: Optional[int] = None,
) -> Trade:
    """插入 awaiting_seller 交易并冻结买家资金（调用方负责先把 item 下架）"""
    if await has_active_asset_trade(db, item.asset_id):
        raise ConflictError(f"asset {item.asset_id} 正在另一笔交易中", code="item_in_trade")
    trade = Trade(
        item_id=item.id,
        buyer_id=buyer_id,
        seller_id=item.owner_id,
        offer_id=offer_id,
        price=price,
        currency=currency,
        fee_amount=ledger.compute_fee(price),
        status=TradeStatus.AWAITING_SELLER,
        version=1,
        asset_id=item.asset_id,
        item_name=item.market_hash_name,
        expires_at=now + timedelta(hours=settings.seller_response_hours),
    )
    db.add(trade)
    await db.flush()
    db.add_all([
        TradeStatusHistory(trade_id=trade.id, status=TradeStatus.CREATED, note="交易创建", actor_id=actor_id, created_at=now),
        TradeStatusHistory(trade_id=trade.id, status=TradeStatus.AWAITING_SELLER, note="等待卖家确认", actor_id=actor_id, created_at=now),
    ])
    await ledger.hold_funds(
        db,
        user_id=buyer_id,
        amount=price,
        currency=currency,
        item_id=item.id,
        trade_id=trade.id,
    )
    return trade


async def transition(
    db: AsyncSession,
    trade: Trade,
    target: TradeStatus,
    *,
    note: Optional[str],
    actor_id: Optional[int],
    now: datetime,
    values: Optional[dict] = None,
) -> bool:
    """
    以 version 为乐观锁执行一次合法转换。
    非法转换抛 PreconditionFailed；被并发修改（rowcount=0）返回 False。
    """
    ensure_transition(trade.status, target)
    res = await db.execute(
        update(Trade)
        .where(Trade.id == trade.id, Trade.version == trade.version)
        .values(status=target, version=Trade.version + 1, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        return False
    db.add(TradeStatusHistory(trade_id=trade.id, status=target, note=note, actor_id=actor_id, created_at=now))
    await db.flush()
    return True


async def _release_offer(db: AsyncSession, trade: Trade, reason: str) -> None:
    if trade.offer_id is None:
        return
    await db.execute(
        update(Offer)
        .where(Offer.id == trade.offer_id, Offer.status == OfferStatus.ACCEPTED)
        .values(status=OfferStatus.CANCELLED, decline_reason=reason)
        .execution_options(synchronize_session=False)
    )


async def _relist(db: AsyncSession, trade: Trade) -> bool:
    other = await db.scalar(
        select(Item.id).where(
            Item.asset_id == trade.asset_id,
            Item.is_listed.is_(True),
            Item.id != trade.item_id,
        ).limit(1)
    )
    if other is not None:
        logger.info("relist: asset=%s 已有其他上架记录 item=%s，跳过", trade.asset_id, other)
        return False
    res = await db.execute(
        update(Item)
        .where(Item.id == trade.item_id, Item.owner_id == trade.seller_id, Item.is_listed.is_(False))
        .values(is_listed=True)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def release_trade(
    db: AsyncSession,
    trade: Trade,
    target: TradeStatus,
    *,
    note: Optional[str],
    actor_id: Optional[int],
    now: datetime,
    relist: bool = False,
) -> bool:
    """以非完成状态终止交易：退款、释放报价和预留，可选重新上架"""
    if target not in RELEASE_STATUSES:
        raise ValueError(f"{target} 不是释放类终止状态")
    if not await transition(db, trade, target, note=note, actor_id=actor_id, now=now):
        return False
    await ledger.refund(db, trade, now)
    await _release_offer(db, trade, note or target.value)
    await db.execute(
        update(Item)
        .where(Item.id == trade.item_id, Item.reserved_by_id == trade.buyer_id)
        .values(reserved_by_id=None, reserved_until=None)
        .execution_options(synchronize_session=False)
    )
    if relist:
        await _relist(db, trade)
    return True


async def complete_trade(
    db: AsyncSession,
    trade: Trade,
    *,
    note: Optional[str],
    actor_id: Optional[int],
    now: datetime,
) -> bool:
    """完成交易：唯一会变更 item 所有权的地方"""
    if not await transition(
        db, trade, TradeStatus.COMPLETED, note=note, actor_id=actor_id, now=now,
        values={"completed_at": now},
    ):
        return False
    await ledger.settle(db, trade, now)
    await db.execute(
        update(Item)
        .where(Item.id == trade.item_id)
        .values(owner_id=trade.buyer_id, is_listed=False, reserved_by_id=None, reserved_until=None)
        .execution_options(synchronize_session=False)
    )
    return True


def integrity_to_error(e: IntegrityError, *, item_id: int) -> MarketError:
    """
    把唯一索引冲突翻译成业务异常。
    条件下架已经成功却仍撞上 uq_trade_active_item，说明库里已有一笔
    挂在「在架」物品上的活跃交易，这与状态机假设矛盾。
    """
    msg = str(e.orig)
    if "trade.item_id" in msg or "uq_trade_active_item" in msg:
        flag_for_reconciliation("active_trade_on_listed_item", item_id=item_id, error=msg)
        return FatalInvariantViolation(
            f"饰品 {item_id} 的交易状态异常，已记录待对账", code="active_trade_on_listed_item"
        )
    if "trade.asset_id" in msg or "uq_trade_active_asset" in msg:
        return ConflictError("该饰品正在交易中", code="item_in_trade")
    return ConflictError("该饰品已被其他操作占用，请刷新后重试", code="integrity_conflict")


class TradeService:
    def __init__(
        self,
        session_factory=None,
        *,
        cache: Optional[TradeCache] = None,
        notifier: Optional[Notifier] = None,
        inventory_checker=None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.cache = cache if cache is not None else TradeCache(enabled=False)
        self.notifier = notifier if notifier is not None else Notifier(self.session_factory, self.cache)
        # 需要提供 is_asset_still_held_by(steam_id, asset_id)；None 表示跳过外部校验
        self.inventory_checker = inventory_checker

    # ── 提交后的投影 / 事件 / 通知 ──────────────────────────────────────────

    async def after_commit(
        self,
        trade: TradeOut,
        old_status: Optional[TradeStatus],
        notes: Optional[Notes] = None,
    ) -> None:
        await self.cache.put(trade)
        await self.cache.invalidate_user(trade.buyer_id, trade.seller_id)
        await self.cache.publish(CHANNEL_UPDATED, trade.model_dump(mode="json"))
        if old_status != trade.status:
            await self.cache.publish_status_change(trade, old_status)
        if notes:
            await self.notifier.notify_all(notes)

    # ── 开单 ────────────────────────────────────────────────────────────────

    async def open_trade(
        self,
        item_id: int,
        buyer_id: int,
        currency: str = "USD",
        trade_url: Optional[str] = None,
    ) -> TradeOut:
        currency = ledger.normalize_currency(currency)
        now = utcnow()

        try:
            async with self.session_factory() as db, db.begin():
                item = await db.get(Item, item_id, populate_existing=True)
                if item is None:
                    raise NotFoundError(f"饰品 {item_id} 不存在")
                if not item.is_listed:
                    if await has_active_trade(db, item_id):
                        raise ConflictError("该饰品正在交易中", code="item_in_trade")
                    raise PreconditionFailed("该饰品已下架", code="item_not_listed")
                if item.owner_id == buyer_id:
                    raise PreconditionFailed("不能购买自己上架的饰品", code="own_item")

                buyer = await db.get(User, buyer_id, populate_existing=True)
                if buyer is None:
                    raise NotFoundError(f"用户 {buyer_id} 不存在")
                if trade_url is not None:
                    apply_trade_url(buyer, trade_url, now)
                ensure_trade_url(buyer, now)

                price = item.price_gel if currency == "GEL" else item.price
                balance = buyer.balance_gel if currency == "GEL" else buyer.balance_usd
                if balance < price:
                    raise PreconditionFailed(
                        f"余额不足：需要 {price} {currency}，当前 {balance} {currency}",
                        code="insufficient_funds",
                    )
                if await has_active_trade(db, item_id):
                    raise ConflictError("该饰品正在交易中", code="item_in_trade")

                res = await db.execute(
                    update(Item)
                    .where(Item.id == item_id, Item.is_listed.is_(True))
                    .values(is_listed=False, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    raise ConflictError("该饰品刚刚被其他买家拍下", code="item_taken")

                trade = await create_trade(
                    db, item=item, buyer_id=buyer_id, price=price, currency=currency,
                    actor_id=buyer_id, now=now,
                )
                out = TradeOut.model_validate(await load_trade(db, trade.id))
        except IntegrityError as e:
            raise integrity_to_error(e, item_id=item_id)

        logger.info(
            "open_trade: trade=%s  item=%s  buyer=%s  seller=%s  %s %s",
            out.id, item_id, buyer_id, out.seller_id, out.price, currency,
        )
        await self.cache.publish(CHANNEL_CREATED, out.model_dump(mode="json"))
        await self.after_commit(out, None, [
            (out.seller_id, _note("trade", "有新的购买订单", f"{out.item_name} 已被购买，请在 {settings.seller_response_hours} 小时内确认", f"/trades/{out.id}")),
            (buyer_id, _note("trade", "购买成功", f"已冻结 {out.price} {currency}，等待卖家确认", f"/trades/{out.id}")),
        ])
        return out

    # ── 卖家确认 ────────────────────────────────────────────────────────────

    async def seller_approve(self, trade_id: int, seller_id: int) -> TradeOut:
        now = utcnow()
        expired = False
        changed = False

        async with self.session_factory() as db, db.begin():
            res = await db.execute(
                update(Trade)
                .where(
                    Trade.id == trade_id,
                    Trade.seller_id == seller_id,
                    Trade.status == TradeStatus.AWAITING_SELLER,
                    or_(Trade.expires_at.is_(None), Trade.expires_at > now),
                )
                .values(status=TradeStatus.ACCEPTED, version=Trade.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                db.add(TradeStatusHistory(
                    trade_id=trade_id, status=TradeStatus.ACCEPTED, note="卖家已确认",
                    actor_id=seller_id, created_at=now,
                ))
                await db.flush()
                changed = True
            else:
                trade = await load_trade(db, trade_id)
                if trade.seller_id != seller_id:
                    raise PermissionDenied("只有卖家可以确认该交易")
                if trade.status == TradeStatus.AWAITING_SELLER:
                    # 只剩超时一种可能
                    expired = await release_trade(
                        db, trade, TradeStatus.EXPIRED, note="卖家未在期限内确认", actor_id=None, now=now,
                    )
                    if not expired:
                        raise ConflictError("交易状态已被其他操作修改，请刷新后重试")
                elif trade.status != TradeStatus.ACCEPTED:
                    ensure_transition(trade.status, TradeStatus.ACCEPTED)
            out = TradeOut.model_validate(await load_trade(db, trade_id))

        if expired:
            logger.info("seller_approve: trade=%s 已超过卖家确认期限，置为 expired", trade_id)
            await self.after_commit(out, TradeStatus.AWAITING_SELLER, [
                (out.buyer_id, _note("trade", "交易已过期", "卖家未在期限内确认，冻结资金已退回", f"/trades/{trade_id}")),
            ])
            raise PreconditionFailed("卖家确认期限已过，交易已过期", code="trade_expired")

        if changed:
            logger.info("seller_approve: trade=%s  seller=%s", trade_id, seller_id)
            await self.after_commit(out, TradeStatus.AWAITING_SELLER, [
                (out.buyer_id, _note("trade", "卖家已确认", f"{out.item_name} 的卖家已确认，即将发送 Steam 交易报价", f"/trades/{trade_id}")),
            ])
        return out

    # ── 卖家发货 ────────────────────────────────────────────────────────────

    async def seller_record_shipment(self, trade_id: int, seller_id: int, ref: str) -> TradeOut:
        offer_ref = parse_trade_offer_ref(ref)
        now = utcnow()

        async with self.session_factory() as db, db.begin():
            trade = await load_trade(db, trade_id)
            if trade.seller_id != seller_id:
                raise PermissionDenied("只有卖家可以填写交易报价")
            if trade.status == TradeStatus.OFFER_SENT and trade.trade_offer_id == offer_ref:
                return TradeOut.model_validate(trade)

            if not await transition(
                db, trade, TradeStatus.OFFER_SENT,
                note=f"Steam 交易报价 {offer_ref}", actor_id=seller_id, now=now,
                values={"trade_offer_id": offer_ref},
            ):
                raise ConflictError("交易状态已被其他操作修改，请刷新后重试")
            out = TradeOut.model_validate(await load_trade(db, trade_id))

        logger.info("seller_record_shipment: trade=%s  offer=%s", trade_id, offer_ref)
        await self.after_commit(out, TradeStatus.ACCEPTED, [
            (out.buyer_id, _note(
                "trade", "卖家已发出交易报价",
                f"请在 Steam 中接受 {out.item_name} 的交易报价，收到后确认收货",
                trade_offer_link(offer_ref),
            )),
        ])
        return out

    # ── 买家确认收货 ────────────────────────────────────────────────────────

    async def _verify_asset_left_seller(self, trade: TradeOut, seller_steam_id: str) -> None:
        if self.inventory_checker is None:
            logger.warning("buyer_confirm_receipt: 库存校验已关闭，trade=%s 跳过外部核验", trade.id)
            return
        try:
            held = await self.inventory_checker.is_asset_still_held_by(seller_steam_id, trade.asset_id)
        except ExternalDependencyError:
            raise
        except Exception as e:
            raise ExternalDependencyError(f"Steam 库存查询失败: {e}", code="steam_check_failed") from e
        if held:
            link = trade_offer_link(trade.trade_offer_id) or (
                f"https://steamcommunity.com/profiles/{seller_steam_id}/inventory/"
            )
            raise AssetStillHeldError(
                "饰品仍在卖家的 Steam 库存中，请先在 Steam 接受交易报价再确认收货",
                link=link,
            )

    async def buyer_confirm_receipt(self, trade_id: int, buyer_id: int) -> TradeOut:
        async with self.session_factory() as db:
            trade = await load_trade(db, trade_id)
            if trade.buyer_id != buyer_id:
                raise PermissionDenied("只有买家可以确认收货")
            if trade.status == TradeStatus.COMPLETED:
                return TradeOut.model_validate(trade)
            if trade.status not in (TradeStatus.ACCEPTED, TradeStatus.OFFER_SENT):
                raise PreconditionFailed(
                    f"交易当前状态为 {trade.status.value}，不能确认收货",
                    code="trade_terminal" if trade.status.is_terminal else "illegal_transition",
                )
            snapshot = TradeOut.model_validate(trade)
            seller = await db.get(User, trade.seller_id)

        # 外部调用不占用数据库事务
        await self._verify_asset_left_seller(snapshot, seller.steam_id)

        now = utcnow()
        async with self.session_factory() as db, db.begin():
            trade = await load_trade(db, trade_id)
            if trade.status == TradeStatus.COMPLETED:
                return TradeOut.model_validate(trade)
            old_status = trade.status
            if not await complete_trade(db, trade, note="买家确认收货", actor_id=buyer_id, now=now):
                raise ConflictError("交易状态已被其他操作修改，请刷新后重试")
            out = TradeOut.model_validate(await load_trade(db, trade_id))

        logger.info("buyer_confirm_receipt: trade=%s 完成  item=%s → buyer=%s", trade_id, out.item_id, buyer_id)
        payout = out.price - out.fee_amount
        await self.after_commit(out, old_status, [
            (out.seller_id, _note("trade", "交易完成", f"{out.item_name} 已售出，到账 {payout} {out.currency}", f"/trades/{trade_id}")),
            (buyer_id, _note("trade", "交易完成", f"{out.item_name} 已归入你的库存", f"/trades/{trade_id}")),
        ])
        return out

    # ── 取消 ────────────────────────────────────────────────────────────────

    async def cancel_trade(
        self,
        trade_id: int,
        actor_id: int,
        reason: Optional[str] = None,
        relist: bool = False,
    ) -> TradeOut:
        now = utcnow()
        note = reason or "交易已取消"
        async with self.session_factory() as db, db.begin():
            trade = await load_trade(db, trade_id)
            if actor_id not in (trade.buyer_id, trade.seller_id):
                raise PermissionDenied("只有交易双方可以取消交易")
            old_status = trade.status
            if not await release_trade(
                db, trade, TradeStatus.CANCELLED, note=note, actor_id=actor_id, now=now, relist=relist,
            ):
                raise ConflictError("交易状态已被其他操作修改，请刷新后重试")
            out = TradeOut.model_validate(await load_trade(db, trade_id))

        logger.info("cancel_trade: trade=%s  actor=%s  relist=%s", trade_id, actor_id, relist)
        await self.after_commit(out, old_status, [
            (uid, _note("trade", "交易已取消", f"{out.item_name}：{note}", f"/trades/{trade_id}"))
            for uid in (out.buyer_id, out.seller_id)
        ])
        return out

    # ── 管理操作 ────────────────────────────────────────────────────────────

    async def update_status(
        self,
        trade_id: int,
        status,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> TradeOut:
        try:
            target = TradeStatus(status)
        except ValueError:
            raise ValidationError(f"未知的交易状态: {status}", code="invalid_status")
        now = utcnow()

        async with self.session_factory() as db, db.begin():
            trade = await load_trade(db, trade_id)
            old_status = trade.status
            ensure_transition(old_status, target)
            if target in RELEASE_STATUSES:
                ok = await release_trade(db, trade, target, note=note, actor_id=actor_id, now=now)
            elif target == TradeStatus.COMPLETED:
                ok = await complete_trade(db, trade, note=note, actor_id=actor_id, now=now)
            else:
                ok = await transition(db, trade, target, note=note, actor_id=actor_id, now=now)
            if not ok:
                raise ConflictError("交易状态已被其他操作修改，请刷新后重试")
            out = TradeOut.model_validate(await load_trade(db, trade_id))

        logger.info("update_status: trade=%s  %s → %s  actor=%s", trade_id, old_status.value, target.value, actor_id)
        await self.after_commit(out, old_status, [
            (uid, _note("trade", "交易状态更新", f"{out.item_name}：{target.value}", f"/trades/{trade_id}"))
            for uid in (out.buyer_id, out.seller_id)
        ])
        return out

    async def terminate(
        self,
        trade_id: int,
        target: TradeStatus,
        *,
        note: str,
        expected_status: Optional[TradeStatus] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        后台任务使用：把一笔活跃交易终止到 target（退款、释放报价）。
        已终止、状态不符或被并发修改时返回 False，不抛异常。
        """
        now = now or utcnow()
        async with self.session_factory() as db, db.begin():
            trade = await load_trade(db, trade_id)
            if trade.status.is_terminal:
                return False
            if expected_status is not None and trade.status != expected_status:
                return False
            old_status = trade.status
            if not await release_trade(db, trade, target, note=note, actor_id=None, now=now):
                return False
            out = TradeOut.model_validate(await load_trade(db, trade_id))

        await self.after_commit(out, old_status, [
            (uid, _note("trade", "交易已终止", f"{out.item_name}：{note}", f"/trades/{trade_id}"))
            for uid in (out.buyer_id, out.seller_id)
        ])
        return True

    # ── 读取 ────────────────────────────────────────────────────────────────

    async def _load_out(self, trade_id: int) -> Optional[TradeOut]:
        async with self.session_factory() as db:
            try:
                return TradeOut.model_validate(await load_trade(db, trade_id))
            except NotFoundError:
                return None

    async def get_trade(self, trade_id: int) -> TradeOut:
        trade = await self.cache.get_or_load(trade_id, lambda: self._load_out(trade_id))
        if trade is None:
            raise NotFoundError(f"交易 {trade_id} 不存在")
        return trade

    async def list_user_trades(self, user_id: int, active_only: bool = True) -> List[TradeOut]:
        if active_only:
            cached_ids = await self.cache.get_user_trade_ids(user_id)
            if cached_ids is not None:
                trades = [await self.get_trade(tid) for tid in cached_ids]
                return [t for t in trades if t.is_active]

        async with self.session_factory() as db:
            stmt = (
                select(Trade)
                .where(or_(Trade.buyer_id == user_id, Trade.seller_id == user_id))
                .order_by(Trade.created_at.desc(), Trade.id.desc())
            )
            if active_only:
                stmt = stmt.where(Trade.status.in_(ACTIVE_TRADE_STATUSES))
            rows = (await db.execute(stmt)).scalars().all()
            trades = [TradeOut.model_validate(t) for t in rows]

        if active_only:
            await self.cache.put_user_trade_ids(user_id, [t.id for t in trades])
        return trades
