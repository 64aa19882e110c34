"""Tests for the trade state machine service."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError

from app.core.errors import (
    AssetStillHeldError,
    ConflictError,
    ExternalDependencyError,
    FatalInvariantViolation,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    ValidationError,
)
from app.models.db_models import Item, Notification, Trade, Transaction, User, utcnow
from app.models.status import ACTIVE_TRADE_STATUSES, TradeStatus
from app.schemas.trade import TradeOut
from app.services.trades import (
    TradeService,
    clear_reconciliation,
    flag_for_reconciliation,
    integrity_to_error,
    parse_trade_offer_ref,
    reconciliation_state,
)


async def _shipped(trade_service, seller, buyer, item, ref="5551234"):
    trade = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.seller_approve(trade.id, seller.id)
    return await trade_service.seller_record_shipment(trade.id, seller.id, ref)


# ── open_trade ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_open_trade_holds_funds_and_unlists(trade_service, market, db_get, db_rows):
    """$10 item, $15 balance: trade awaiting seller, item unlisted, $5 left."""
    seller, buyer, item = market

    trade = await trade_service.open_trade(item.id, buyer.id)

    assert trade.status == TradeStatus.AWAITING_SELLER
    assert [h.status for h in trade.history] == [TradeStatus.CREATED, TradeStatus.AWAITING_SELLER]
    assert trade.price == Decimal("10")
    assert trade.fee_amount == Decimal("0.25")
    assert trade.seller_id == seller.id
    assert trade.asset_id == item.asset_id
    assert trade.expires_at is not None

    assert (await db_get(Item, item.id)).is_listed is False
    assert (await db_get(User, buyer.id)).balance_usd == Decimal("5")

    purchases = await db_rows(Transaction, Transaction.trade_id == trade.id)
    assert [(t.type, t.status, t.amount) for t in purchases] == [("purchase", "pending", Decimal("-10"))]

    notes = await db_rows(Notification, Notification.user_id == seller.id)
    assert len(notes) == 1


@pytest.mark.asyncio
async def test_concurrent_opens_have_one_winner(trade_service, make_user, market, db_get, db_rows):
    seller, first, item = market
    second = await make_user(balance_usd="15")

    results = await asyncio.gather(
        trade_service.open_trade(item.id, first.id),
        trade_service.open_trade(item.id, second.id),
        return_exceptions=True,
    )

    wins = [r for r in results if isinstance(r, TradeOut)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(wins) == 1
    assert len(errors) == 1 and isinstance(errors[0], ConflictError)

    loser = second if wins[0].buyer_id == first.id else first
    assert (await db_get(User, loser.id)).balance_usd == Decimal("15")
    trades = await db_rows(Trade, Trade.item_id == item.id)
    assert len(trades) == 1


@pytest.mark.asyncio
async def test_open_trade_on_item_in_trade_is_conflict(trade_service, make_user, market):
    seller, buyer, item = market
    other = await make_user()
    await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(ConflictError):
        await trade_service.open_trade(item.id, other.id)


@pytest.mark.asyncio
async def test_open_trade_preconditions(trade_service, make_user, market, listing_service, db_get):
    seller, buyer, item = market

    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.open_trade(item.id, seller.id)
    assert exc.value.code == "own_item"

    poor = await make_user(balance_usd="9.99")
    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.open_trade(item.id, poor.id)
    assert exc.value.code == "insufficient_funds"

    no_url = await make_user(trade_url=None)
    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.open_trade(item.id, no_url.id)
    assert exc.value.code == "trade_url_missing"

    with pytest.raises(NotFoundError):
        await trade_service.open_trade(9999, buyer.id)

    with pytest.raises(ValidationError):
        await trade_service.open_trade(item.id, buyer.id, currency="EUR")

    # nothing above touched the listing
    assert (await db_get(Item, item.id)).is_listed is True

    await listing_service.cancel_listing(item.id, seller.id)
    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.open_trade(item.id, buyer.id)
    assert exc.value.code == "item_not_listed"


@pytest.mark.asyncio
async def test_open_trade_with_expired_trade_url(trade_service, market, db_exec):
    seller, buyer, item = market
    await db_exec(update(User).where(User.id == buyer.id).values(trade_url_expires_at=utcnow() - timedelta(days=1)))

    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.open_trade(item.id, buyer.id)
    assert exc.value.code == "trade_url_expired"


@pytest.mark.asyncio
async def test_open_trade_saves_supplied_trade_url(trade_service, make_user, market, db_get):
    seller, _, item = market
    buyer = await make_user(trade_url=None)
    url = "https://steamcommunity.com/tradeoffer/new/?partner=999&token=zz"

    with pytest.raises(ValidationError):
        await trade_service.open_trade(item.id, buyer.id, trade_url="https://example.com/not-steam")

    await trade_service.open_trade(item.id, buyer.id, trade_url=url)
    saved = await db_get(User, buyer.id)
    assert saved.trade_url == url
    assert saved.trade_url_expires_at > utcnow() + timedelta(days=29)


@pytest.mark.asyncio
async def test_open_trade_in_gel(trade_service, make_user, market, db_get):
    seller, _, item = market
    buyer = await make_user(balance_usd="0", balance_gel="20")

    trade = await trade_service.open_trade(item.id, buyer.id, currency="gel")

    assert trade.currency == "GEL"
    assert trade.price == Decimal("18")
    assert (await db_get(User, buyer.id)).balance_gel == Decimal("2")


# ── seller_approve ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_seller_approve_is_idempotent(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)

    first = await trade_service.seller_approve(trade.id, seller.id)
    second = await trade_service.seller_approve(trade.id, seller.id)

    assert first.status == second.status == TradeStatus.ACCEPTED
    assert second.version == first.version == trade.version + 1
    assert [h.status for h in second.history].count(TradeStatus.ACCEPTED) == 1


@pytest.mark.asyncio
async def test_only_seller_can_approve(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(PermissionDenied):
        await trade_service.seller_approve(trade.id, buyer.id)


@pytest.mark.asyncio
async def test_approve_after_deadline_expires_and_refunds(trade_service, market, db_exec, db_get):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await db_exec(update(Trade).where(Trade.id == trade.id).values(expires_at=utcnow() - timedelta(minutes=1)))

    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.seller_approve(trade.id, seller.id)
    assert exc.value.code == "trade_expired"

    assert (await trade_service.get_trade(trade.id)).status == TradeStatus.EXPIRED
    assert (await db_get(User, buyer.id)).balance_usd == Decimal("15")


@pytest.mark.asyncio
async def test_approve_terminal_trade_fails(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.cancel_trade(trade.id, buyer.id)

    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.seller_approve(trade.id, seller.id)
    assert exc.value.code == "trade_terminal"


# ── seller_record_shipment ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_shipment_before_approval_is_rejected(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(PreconditionFailed):
        await trade_service.seller_record_shipment(trade.id, seller.id, "12345")

    assert (await trade_service.get_trade(trade.id)).status == TradeStatus.AWAITING_SELLER


@pytest.mark.asyncio
async def test_shipment_accepts_url_and_is_idempotent(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.seller_approve(trade.id, seller.id)

    shipped = await trade_service.seller_record_shipment(
        trade.id, seller.id, "https://steamcommunity.com/tradeoffer/6543210987/"
    )
    again = await trade_service.seller_record_shipment(trade.id, seller.id, "6543210987")

    assert shipped.status == TradeStatus.OFFER_SENT
    assert shipped.trade_offer_id == "6543210987"
    assert again.version == shipped.version


@pytest.mark.parametrize("ref,expected", [
    ("123456", "123456"),
    (" 42 ", "42"),
    ("https://steamcommunity.com/tradeoffer/7788/", "7788"),
    ("steamcommunity.com/tradeoffer/7788?foo=bar", "7788"),
])
def test_parse_trade_offer_ref(ref, expected):
    assert parse_trade_offer_ref(ref) == expected


@pytest.mark.parametrize("ref", ["", "abc", "https://example.com/tradeoffer/12", "12a"])
def test_parse_trade_offer_ref_rejects_garbage(ref):
    with pytest.raises(ValidationError):
        parse_trade_offer_ref(ref)


# ── buyer_confirm_receipt ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_confirm_while_asset_still_held(trade_service, inventory, market, db_get):
    seller, buyer, item = market
    shipped = await _shipped(trade_service, seller, buyer, item, ref="13579")
    inventory.held = True

    with pytest.raises(AssetStillHeldError) as exc:
        await trade_service.buyer_confirm_receipt(shipped.id, buyer.id)

    assert isinstance(exc.value, PreconditionFailed)
    assert exc.value.link == "https://steamcommunity.com/tradeoffer/13579/"
    assert exc.value.to_dict()["link"] == exc.value.link
    assert inventory.calls == [(seller.steam_id, item.asset_id)]
    assert (await trade_service.get_trade(shipped.id)).status == TradeStatus.OFFER_SENT
    assert (await db_get(Item, item.id)).owner_id == seller.id


@pytest.mark.asyncio
async def test_confirm_completes_and_settles(trade_service, market, db_get, db_rows):
    seller, buyer, item = market
    shipped = await _shipped(trade_service, seller, buyer, item)

    done = await trade_service.buyer_confirm_receipt(shipped.id, buyer.id)

    assert done.status == TradeStatus.COMPLETED
    assert done.completed_at is not None
    stored = await db_get(Item, item.id)
    assert stored.owner_id == buyer.id
    assert stored.is_listed is False
    assert (await db_get(User, seller.id)).balance_usd == Decimal("9.75")
    assert (await db_get(User, buyer.id)).balance_usd == Decimal("5")

    ledger = {(t.user_id, t.type): t for t in await db_rows(Transaction, Transaction.trade_id == done.id)}
    assert ledger[(buyer.id, "purchase")].status == "completed"
    assert ledger[(seller.id, "sale")].amount == Decimal("9.75")
    assert ledger[(seller.id, "fee")].amount == Decimal("-0.25")

    again = await trade_service.buyer_confirm_receipt(shipped.id, buyer.id)
    assert again.version == done.version


@pytest.mark.asyncio
async def test_confirm_from_accepted_skips_shipment_step(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.seller_approve(trade.id, seller.id)

    done = await trade_service.buyer_confirm_receipt(trade.id, buyer.id)
    assert done.status == TradeStatus.COMPLETED


@pytest.mark.asyncio
async def test_confirm_external_failure_leaves_trade_untouched(trade_service, inventory, market, db_get):
    seller, buyer, item = market
    shipped = await _shipped(trade_service, seller, buyer, item)
    inventory.error = RuntimeError("steam down")

    with pytest.raises(ExternalDependencyError) as exc:
        await trade_service.buyer_confirm_receipt(shipped.id, buyer.id)

    assert exc.value.retryable is True
    assert (await trade_service.get_trade(shipped.id)).status == TradeStatus.OFFER_SENT
    assert (await db_get(Item, item.id)).owner_id == seller.id


@pytest.mark.asyncio
async def test_confirm_requires_buyer_and_approval(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(PermissionDenied):
        await trade_service.buyer_confirm_receipt(trade.id, seller.id)
    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.buyer_confirm_receipt(trade.id, buyer.id)
    assert exc.value.code == "illegal_transition"


@pytest.mark.asyncio
async def test_confirm_without_inventory_check(session_factory, cache, market, db_get):
    seller, buyer, item = market
    svc = TradeService(session_factory, cache=cache, inventory_checker=None)
    shipped = await _shipped(svc, seller, buyer, item)

    done = await svc.buyer_confirm_receipt(shipped.id, buyer.id)
    assert done.status == TradeStatus.COMPLETED
    assert (await db_get(Item, item.id)).owner_id == buyer.id


# ── cancel_trade ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_refunds_buyer(trade_service, market, db_get, db_rows):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.seller_approve(trade.id, seller.id)

    cancelled = await trade_service.cancel_trade(trade.id, seller.id, reason="out of stock")

    assert cancelled.status == TradeStatus.CANCELLED
    assert cancelled.history[-1].note == "out of stock"
    assert (await db_get(User, buyer.id)).balance_usd == Decimal("15")
    assert (await db_get(Item, item.id)).is_listed is False

    rows = {t.type: t for t in await db_rows(Transaction, Transaction.trade_id == trade.id)}
    assert rows["purchase"].status == "cancelled"
    assert rows["refund"].amount == Decimal("10")


@pytest.mark.asyncio
async def test_cancel_with_relist(trade_service, make_user, market, db_get):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)

    await trade_service.cancel_trade(trade.id, buyer.id, relist=True)

    assert (await db_get(Item, item.id)).is_listed is True
    other = await make_user()
    again = await trade_service.open_trade(item.id, other.id)
    assert again.status == TradeStatus.AWAITING_SELLER


@pytest.mark.asyncio
async def test_relist_skipped_when_asset_listed_elsewhere(trade_service, market, db_exec, db_rows, db_get):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await db_exec(insert(Item).values(
        asset_id=item.asset_id, owner_id=seller.id, market_hash_name=item.market_hash_name,
        price=Decimal("12"), price_gel=Decimal("21.60"), currency_rate=Decimal("1.8"), is_listed=True,
    ))
    other = (await db_rows(Item, Item.id != item.id))[0]

    await trade_service.cancel_trade(trade.id, seller.id, relist=True)

    assert (await db_get(Item, item.id)).is_listed is False
    assert (await db_get(Item, other.id)).is_listed is True


@pytest.mark.asyncio
async def test_asset_in_active_trade_cannot_be_listed_again(trade_service, listing_service, make_user, market, db_rows):
    seller, buyer, item = market
    await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(ConflictError) as exc:
        await listing_service.list_item(seller.id, item.asset_id, item.market_hash_name, "12")
    assert exc.value.code == "item_in_trade"

    active = await db_rows(Trade, Trade.asset_id == item.asset_id, Trade.status.in_(ACTIVE_TRADE_STATUSES))
    assert len(active) == 1
    assert len(await db_rows(Item, Item.asset_id == item.asset_id)) == 1


@pytest.mark.asyncio
async def test_second_trade_on_same_asset_is_rejected(trade_service, make_user, market, db_exec, db_rows, db_get):
    seller, buyer, item = market
    second_buyer = await make_user()
    await trade_service.open_trade(item.id, buyer.id)
    # a second listed row for the same asset, as left by a listing that raced the first purchase
    await db_exec(insert(Item).values(
        asset_id=item.asset_id, owner_id=seller.id, market_hash_name=item.market_hash_name,
        price=Decimal("12"), price_gel=Decimal("21.60"), currency_rate=Decimal("1.8"), is_listed=True,
    ))
    duplicate = (await db_rows(Item, Item.id != item.id))[0]

    with pytest.raises(ConflictError) as exc:
        await trade_service.open_trade(duplicate.id, second_buyer.id)
    assert exc.value.code == "item_in_trade"

    assert len(await db_rows(Trade, Trade.asset_id == item.asset_id)) == 1
    assert (await db_get(User, second_buyer.id)).balance_usd == Decimal("100")
    assert (await db_get(Item, duplicate.id)).is_listed is True


@pytest.mark.asyncio
async def test_relisted_after_cancel_can_be_sold_again(trade_service, listing_service, make_user, market):
    seller, buyer, item = market
    first = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.cancel_trade(first.id, seller.id)

    again = await listing_service.list_item(seller.id, item.asset_id, item.market_hash_name, "11")
    other = await make_user()
    trade = await trade_service.open_trade(again.id, other.id)
    assert trade.asset_id == item.asset_id
    assert trade.status == TradeStatus.AWAITING_SELLER


@pytest.mark.asyncio
async def test_cancel_completed_trade_is_rejected(trade_service, market, db_get):
    seller, buyer, item = market
    shipped = await _shipped(trade_service, seller, buyer, item)
    await trade_service.buyer_confirm_receipt(shipped.id, buyer.id)

    with pytest.raises(PreconditionFailed) as exc:
        await trade_service.cancel_trade(shipped.id, buyer.id)
    assert exc.value.code == "trade_terminal"
    assert (await db_get(User, seller.id)).balance_usd == Decimal("9.75")


@pytest.mark.asyncio
async def test_outsider_cannot_cancel(trade_service, make_user, market):
    seller, buyer, item = market
    outsider = await make_user()
    trade = await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(PermissionDenied):
        await trade_service.cancel_trade(trade.id, outsider.id)


# ── update_status ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_status_illegal_transition(trade_service, market):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)

    with pytest.raises(PreconditionFailed):
        await trade_service.update_status(trade.id, TradeStatus.COMPLETED, "skip ahead")
    with pytest.raises(ValidationError):
        await trade_service.update_status(trade.id, "bogus", "nope")

    assert (await trade_service.get_trade(trade.id)).status == TradeStatus.AWAITING_SELLER


@pytest.mark.asyncio
async def test_update_status_failed_refunds(trade_service, make_user, market, db_get):
    seller, buyer, item = market
    admin = await make_user(is_admin=True)
    trade = await trade_service.open_trade(item.id, buyer.id)

    failed = await trade_service.update_status(trade.id, "failed", "steam outage", actor_id=admin.id)

    assert failed.status == TradeStatus.FAILED
    assert failed.history[-1].actor_id == admin.id
    assert (await db_get(User, buyer.id)).balance_usd == Decimal("15")


@pytest.mark.asyncio
async def test_update_status_completed_settles(trade_service, market, db_get):
    seller, buyer, item = market
    trade = await trade_service.open_trade(item.id, buyer.id)
    await trade_service.update_status(trade.id, TradeStatus.ACCEPTED, "manual")

    done = await trade_service.update_status(trade.id, TradeStatus.COMPLETED, "manual")

    assert done.status == TradeStatus.COMPLETED
    assert (await db_get(Item, item.id)).owner_id == buyer.id
    assert (await db_get(User, seller.id)).balance_usd == Decimal("9.75")


# ── reads ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_user_trades(trade_service, listing_service, market):
    seller, buyer, item = market
    second = await listing_service.list_item(seller.id, "999000", "AWP | Asiimov (Battle-Scarred)", "3")
    t1 = await trade_service.open_trade(item.id, buyer.id)
    t2 = await trade_service.open_trade(second.id, buyer.id)
    await trade_service.cancel_trade(t1.id, buyer.id)

    active = await trade_service.list_user_trades(buyer.id)
    everything = await trade_service.list_user_trades(buyer.id, active_only=False)
    seller_view = await trade_service.list_user_trades(seller.id)

    assert [t.id for t in active] == [t2.id]
    assert {t.id for t in everything} == {t1.id, t2.id}
    assert [t.id for t in seller_view] == [t2.id]


@pytest.mark.asyncio
async def test_get_missing_trade(trade_service):
    with pytest.raises(NotFoundError):
        await trade_service.get_trade(12345)


def test_integrity_error_on_active_trade_index_is_fatal():
    reconciliation_state["flagged"].clear()
    err = IntegrityError("INSERT INTO trade", {}, Exception("UNIQUE constraint failed: trade.item_id"))

    mapped = integrity_to_error(err, item_id=7)

    assert isinstance(mapped, FatalInvariantViolation)
    assert reconciliation_state["flagged"][-1]["item_id"] == 7
    reconciliation_state["flagged"].clear()


def test_other_integrity_errors_are_conflicts():
    err = IntegrityError("UPDATE item", {}, Exception("UNIQUE constraint failed: item.asset_id"))
    assert isinstance(integrity_to_error(err, item_id=1), ConflictError)


def test_reconciliation_flags_are_bounded():
    flagged = reconciliation_state["flagged"]
    flagged.clear()
    limit = flagged.maxlen

    for n in range(limit + 5):
        flag_for_reconciliation("test", n=n)

    assert len(flagged) == limit
    assert flagged[0]["n"] == 5
    assert flagged[-1]["n"] == limit + 4
    assert clear_reconciliation() == limit
    assert len(flagged) == 0
    assert clear_reconciliation() == 0
