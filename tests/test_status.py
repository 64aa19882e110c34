"""Tests for the trade transition table."""

import pytest

from app.core.errors import PreconditionFailed
from app.models.status import (
    ACTIVE_TRADE_STATUSES,
    RELEASE_STATUSES,
    TERMINAL_TRADE_STATUSES,
    TradeStatus,
    can_transition,
    ensure_transition,
    sources_for,
)


def test_terminal_and_active_partition_all_statuses():
    assert ACTIVE_TRADE_STATUSES | TERMINAL_TRADE_STATUSES == set(TradeStatus)
    assert not ACTIVE_TRADE_STATUSES & TERMINAL_TRADE_STATUSES
    assert TERMINAL_TRADE_STATUSES == {
        TradeStatus.COMPLETED, TradeStatus.CANCELLED, TradeStatus.FAILED,
        TradeStatus.REJECTED, TradeStatus.EXPIRED,
    }
    assert TradeStatus.COMPLETED not in RELEASE_STATUSES


@pytest.mark.parametrize("src,dst", [
    (TradeStatus.CREATED, TradeStatus.AWAITING_SELLER),
    (TradeStatus.AWAITING_SELLER, TradeStatus.ACCEPTED),
    (TradeStatus.AWAITING_SELLER, TradeStatus.REJECTED),
    (TradeStatus.ACCEPTED, TradeStatus.OFFER_SENT),
    (TradeStatus.ACCEPTED, TradeStatus.COMPLETED),
    (TradeStatus.OFFER_SENT, TradeStatus.COMPLETED),
    (TradeStatus.OFFER_SENT, TradeStatus.EXPIRED),
])
def test_legal_transitions(src, dst):
    assert can_transition(src, dst)
    ensure_transition(src, dst)


@pytest.mark.parametrize("status", sorted(ACTIVE_TRADE_STATUSES, key=lambda s: s.value))
def test_every_active_status_can_be_cancelled_failed_or_expired(status):
    for dst in (TradeStatus.CANCELLED, TradeStatus.FAILED, TradeStatus.EXPIRED):
        assert can_transition(status, dst)


def test_shipment_before_approval_is_illegal():
    with pytest.raises(PreconditionFailed) as exc:
        ensure_transition(TradeStatus.AWAITING_SELLER, TradeStatus.OFFER_SENT)
    assert exc.value.code == "illegal_transition"


def test_terminal_status_cannot_move():
    for src in TERMINAL_TRADE_STATUSES:
        for dst in TradeStatus:
            assert not can_transition(src, dst)
    with pytest.raises(PreconditionFailed) as exc:
        ensure_transition(TradeStatus.COMPLETED, TradeStatus.CANCELLED)
    assert exc.value.code == "trade_terminal"


def test_string_values_are_accepted():
    assert can_transition("accepted", "offer_sent")
    assert TradeStatus("offer_sent").is_terminal is False
    assert TradeStatus("expired").is_terminal is True


def test_sources_for_completed():
    assert sources_for(TradeStatus.COMPLETED) == {TradeStatus.ACCEPTED, TradeStatus.OFFER_SENT}
    assert sources_for(TradeStatus.CREATED) == frozenset()
