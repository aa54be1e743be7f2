from decimal import Decimal

import pytest

from bot.errors import ErrorKind, IllegalTransition
from bot.trade import Trade, TradeBook, TradeKey, TradeState


def _trade(created_at: float = 0.0) -> Trade:
    return Trade(
        key=TradeKey("u1", "t1"),
        chain="base",
        token_out="0xtoken",
        gross_amount=Decimal("0.1"),
        requested_slippage_bps=100,
        created_at=created_at,
    )


def test_happy_path_transitions() -> None:
    t = _trade()
    for state in (
        TradeState.QUOTED,
        TradeState.FEE_APPLIED,
        TradeState.WALLET_VALIDATED,
        TradeState.SUBMITTED,
        TradeState.CONFIRMED,
    ):
        t.advance(state, now_s=1.0)
    assert t.terminal
    assert [s for s, _ in t.history][0] is TradeState.CREATED
    assert len(t.history) == 6


def test_skipping_a_state_is_illegal() -> None:
    t = _trade()
    with pytest.raises(IllegalTransition):
        t.advance(TradeState.SUBMITTED)
    assert t.state is TradeState.CREATED


def test_terminal_states_are_final() -> None:
    t = _trade()
    t.fail(ErrorKind.NO_POOL_FOUND, "no pool")
    assert t.failure.state is TradeState.CREATED
    assert t.error_kind is ErrorKind.NO_POOL_FOUND
    with pytest.raises(IllegalTransition):
        t.advance(TradeState.QUOTED)
    with pytest.raises(IllegalTransition):
        t.fail(ErrorKind.INTERNAL, "again")


def test_summary_carries_failure_context() -> None:
    t = _trade()
    t.advance(TradeState.QUOTED)
    t.fail(ErrorKind.INSUFFICIENT_BALANCE, "not enough")
    s = t.summary()
    assert s["trade_id"] == "t1"
    assert s["state"] == "FAILED"
    assert s["error_kind"] == "InsufficientBalance"


def test_trade_book_archives_old_terminal_trades() -> None:
    now = [10_000.0]
    book = TradeBook(retention_s=60.0, clock=lambda: now[0])
    live = Trade(key=TradeKey("u1", "live"), chain="base", token_out="0x1", gross_amount=Decimal(1), requested_slippage_bps=1, created_at=0.0)
    done = Trade(key=TradeKey("u1", "done"), chain="base", token_out="0x1", gross_amount=Decimal(1), requested_slippage_bps=1, created_at=0.0)
    book.add(live)
    book.add(done)
    done.fail(ErrorKind.CANCELLED, "cancelled", now_s=9_000.0)
    assert book.find("done") is done
    assert book.prune() == 1
    assert book.find("done") is None
    assert book.get(TradeKey("u1", "live")) is live
    assert [t.trade_id for t in book.for_user("u1")] == ["live"]
