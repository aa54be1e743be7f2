import asyncio
from decimal import Decimal

import pytest

from bot.types import WalletCandidate, WalletRecord
from bot.wallets import (
    find_wallet,
    has_sufficient_balance,
    load_candidates,
    rank_wallets,
    select_wallet,
    wallet_score,
)
from infra.rpc import ProviderUnavailableError, RPCTransportError


NOW = 1_700_000_000.0
DAY = 86_400.0


def _w(slot, balance, *, imported=False, age_days=30, address=None):
    return WalletCandidate(
        slot=slot,
        address=address or "0x" + str(slot) * 40,
        balance=Decimal(balance),
        is_imported=imported,
        created_at=NOW - age_days * DAY,
    )


def test_score_components() -> None:
    assert wallet_score(_w(1, "0"), now_s=NOW) == 0
    assert wallet_score(_w(1, "2", imported=True), now_s=NOW) == 120
    assert wallet_score(_w(1, "9"), now_s=NOW) == 50
    assert wallet_score(_w(1, "0", age_days=5), now_s=NOW) == 15


def test_imported_wallet_outranks_richer_generated_wallet() -> None:
    imported = _w(2, "0.5", imported=True)
    rich = _w(1, "100")
    assert select_wallet([rich, imported], now_s=NOW) is imported


def test_funded_wallet_beats_higher_scored_empty_one() -> None:
    empty_imported = _w(1, "0", imported=True)
    funded = _w(2, "0.01")
    assert select_wallet([empty_imported, funded], now_s=NOW) is funded


def test_all_empty_falls_back_to_top_ranked() -> None:
    a = _w(3, "0", age_days=1)
    b = _w(1, "0", age_days=40)
    assert select_wallet([b, a], now_s=NOW) is a
    assert select_wallet([], now_s=NOW) is None


def test_ties_are_broken_by_slot_then_address() -> None:
    a = _w(2, "1")
    b = _w(1, "1")
    ranked = rank_wallets([a, b], now_s=NOW)
    assert [c.slot for c in ranked] == [1, 2]
    assert rank_wallets([b, a], now_s=NOW) == ranked


def test_find_wallet_by_slot_or_address() -> None:
    a = _w(1, "1", address="0xAbCd000000000000000000000000000000000001")
    b = _w(7, "1")
    assert find_wallet([a, b], 7) is b
    assert find_wallet([a, b], "7") is b
    assert find_wallet([a, b], "0xabcd000000000000000000000000000000000001") is a
    assert find_wallet([a, b], "0xdead") is None


def test_balance_check_includes_reserve() -> None:
    w = _w(1, "0.1005")
    assert has_sufficient_balance(w, Decimal("0.0997"), Decimal("0.0005"))
    assert not has_sufficient_balance(w, Decimal("0.1001"), Decimal("0.0005"))


class FakeAdapter:
    def __init__(self, balances):
        self.balances = balances

    async def get_balance(self, address, *, execution=None):
        value = self.balances[address]
        if isinstance(value, Exception):
            raise value
        return value


def test_load_candidates_treats_failed_reads_as_empty() -> None:
    records = [
        WalletRecord(slot=1, address="0xa", is_imported=True, created_at=NOW),
        WalletRecord(slot=2, address="0xb", created_at=NOW),
    ]
    adapter = FakeAdapter({"0xa": 2 * 10**18, "0xb": ConnectionError("rpc down")})
    cands = asyncio.run(load_candidates(adapter, records))
    assert cands[0].balance == Decimal(2)
    assert cands[0].is_imported
    assert cands[1].balance == 0
    assert cands[0].balance_known
    assert not cands[1].balance_known


def test_load_candidates_all_reads_failing_is_provider_unavailable() -> None:
    records = [
        WalletRecord(slot=1, address="0xa", created_at=NOW),
        WalletRecord(slot=2, address="0xb", created_at=NOW),
    ]
    adapter = FakeAdapter({"0xa": RPCTransportError("timeout(2s)"), "0xb": RPCTransportError("http_503")})
    with pytest.raises(ProviderUnavailableError):
        asyncio.run(load_candidates(adapter, records))
