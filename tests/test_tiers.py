import asyncio
import random
from dataclasses import replace
from decimal import Decimal

import pytest

from bot.chain_config import get_chain
from bot.stores import InMemoryTierStore
from bot.tiers import FREE, TIERS, TierService, compute_fee, get_tier, select_strategy, trade_size_warning
from infra.cache import TTLCache


def test_free_tier_fee_is_exact() -> None:
    res = compute_fee(Decimal("0.1"), TIERS["FREE"])
    assert res.fee_amount == Decimal("0.0003")
    assert res.net_amount == Decimal("0.0997")
    assert res.fee_bps == 30
    assert res.fee_amount + res.net_amount == res.gross_amount


def test_whale_fee_and_wei_precision() -> None:
    res = compute_fee("1.000000000000000001", TIERS["WHALE"])
    assert res.fee_bps == 15
    assert res.fee_amount == Decimal("0.0015000000000000000015")
    assert res.fee_amount + res.net_amount == Decimal("1.000000000000000001")


def test_zero_gross_has_zero_fee() -> None:
    res = compute_fee(Decimal(0), FREE)
    assert res.fee_amount == 0
    assert res.net_amount == 0


def test_fee_rejects_negative() -> None:
    with pytest.raises(ValueError):
        compute_fee(Decimal("-0.1"), FREE)


@pytest.mark.parametrize("tier_name", sorted(TIERS))
def test_fee_identity_holds_for_random_amounts(tier_name) -> None:
    tier = TIERS[tier_name]
    rng = random.Random(1234)
    amounts = [Decimal(0), Decimal("1e-18")]
    amounts += [Decimal(rng.randrange(0, 10**22)) / Decimal(10**18) for _ in range(500)]
    for gross in amounts:
        res = compute_fee(gross, tier)
        assert res.fee_amount + res.net_amount == gross
        assert res.fee_amount == gross * tier.fee_bps / Decimal(10000)
        assert 0 <= res.fee_amount <= gross


def test_unknown_tier_name_is_free() -> None:
    assert get_tier("platinum") is FREE
    assert get_tier(None) is FREE
    assert get_tier("pro") is TIERS["PRO"]


def test_strategy_mapping_per_tier() -> None:
    base = replace(get_chain("base"), rpc_urls=["https://a.example", "https://b.example"])
    free = select_strategy(TIERS["FREE"], base)
    whale = select_strategy(TIERS["WHALE"], base)
    assert free.rpc_mode == "failover"
    assert free.gas.fee_multiplier == Decimal("1.1")
    assert free.gas.gas_limit_ceiling == 200_000
    assert free.private_rpc_url is None
    assert whale.gas.priority_fee_gwei == Decimal("10")
    assert whale.gas.gas_limit_ceiling == 500_000
    assert whale.race_width <= len(whale.rpc_urls)
    assert select_strategy(TIERS["WHALE"], base) == whale


def test_lightning_without_private_endpoint_notes_fallback() -> None:
    base = replace(get_chain("base"), private_rpc_url=None)
    strategy = select_strategy(TIERS["WHALE"], base)
    assert strategy.mev == "mandatory"
    assert strategy.private_rpc_url is None
    assert strategy.note and "private" in strategy.note


def test_trade_size_warning() -> None:
    assert trade_size_warning(Decimal("6"), FREE, "ETH") is not None
    assert trade_size_warning(Decimal("5"), FREE, "ETH") is None


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingStore(InMemoryTierStore):
    def __init__(self):
        super().__init__()
        self.lookups = 0

    async def get_user_tier(self, user_id):
        self.lookups += 1
        return await super().get_user_tier(user_id)


class BrokenStore:
    async def get_user_tier(self, user_id):
        raise ConnectionError("subscription db down")


def test_tier_cache_and_invalidate() -> None:
    store = CountingStore()
    store.set_tier("u1", "PRO")
    clock = Clock()
    svc = TierService(store, cache=TTLCache(300.0, clock=clock))

    async def run():
        t1, w1 = await svc.resolve("u1")
        store.set_tier("u1", "WHALE")
        t2, _ = await svc.resolve("u1")
        svc.invalidate("u1")
        t3, _ = await svc.resolve("u1")
        return t1, w1, t2, t3

    t1, w1, t2, t3 = asyncio.run(run())
    assert (t1.name, t2.name, t3.name) == ("PRO", "PRO", "WHALE")
    assert w1 is None
    assert store.lookups == 2


def test_tier_lookup_failure_degrades_to_free() -> None:
    tier, warning = asyncio.run(TierService(BrokenStore()).resolve("u1"))
    assert tier is FREE
    assert warning and "tier lookup failed" in warning


def test_expired_subscription_is_free() -> None:
    clock = Clock()
    clock.now = 1000.0
    store = InMemoryTierStore(clock=clock)
    store.set_tier("u1", "WHALE", expires_at=999.0)
    tier, warning = asyncio.run(TierService(store).resolve("u1"))
    assert tier is FREE
    assert warning is None
