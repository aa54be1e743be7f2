import asyncio
from decimal import Decimal

import pytest

from bot.errors import InvalidSlippageError
from bot.risk.slippage import (
    CATEGORY_NAMES,
    LiquidityAdvisor,
    activity_level,
    build_profile,
    classify_liquidity,
    final_slippage_bps,
    recommend_slippage_bps,
    validate_requested_slippage,
)
from bot.types import MarketSnapshot


def test_classify_liquidity_boundaries() -> None:
    assert classify_liquidity(0).name == "micro"
    assert classify_liquidity(999.99).name == "micro"
    assert classify_liquidity(1_000).name == "very-low"
    assert classify_liquidity(49_999).name == "low"
    assert classify_liquidity(200_000).name == "good"
    assert classify_liquidity(5_000_000).name == "high"


def test_micro_pool_never_below_5000() -> None:
    for amount in ("0.0005", "0.01", "0.5", "3"):
        assert recommend_slippage_bps("micro", Decimal(amount)) >= 5000


def test_user_request_only_widens() -> None:
    rec = recommend_slippage_bps("very-low", Decimal("0.01"))
    assert rec == 3000
    assert final_slippage_bps(100, rec) == 3000
    assert final_slippage_bps(4000, rec) == 4000


def test_recommendation_is_monotone_in_liquidity() -> None:
    for amount in ("0.0005", "0.01", "0.2", "10"):
        recs = [recommend_slippage_bps(c, Decimal(amount)) for c in CATEGORY_NAMES]
        assert recs == sorted(recs, reverse=True), (amount, recs)


def test_size_adjustments_and_clamp() -> None:
    assert recommend_slippage_bps("medium", Decimal("0.2")) == 960
    assert recommend_slippage_bps("medium", Decimal("0.001")) == 720
    assert recommend_slippage_bps("high", Decimal("0.0001")) == 270
    assert recommend_slippage_bps("high", Decimal("0.05"), buy_tax_bps=9900) == 9900


def test_taxes_and_micro_cap_raise_floor() -> None:
    assert recommend_slippage_bps("good", Decimal("0.05"), sell_tax_bps=1000) == 1100
    assert recommend_slippage_bps("good", Decimal("0.05"), market_cap_usd=50_000) == 600


def test_activity_levels() -> None:
    assert activity_level(300_000, 100_000) == "very-active"
    assert activity_level(10_000, 100_000) == "low"
    assert activity_level(0, 0) == "inactive"


@pytest.mark.parametrize("bps", [0, 9901, -5, "abc", 12.5])
def test_invalid_requested_slippage(bps) -> None:
    with pytest.raises(InvalidSlippageError):
        validate_requested_slippage(bps)


def test_valid_requested_slippage() -> None:
    assert validate_requested_slippage(1) == 1
    assert validate_requested_slippage("9900") == 9900


def test_build_profile_warnings() -> None:
    profile = build_profile(MarketSnapshot(liquidity_usd=500.0, volume_24h_usd=1.0), Decimal("0.5"))
    assert profile.category == "micro"
    assert profile.risk_level == "extreme"
    assert profile.max_recommended_native == Decimal("0.01")
    assert profile.recommended_slippage_bps == 6000
    assert any("recommended maximum" in w for w in profile.warnings)
    assert not profile.degraded


class FailingMarketData:
    async def get_snapshot(self, token, chain):
        raise ConnectionError("market api down")


class SlowMarketData:
    async def get_snapshot(self, token, chain):
        await asyncio.sleep(1.0)


def test_advisor_degrades_to_conservative_profile() -> None:
    advisor = LiquidityAdvisor(FailingMarketData())
    profile = asyncio.run(advisor.analyze("0xabc", "base", Decimal("0.05")))
    assert profile.degraded
    assert profile.category == "low"
    assert profile.recommended_slippage_bps == 1500

    slow = LiquidityAdvisor(SlowMarketData(), timeout_s=0.01)
    assert asyncio.run(slow.analyze("0xabc", "base", Decimal("0.05"))).degraded
