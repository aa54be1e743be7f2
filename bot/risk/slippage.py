# bot/risk/slippage.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from bot import config
from bot.errors import InvalidSlippageError
from bot.types import LiquidityProfile, MarketSnapshot
from infra.metrics import METRICS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryRule:
    name: str
    max_liquidity_usd: Optional[float]  # exclusive upper bound; None = unbounded
    base_bps: int
    floor_bps: int
    risk_level: str
    max_native: Decimal


# Ordered worst -> best. Base and floor never increase along this order.
CATEGORIES: Tuple[CategoryRule, ...] = (
    CategoryRule("micro", 1_000.0, 5000, 5000, "extreme", Decimal("0.01")),
    CategoryRule("very-low", 10_000.0, 3000, 3000, "very-high", Decimal("0.05")),
    CategoryRule("low", 50_000.0, 1500, 1500, "high", Decimal("0.1")),
    CategoryRule("medium", 200_000.0, 800, 500, "medium", Decimal("0.5")),
    CategoryRule("good", 1_000_000.0, 500, 300, "low", Decimal("1.0")),
    CategoryRule("high", None, 300, 100, "very-low", Decimal("5.0")),
)
CATEGORY_NAMES = tuple(c.name for c in CATEGORIES)
DEFAULT_CATEGORY = "low"


def category_rule(name: str) -> CategoryRule:
    for rule in CATEGORIES:
        if rule.name == name:
            return rule
    raise KeyError(name)


def classify_liquidity(liquidity_usd: float) -> CategoryRule:
    liq = max(0.0, float(liquidity_usd or 0.0))
    for rule in CATEGORIES:
        if rule.max_liquidity_usd is None or liq < rule.max_liquidity_usd:
            return rule
    return CATEGORIES[-1]


def activity_level(volume_24h_usd: float, liquidity_usd: float) -> str:
    liq = float(liquidity_usd or 0.0)
    if liq <= 0:
        return "inactive"
    ratio = float(volume_24h_usd or 0.0) / liq
    if ratio > 2:
        return "very-active"
    if ratio > 0.5:
        return "active"
    if ratio > 0.1:
        return "moderate"
    if ratio > 0.01:
        return "low"
    return "inactive"


def _clamp_bps(bps: int) -> int:
    lo = int(getattr(config, "SLIPPAGE_MIN_BPS", 50))
    hi = int(getattr(config, "SLIPPAGE_MAX_BPS", 9900))
    return max(lo, min(hi, int(bps)))


def recommend_slippage_bps(
    category: str,
    amount_native: Decimal,
    *,
    buy_tax_bps: int = 0,
    sell_tax_bps: int = 0,
    market_cap_usd: Optional[float] = None,
) -> int:
    """Slippage recommendation for one buy.

    Pure function of its inputs. Worse categories never get a lower
    recommendation than better ones when everything else is equal.
    """
    rule = category_rule(category)
    amount = Decimal(str(amount_native))
    bps = int(rule.base_bps)

    large = Decimal(str(getattr(config, "LARGE_TRADE_NATIVE", "0.1")))
    dust = Decimal(str(getattr(config, "DUST_TRADE_NATIVE", "0.001")))
    if amount >= large or amount > rule.max_native:
        bps = bps * 12 // 10
    elif amount <= dust:
        bps = max(bps * 9 // 10, rule.floor_bps)

    micro_cap = float(getattr(config, "MICRO_CAP_USD", 100_000.0))
    if market_cap_usd is not None and 0 < float(market_cap_usd) < micro_cap:
        bps += 100

    max_tax = max(int(buy_tax_bps or 0), int(sell_tax_bps or 0))
    if max_tax > 0:
        bps = max(bps, max_tax + 100)

    return _clamp_bps(bps)


def liquidity_warnings(
    rule: CategoryRule,
    activity: str,
    amount_native: Decimal,
    *,
    buy_tax_bps: int = 0,
    sell_tax_bps: int = 0,
    market_cap_usd: Optional[float] = None,
) -> List[str]:
    out: List[str] = []
    if rule.name == "micro":
        out.append("extremely low liquidity: price impact and failure risk are extreme")
    elif rule.name == "very-low":
        out.append("very low liquidity: expect high price impact")
    elif rule.name == "low":
        out.append("low liquidity: keep the position small")
    if activity in ("low", "inactive"):
        out.append(f"trading activity is {activity} over the last 24h")
    if Decimal(str(amount_native)) > rule.max_native:
        out.append(f"trade size above recommended maximum of {rule.max_native} for {rule.name} liquidity")
    max_tax = max(int(buy_tax_bps or 0), int(sell_tax_bps or 0))
    if max_tax > 0:
        out.append(f"token charges up to {max_tax / 100:.2f}% transfer tax")
    micro_cap = float(getattr(config, "MICRO_CAP_USD", 100_000.0))
    if market_cap_usd is not None and 0 < float(market_cap_usd) < micro_cap:
        out.append("micro market cap")
    return out


def build_profile(snapshot: MarketSnapshot, amount_native: Decimal) -> LiquidityProfile:
    rule = classify_liquidity(snapshot.liquidity_usd)
    activity = activity_level(snapshot.volume_24h_usd, snapshot.liquidity_usd)
    recommended = recommend_slippage_bps(
        rule.name,
        amount_native,
        buy_tax_bps=snapshot.buy_tax_bps,
        sell_tax_bps=snapshot.sell_tax_bps,
        market_cap_usd=snapshot.market_cap_usd,
    )
    return LiquidityProfile(
        category=rule.name,
        recommended_slippage_bps=recommended,
        max_recommended_native=rule.max_native,
        risk_level=rule.risk_level,
        activity_level=activity,
        liquidity_usd=float(snapshot.liquidity_usd),
        volume_24h_usd=float(snapshot.volume_24h_usd),
        market_cap_usd=snapshot.market_cap_usd,
        buy_tax_bps=int(snapshot.buy_tax_bps),
        sell_tax_bps=int(snapshot.sell_tax_bps),
        warnings=tuple(
            liquidity_warnings(
                rule,
                activity,
                amount_native,
                buy_tax_bps=snapshot.buy_tax_bps,
                sell_tax_bps=snapshot.sell_tax_bps,
                market_cap_usd=snapshot.market_cap_usd,
            )
        ),
    )


def default_profile(amount_native: Decimal, reason: str = "market data unavailable") -> LiquidityProfile:
    """Conservative profile used when market data cannot be read."""
    rule = category_rule(DEFAULT_CATEGORY)
    return LiquidityProfile(
        category=rule.name,
        recommended_slippage_bps=recommend_slippage_bps(rule.name, amount_native),
        max_recommended_native=rule.max_native,
        risk_level=rule.risk_level,
        warnings=(reason,),
        degraded=True,
    )


def validate_requested_slippage(requested_bps: Any) -> int:
    try:
        bps = int(requested_bps)
    except (TypeError, ValueError) as e:
        raise InvalidSlippageError(f"slippage must be an integer bps value, got {requested_bps!r}") from e
    if isinstance(requested_bps, float) and requested_bps != bps:
        raise InvalidSlippageError(f"slippage must be whole bps, got {requested_bps}")
    if not 1 <= bps <= 9900:
        raise InvalidSlippageError(f"slippage {bps} bps outside [1, 9900]")
    return bps


def final_slippage_bps(requested_bps: int, recommended_bps: int) -> int:
    """The caller can only widen protection, never narrow it below the advice."""
    return max(int(requested_bps), int(recommended_bps))


class LiquidityAdvisor:
    def __init__(self, market_data: Any, *, timeout_s: Optional[float] = None) -> None:
        self.market_data = market_data
        self.timeout_s = float(timeout_s if timeout_s is not None else getattr(config, "READ_TIMEOUT_S", 2.0))

    async def analyze(self, token: str, chain: str, amount_native: Decimal) -> LiquidityProfile:
        try:
            snapshot = await asyncio.wait_for(self.market_data.get_snapshot(token, chain), timeout=self.timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            METRICS.inc_reason("market_data_failed", type(e).__name__, 1)
            logger.warning("market data failed token=%s chain=%s: %s; using conservative profile", token, chain, e)
            return default_profile(amount_native)
        if snapshot is None:
            return default_profile(amount_native, "no market data for token")
        profile = build_profile(snapshot, amount_native)
        METRICS.inc_reason("liquidity_category", profile.category, 1)
        return profile
