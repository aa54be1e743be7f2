from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any, Dict, Optional, Tuple

from bot import config
from bot.chain_config import ChainConfig
from bot.types import FeeResult
from infra.cache import TTLCache
from infra.gas import GasPolicy
from infra.metrics import METRICS


logger = logging.getLogger(__name__)

BPS_DENOMINATOR = Decimal(10_000)


@dataclass(frozen=True)
class Tier:
    name: str
    fee_bps: int
    speed: str
    concurrency: str
    race_width: int
    gas_multiplier: Decimal
    priority_fee_gwei: Decimal
    gas_limit_ceiling: int
    mev: str
    max_trade_native: Decimal


def _tier_from_config(name: str, raw: Dict[str, Any]) -> Tier:
    return Tier(
        name=name,
        fee_bps=int(raw["fee_bps"]),
        speed=str(raw["speed"]),
        concurrency=str(raw.get("concurrency", "single")),
        race_width=int(raw.get("race_width", 1)),
        gas_multiplier=Decimal(str(raw.get("gas_multiplier", "1.1"))),
        priority_fee_gwei=Decimal(str(raw.get("priority_fee_gwei", "0.1"))),
        gas_limit_ceiling=int(raw.get("gas_limit_ceiling", 200_000)),
        mev=str(raw.get("mev", "none")),
        max_trade_native=Decimal(str(raw.get("max_trade_native", "5"))),
    )


TIERS: Dict[str, Tier] = {name: _tier_from_config(name, raw) for name, raw in config.TIERS.items()}
FREE = TIERS[getattr(config, "DEFAULT_TIER", "FREE")]


def get_tier(name: Any) -> Tier:
    """Tier by name; anything unknown is FREE."""
    return TIERS.get(str(name or "").strip().upper(), FREE)


def compute_fee(gross_amount: Any, tier: Tier) -> FeeResult:
    """fee = gross * bps / 10000 and net = gross - fee, exactly, in Decimal."""
    gross = Decimal(str(gross_amount))
    if not gross.is_finite() or gross < 0:
        raise ValueError(f"gross amount must be non-negative, got {gross}")
    with localcontext() as ctx:
        # Wide enough that multiplying and dividing wei-precision amounts never rounds.
        ctx.prec = 80
        fee = gross * Decimal(int(tier.fee_bps)) / BPS_DENOMINATOR
        net = gross - fee
    return FeeResult(gross_amount=gross, fee_bps=int(tier.fee_bps), fee_amount=fee, net_amount=net, tier=tier.name)


@dataclass(frozen=True)
class ExecutionStrategy:
    tier: str
    speed: str
    chain: str
    rpc_urls: Tuple[str, ...]
    concurrency: str
    race_width: int
    gas: GasPolicy
    mev: str
    private_rpc_url: Optional[str] = None
    note: Optional[str] = None

    @property
    def rpc_mode(self) -> str:
        return "race" if self.concurrency == "race" and len(self.rpc_urls) > 1 else "failover"


def select_strategy(tier: Tier, chain: ChainConfig) -> ExecutionStrategy:
    """Pure mapping from (tier, chain) to how the trade is executed."""
    per_chain = getattr(config, "TIER_RPC_ENDPOINTS", {}).get(chain.name, {})
    urls = [u for u in (per_chain.get(tier.name) or []) if u] or list(chain.rpc_urls)

    private_url = getattr(config, "PRIVATE_RPC_URLS", {}).get(chain.name) or chain.private_rpc_url
    note = None
    if tier.mev == "none":
        private_url = None
    elif tier.mev == "mandatory" and not private_url:
        note = f"no private submission endpoint on {chain.name}; using best public endpoint"

    return ExecutionStrategy(
        tier=tier.name,
        speed=tier.speed,
        chain=chain.name,
        rpc_urls=tuple(urls),
        concurrency=tier.concurrency,
        race_width=max(1, min(int(tier.race_width), len(urls))),
        gas=GasPolicy(
            name=tier.speed,
            fee_multiplier=tier.gas_multiplier,
            priority_fee_gwei=tier.priority_fee_gwei,
            gas_limit_buffer=Decimal(str(getattr(config, "GAS_LIMIT_BUFFER", 1.2))),
            gas_limit_ceiling=tier.gas_limit_ceiling,
        ),
        mev=tier.mev,
        private_rpc_url=private_url,
        note=note,
    )


def trade_size_warning(gross_amount: Decimal, tier: Tier, native_symbol: str = "") -> Optional[str]:
    if Decimal(gross_amount) > tier.max_trade_native:
        return f"trade size {gross_amount} {native_symbol} above {tier.name} tier maximum of {tier.max_trade_native}".replace("  ", " ")
    return None


class TierService:
    """Resolves a user's tier through the tier store, with a TTL cache.

    Lookup errors never block a trade: they resolve to FREE and are reported
    back as degraded so the caller can record a warning.
    """

    def __init__(self, store: Any, *, ttl_s: Optional[float] = None, cache: Optional[TTLCache] = None) -> None:
        self.store = store
        self._cache: TTLCache[str, Tier] = cache or TTLCache(
            float(ttl_s if ttl_s is not None else getattr(config, "TIER_CACHE_TTL_S", 300.0))
        )

    def invalidate(self, user_id: str) -> None:
        self._cache.invalidate(str(user_id))

    async def resolve(self, user_id: str) -> Tuple[Tier, Optional[str]]:
        key = str(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached, None
        try:
            name = await self.store.get_user_tier(key)
        except Exception as e:
            METRICS.inc("tier_lookup_failed_total", 1)
            logger.warning("tier lookup failed user=%s: %s; defaulting to FREE", key, e)
            return FREE, f"tier lookup failed: {e}"
        tier = get_tier(name)
        if name and str(name).strip().upper() not in TIERS:
            logger.warning("unknown tier %r for user=%s; using FREE", name, key)
        self._cache.set(key, tier)
        return tier, None
