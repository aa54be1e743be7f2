from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_utils import keccak

from bot import config
from bot.errors import NoPoolFoundError
from bot.types import PoolInfo
from infra.cache import TTLCache
from infra.metrics import METRICS


logger = logging.getLogger(__name__)

ZERO_ADDR = "0x0000000000000000000000000000000000000000"


def _selector(sig: str) -> str:
    return keccak(text=sig)[:4].hex()


_SEL_GET_POOL = _selector("getPool(address,address,uint24)")
_SEL_LIQUIDITY = _selector("liquidity()")


def _sorted_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    a = str(token_a or "").lower()
    b = str(token_b or "").lower()
    if a <= b:
        return a, b
    return b, a


def _decode_address(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    hx = str(raw)
    if hx.startswith("0x"):
        hx = hx[2:]
    if len(hx) < 40:
        return None
    return ("0x" + hx[-40:]).lower()


def _decode_uint(raw: Any) -> Optional[int]:
    if not isinstance(raw, str):
        return None
    hx = raw[2:] if raw.startswith("0x") else raw
    if len(hx) < 64:
        return None
    try:
        return int(hx[:64], 16)
    except ValueError:
        return None


def _encode_get_pool(token0: str, token1: str, fee: int) -> str:
    params = encode(["address", "address", "uint24"], [token0, token1, int(fee)])
    return "0x" + _SEL_GET_POOL + params.hex()


@dataclass(frozen=True)
class PoolKey:
    chain: str
    token0: str
    token1: str
    fee: int

    def as_label(self) -> str:
        return f"v3:{self.chain}:{self.token0}/{self.token1}:{self.fee}"


class PoolDiscovery:
    """Finds the pool for a token pair by probing fee tiers in a fixed order.

    Every candidate tier is asked with one batched getPool round trip. When
    several pools exist and all of them report liquidity, the deepest wins;
    ties and missing liquidity fall back to the first pool in tier order, so
    the same chain state always yields the same pool.
    """

    def __init__(
        self,
        chain: str,
        factory: str,
        *,
        fee_tiers: Optional[Sequence[int]] = None,
        ttl_s: Optional[float] = None,
    ) -> None:
        self.chain = str(chain).lower()
        self.factory = factory
        self.fee_tiers: List[int] = list(fee_tiers or getattr(config, "FEE_TIERS", [3000, 500, 10000]))
        self._cache: TTLCache[PoolKey, str] = TTLCache(
            float(ttl_s if ttl_s is not None else getattr(config, "POOL_CACHE_TTL_S", 300.0))
        )

    def invalidate(self) -> None:
        self._cache.clear()

    async def _pool_addresses(self, rpc: Any, keys: List[PoolKey], timeout_s: Optional[float]) -> Dict[PoolKey, Optional[str]]:
        out: Dict[PoolKey, Optional[str]] = {}
        fetch: List[PoolKey] = []
        for key in keys:
            cached = self._cache.get(key)
            if cached is not None:
                METRICS.inc("pool_discovery_cache_hits", 1)
                out[key] = cached
            else:
                fetch.append(key)
        if not fetch:
            return out

        METRICS.inc("pool_discovery_requests_total", len(fetch))
        params_list = [
            [{"to": self.factory, "data": _encode_get_pool(k.token0, k.token1, k.fee)}, "latest"] for k in fetch
        ]
        batch = await rpc.call_batch("eth_call", params_list, timeout_s=timeout_s)
        for key, entry in zip(fetch, batch):
            addr = _decode_address(entry.get("result") if isinstance(entry, dict) else None)
            if addr is None:
                # Unknown, not cached: a later call may succeed.
                out[key] = None
                continue
            self._cache.set(key, addr)
            if addr == ZERO_ADDR:
                METRICS.inc_reason("pool_missing_keys", key.as_label(), 1)
            out[key] = addr
        return out

    async def _liquidities(self, rpc: Any, pools: List[str], timeout_s: Optional[float]) -> List[Optional[int]]:
        params_list = [[{"to": p, "data": "0x" + _SEL_LIQUIDITY}, "latest"] for p in pools]
        try:
            batch = await rpc.call_batch("eth_call", params_list, timeout_s=timeout_s)
        except Exception as e:
            logger.info("liquidity() batch failed on %s: %s", self.chain, e)
            return [None for _ in pools]
        return [_decode_uint(entry.get("result") if isinstance(entry, dict) else None) for entry in batch]

    async def discover(
        self,
        rpc: Any,
        token_in: str,
        token_out: str,
        *,
        fee_tier: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ) -> PoolInfo:
        token0, token1 = _sorted_tokens(token_in, token_out)
        tiers = [int(fee_tier)] if fee_tier else list(self.fee_tiers)
        keys = [PoolKey(self.chain, token0, token1, fee) for fee in tiers]
        found = await self._pool_addresses(rpc, keys, timeout_s)

        existing: List[Tuple[int, str]] = []
        for key in keys:
            addr = found.get(key)
            if addr and addr != ZERO_ADDR:
                existing.append((key.fee, addr))
        if not existing:
            raise NoPoolFoundError(
                f"no pool for {token_in}/{token_out} on {self.chain} (fee tiers {tiers})"
            )

        chosen = 0
        liquidity: List[Optional[int]] = [None for _ in existing]
        if len(existing) > 1:
            liquidity = await self._liquidities(rpc, [addr for _fee, addr in existing], timeout_s)
            if all(v is not None for v in liquidity):
                best = max(int(v or 0) for v in liquidity)
                chosen = next(i for i, v in enumerate(liquidity) if int(v or 0) == best)

        fee, addr = existing[chosen]
        logger.info("pool selected chain=%s pair=%s/%s fee=%s pool=%s", self.chain, token_in, token_out, fee, addr)
        return PoolInfo(
            chain=self.chain,
            token_in=str(token_in).lower(),
            token_out=str(token_out).lower(),
            address=addr,
            fee_tier=int(fee),
            liquidity=liquidity[chosen],
        )
