from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import aiohttp

from bot import config
from bot.artifacts import append_jsonl, read_jsonl
from bot.types import MarketSnapshot, RevenueRecord, WalletRecord


logger = logging.getLogger(__name__)


class WalletStore(Protocol):
    async def get_wallets(self, user_id: str, chain: str) -> List[WalletRecord]: ...

    async def get_signing_key(self, user_id: str, chain: str, address: str) -> str: ...


class MarketDataProvider(Protocol):
    async def get_snapshot(self, token: str, chain: str) -> Optional[MarketSnapshot]: ...


class TierStore(Protocol):
    async def get_user_tier(self, user_id: str) -> str: ...


class RevenueLedger(Protocol):
    async def record_fee(self, record: RevenueRecord) -> bool: ...


class InMemoryWalletStore:
    """Wallets per (user, chain). Keys never leave the store except for signing."""

    def __init__(self) -> None:
        self._wallets: Dict[Tuple[str, str], List[WalletRecord]] = {}
        self._keys: Dict[Tuple[str, str, str], str] = {}

    def add(self, user_id: str, chain: str, record: WalletRecord, private_key: str) -> None:
        k = (str(user_id), str(chain).lower())
        self._wallets.setdefault(k, []).append(record)
        self._keys[(k[0], k[1], str(record.address).lower())] = private_key

    async def get_wallets(self, user_id: str, chain: str) -> List[WalletRecord]:
        return list(self._wallets.get((str(user_id), str(chain).lower()), []))

    async def get_signing_key(self, user_id: str, chain: str, address: str) -> str:
        try:
            return self._keys[(str(user_id), str(chain).lower(), str(address).lower())]
        except KeyError:
            raise KeyError(f"no signing key for wallet {address}") from None


class StaticMarketData:
    def __init__(self, snapshots: Optional[Dict[Tuple[str, str], MarketSnapshot]] = None) -> None:
        self._snapshots = {(str(t).lower(), str(c).lower()): s for (t, c), s in (snapshots or {}).items()}

    def set(self, token: str, chain: str, snapshot: MarketSnapshot) -> None:
        self._snapshots[(str(token).lower(), str(chain).lower())] = snapshot

    async def get_snapshot(self, token: str, chain: str) -> Optional[MarketSnapshot]:
        return self._snapshots.get((str(token).lower(), str(chain).lower()))


def _float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _snapshot_from_pairs(pairs: Sequence[Dict[str, Any]], chain_key: str) -> Optional[MarketSnapshot]:
    """Deepest pair on the chain, by USD liquidity."""
    best: Optional[Dict[str, Any]] = None
    best_liq = -1.0
    for pair in pairs or []:
        if str(pair.get("chainId") or "").lower() != chain_key:
            continue
        liq = _float((pair.get("liquidity") or {}).get("usd")) or 0.0
        if liq > best_liq:
            best, best_liq = pair, liq
    if best is None:
        return None
    mcap = _float(best.get("marketCap"))
    if mcap is None:
        mcap = _float(best.get("fdv"))
    return MarketSnapshot(
        liquidity_usd=max(0.0, best_liq),
        volume_24h_usd=_float((best.get("volume") or {}).get("h24")) or 0.0,
        market_cap_usd=mcap,
        source="dexscreener",
    )


class DexScreenerMarketData:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        chain_ids: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = str(base_url or config.MARKET_DATA_URL).rstrip("/")
        self.timeout_s = float(timeout_s if timeout_s is not None else config.READ_TIMEOUT_S)
        self.chain_ids = dict(chain_ids or config.MARKET_DATA_CHAIN_IDS)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def get_snapshot(self, token: str, chain: str) -> Optional[MarketSnapshot]:
        chain_key = self.chain_ids.get(str(chain).lower())
        if not chain_key:
            return None
        session = await self._get_session()
        url = f"{self.base_url}/{token}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with session.get(url, timeout=timeout) as resp:
            resp.raise_for_status()
            body = await resp.json(content_type=None)
        return _snapshot_from_pairs((body or {}).get("pairs") or [], chain_key)


class InMemoryTierStore:
    def __init__(self, *, clock=time.time) -> None:
        self._tiers: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def set_tier(self, user_id: str, tier: str, *, expires_at: Optional[float] = None) -> None:
        self._tiers[str(user_id)] = (str(tier).upper(), expires_at)

    async def get_user_tier(self, user_id: str) -> str:
        entry = self._tiers.get(str(user_id))
        if entry is None:
            return config.DEFAULT_TIER
        tier, expires_at = entry
        if expires_at is not None and float(expires_at) <= self._clock():
            return config.DEFAULT_TIER
        return tier


class InMemoryRevenueLedger:
    def __init__(self) -> None:
        self.records: Dict[str, RevenueRecord] = {}

    async def record_fee(self, record: RevenueRecord) -> bool:
        """False when the trade id was already recorded."""
        if record.trade_id in self.records:
            return False
        self.records[record.trade_id] = record
        return True


class JsonlRevenueLedger:
    """Append-only fee ledger; replays the file on start to keep ids unique."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._seen = {str(row.get("trade_id")) for row in read_jsonl(self.path) if row.get("trade_id")}

    def __contains__(self, trade_id: object) -> bool:
        return str(trade_id) in self._seen

    def records(self) -> List[RevenueRecord]:
        out: Dict[str, RevenueRecord] = {}
        for row in read_jsonl(self.path):
            if row.get("trade_id") and str(row["trade_id"]) not in out:
                out[str(row["trade_id"])] = RevenueRecord.from_dict(row)
        return list(out.values())

    async def record_fee(self, record: RevenueRecord) -> bool:
        if record.trade_id in self._seen:
            logger.info("revenue already recorded trade=%s", record.trade_id)
            return False
        append_jsonl(self.path, record.to_dict())
        self._seen.add(record.trade_id)
        return True
