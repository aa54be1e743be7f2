from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from bot.errors import ErrorKind, SwapError


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return str(a or "").lower() == str(b or "").lower()


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str = "UNKNOWN"
    name: str = "Unknown Token"
    decimals: int = 18
    total_supply: int = 0


@dataclass(frozen=True)
class PoolInfo:
    """A concentrated-liquidity pool, tied to the chain it was found on."""

    chain: str
    token_in: str
    token_out: str
    address: str
    fee_tier: int
    liquidity: Optional[int] = None

    def matches(self, chain: str, token_a: str, token_b: str) -> bool:
        if str(chain).lower() != str(self.chain).lower():
            return False
        pair = {str(self.token_in).lower(), str(self.token_out).lower()}
        return pair == {str(token_a).lower(), str(token_b).lower()}


@dataclass(frozen=True)
class QuoteResult:
    amount_in: int
    amount_out: int
    gas_estimate: Optional[int]
    pool: PoolInfo


@dataclass(frozen=True)
class MarketSnapshot:
    liquidity_usd: float
    volume_24h_usd: float = 0.0
    market_cap_usd: Optional[float] = None
    buy_tax_bps: int = 0
    sell_tax_bps: int = 0
    source: str = "static"


@dataclass(frozen=True)
class LiquidityProfile:
    category: str
    recommended_slippage_bps: int
    max_recommended_native: Decimal
    risk_level: str
    activity_level: str = "unknown"
    liquidity_usd: Optional[float] = None
    volume_24h_usd: Optional[float] = None
    market_cap_usd: Optional[float] = None
    buy_tax_bps: int = 0
    sell_tax_bps: int = 0
    warnings: Tuple[str, ...] = ()
    degraded: bool = False


@dataclass(frozen=True)
class WalletRecord:
    slot: int
    address: str
    is_imported: bool = False
    created_at: float = 0.0


@dataclass(frozen=True)
class WalletCandidate:
    slot: int
    address: str
    balance: Decimal
    is_imported: bool = False
    created_at: float = 0.0
    balance_known: bool = True

    def matches_ref(self, ref: Any) -> bool:
        if isinstance(ref, int) and not isinstance(ref, bool):
            return self.slot == ref
        text = str(ref or "").strip()
        if text.isdigit():
            return self.slot == int(text)
        return _same(self.address, text)


@dataclass(frozen=True)
class FeeResult:
    gross_amount: Decimal
    fee_bps: int
    fee_amount: Decimal
    net_amount: Decimal
    tier: str


@dataclass(frozen=True)
class SwapRequest:
    chain: str
    token_in: str
    token_out: str
    amount_in: int
    min_amount_out: int
    slippage_bps: int
    recipient: str
    deadline: int
    fee_tier: int


@dataclass(frozen=True)
class SwapResult:
    success: bool
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    amount_out: Optional[int] = None
    explorer_url: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    pool: Optional[PoolInfo] = None

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None

    @classmethod
    def failed(cls, err: SwapError, *, pool: Optional[PoolInfo] = None) -> "SwapResult":
        return cls(
            success=False,
            tx_hash=err.tx_hash,
            explorer_url=err.explorer_url,
            error_kind=err.kind,
            message=err.message,
            pool=pool,
        )


@dataclass(frozen=True)
class RevenueRecord:
    trade_id: str
    fee_amount: Decimal
    tier: str
    chain: str
    token: str
    timestamp: float
    tx_hash: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "fee_amount": str(self.fee_amount),
            "tier": self.tier,
            "chain": self.chain,
            "token": self.token,
            "timestamp": self.timestamp,
            "tx_hash": self.tx_hash,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RevenueRecord":
        return cls(
            trade_id=str(raw["trade_id"]),
            fee_amount=Decimal(str(raw.get("fee_amount", "0"))),
            tier=str(raw.get("tier") or ""),
            chain=str(raw.get("chain") or ""),
            token=str(raw.get("token") or ""),
            timestamp=float(raw.get("timestamp") or 0.0),
            tx_hash=raw.get("tx_hash"),
            extra=dict(raw.get("extra") or {}),
        )
