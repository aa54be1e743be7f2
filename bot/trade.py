from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from bot import config
from bot.errors import ErrorKind, IllegalTransition
from bot.types import FeeResult, LiquidityProfile, PoolInfo, QuoteResult, WalletCandidate


class TradeState(str, Enum):
    CREATED = "CREATED"
    QUOTED = "QUOTED"
    FEE_APPLIED = "FEE_APPLIED"
    WALLET_VALIDATED = "WALLET_VALIDATED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (TradeState.CONFIRMED, TradeState.FAILED)


TRANSITIONS: Dict[TradeState, FrozenSet[TradeState]] = {
    TradeState.CREATED: frozenset({TradeState.QUOTED, TradeState.FAILED}),
    TradeState.QUOTED: frozenset({TradeState.FEE_APPLIED, TradeState.FAILED}),
    TradeState.FEE_APPLIED: frozenset({TradeState.WALLET_VALIDATED, TradeState.FAILED}),
    TradeState.WALLET_VALIDATED: frozenset({TradeState.SUBMITTED, TradeState.FAILED}),
    TradeState.SUBMITTED: frozenset({TradeState.CONFIRMED, TradeState.FAILED}),
    TradeState.CONFIRMED: frozenset(),
    TradeState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class TradeKey:
    user_id: str
    trade_id: str

    @classmethod
    def new(cls, user_id: str) -> "TradeKey":
        return cls(user_id=str(user_id), trade_id=uuid.uuid4().hex)


@dataclass(frozen=True)
class TradeFailure:
    kind: ErrorKind
    message: str
    state: TradeState


@dataclass
class Trade:
    """One buy, from request to a definitive outcome.

    State only moves along TRANSITIONS; everything a later step needs is
    recorded on the trade as it goes.
    """

    key: TradeKey
    chain: str
    token_out: str
    gross_amount: Decimal
    requested_slippage_bps: int
    wallet_ref: Any = None
    state: TradeState = TradeState.CREATED
    history: List[Tuple[TradeState, float]] = field(default_factory=list)
    tier: Optional[str] = None
    fee: Optional[FeeResult] = None
    profile: Optional[LiquidityProfile] = None
    slippage_bps: Optional[int] = None
    quote: Optional[QuoteResult] = None
    wallet: Optional[WalletCandidate] = None
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    amount_out: Optional[int] = None
    fee_tx_hash: Optional[str] = None
    failure: Optional[TradeFailure] = None
    warnings: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, self.created_at))
        self.updated_at = self.updated_at or self.created_at

    @property
    def trade_id(self) -> str:
        return self.key.trade_id

    @property
    def user_id(self) -> str:
        return self.key.user_id

    @property
    def pool(self) -> Optional[PoolInfo]:
        return self.quote.pool if self.quote is not None else None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.failure.kind if self.failure is not None else None

    def can_advance(self, new_state: TradeState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def advance(self, new_state: TradeState, *, now_s: Optional[float] = None) -> None:
        if not self.can_advance(new_state):
            raise IllegalTransition(f"trade {self.trade_id}: {self.state.value} -> {new_state.value}")
        ts = float(now_s if now_s is not None else time.time())
        self.state = new_state
        self.history.append((new_state, ts))
        self.updated_at = ts

    def fail(self, kind: ErrorKind, message: str, *, now_s: Optional[float] = None) -> None:
        failure = TradeFailure(kind=kind, message=str(message), state=self.state)
        self.advance(TradeState.FAILED, now_s=now_s)
        self.failure = failure

    def warn(self, message: Optional[str]) -> None:
        if message and message not in self.warnings:
            self.warnings.append(message)

    def summary(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "user_id": self.user_id,
            "chain": self.chain,
            "token_out": self.token_out,
            "state": self.state.value,
            "tier": self.tier,
            "gross_amount": str(self.gross_amount),
            "fee_amount": str(self.fee.fee_amount) if self.fee else None,
            "net_amount": str(self.fee.net_amount) if self.fee else None,
            "slippage_bps": self.slippage_bps,
            "pool": self.pool.address if self.pool else None,
            "wallet": self.wallet.address if self.wallet else None,
            "tx_hash": self.tx_hash,
            "explorer_url": self.explorer_url,
            "amount_out": self.amount_out,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.failure.message if self.failure else None,
            "warnings": list(self.warnings),
        }


class TradeBook:
    """Live and recently finished trades, with one lock per trade id."""

    def __init__(self, *, retention_s: Optional[float] = None, clock: Callable[[], float] = time.time) -> None:
        self.retention_s = float(retention_s if retention_s is not None else config.TRADE_RETENTION_S)
        self._clock = clock
        self._trades: Dict[TradeKey, Trade] = {}
        self._by_id: Dict[str, TradeKey] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._trades)

    def add(self, trade: Trade) -> None:
        self.prune()
        self._trades[trade.key] = trade
        self._by_id[trade.trade_id] = trade.key

    def get(self, key: TradeKey) -> Optional[Trade]:
        return self._trades.get(key)

    def find(self, trade_id: str) -> Optional[Trade]:
        key = self._by_id.get(str(trade_id))
        return self._trades.get(key) if key is not None else None

    def for_user(self, user_id: str) -> List[Trade]:
        return [t for k, t in self._trades.items() if k.user_id == str(user_id)]

    def lock(self, trade_id: str) -> asyncio.Lock:
        lock = self._locks.get(trade_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[trade_id] = lock
        return lock

    def prune(self) -> int:
        """Drop terminal trades older than the retention window."""
        cutoff = self._clock() - self.retention_s
        stale = [k for k, t in self._trades.items() if t.terminal and t.updated_at < cutoff]
        for k in stale:
            self._trades.pop(k, None)
            self._by_id.pop(k.trade_id, None)
            self._locks.pop(k.trade_id, None)
        return len(stale)
