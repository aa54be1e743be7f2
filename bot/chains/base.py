from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from bot.chain_config import ChainConfig
from bot.errors import UnsupportedChainError
from bot.types import QuoteResult, SwapResult, TokenInfo
from infra.gas import GasPolicy


@dataclass
class ExecutionContext:
    """Per-trade execution knobs handed to an adapter by the strategy layer."""

    rpc: Any
    submit_rpc: Any = None
    submit_url: Optional[str] = None
    gas: GasPolicy = field(default_factory=lambda: GasPolicy("standard"))
    confirm_timeout_s: Optional[float] = None
    read_timeout_s: Optional[float] = None
    # Fired right before broadcast; from here on the tx may exist on chain.
    on_signed: Optional[Callable[[str], None]] = None
    on_submitted: Optional[Callable[[str], None]] = None

    @property
    def sender(self) -> Any:
        return self.submit_rpc if self.submit_rpc is not None else self.rpc


class ChainAdapter:
    """Uniform buy/quote/balance surface over one chain.

    Reads (get_token_info, quote, get_balance) are safe to retry.
    execute_buy and transfer_native move funds and must never be retried
    blindly by callers.
    """

    chain: ChainConfig

    @property
    def name(self) -> str:
        return self.chain.name

    @property
    def native_symbol(self) -> str:
        return self.chain.native_symbol

    def explorer_tx_url(self, tx_hash: Optional[str]) -> Optional[str]:
        return self.chain.explorer_tx_url(tx_hash)

    async def get_token_info(self, token: str, *, execution: Optional[ExecutionContext] = None) -> TokenInfo:
        raise NotImplementedError

    async def quote(
        self,
        token_out: str,
        amount_in: int,
        fee_tier: Optional[int] = None,
        *,
        execution: Optional[ExecutionContext] = None,
    ) -> QuoteResult:
        raise NotImplementedError

    async def execute_buy(
        self,
        wallet_secret: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        *,
        fee_tier: Optional[int] = None,
        execution: Optional[ExecutionContext] = None,
    ) -> SwapResult:
        raise NotImplementedError

    async def get_balance(self, address: str, *, execution: Optional[ExecutionContext] = None) -> int:
        raise NotImplementedError

    async def transfer_native(
        self,
        wallet_secret: str,
        to: str,
        amount: int,
        *,
        execution: Optional[ExecutionContext] = None,
    ) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class UnsupportedChainAdapter(ChainAdapter):
    """Placeholder for chains that are listed but not tradable yet."""

    def __init__(self, chain: ChainConfig) -> None:
        self.chain = chain

    def _error(self) -> UnsupportedChainError:
        return UnsupportedChainError(f"trading on {self.chain.name} is not supported yet")

    async def get_token_info(self, token: str, *, execution: Optional[ExecutionContext] = None) -> TokenInfo:
        raise self._error()

    async def quote(
        self,
        token_out: str,
        amount_in: int,
        fee_tier: Optional[int] = None,
        *,
        execution: Optional[ExecutionContext] = None,
    ) -> QuoteResult:
        raise self._error()

    async def execute_buy(
        self,
        wallet_secret: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        *,
        fee_tier: Optional[int] = None,
        execution: Optional[ExecutionContext] = None,
    ) -> SwapResult:
        return SwapResult.failed(self._error())

    async def get_balance(self, address: str, *, execution: Optional[ExecutionContext] = None) -> int:
        raise self._error()

    async def transfer_native(
        self,
        wallet_secret: str,
        to: str,
        amount: int,
        *,
        execution: Optional[ExecutionContext] = None,
    ) -> str:
        raise self._error()
