from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from web3 import Web3

from bot import config
from bot.chain_config import ChainConfig
from bot.chains.base import ChainAdapter, ExecutionContext
from bot.dex.uniswap_v3 import (
    ROUTER_KINDS,
    UniV3Quoter,
    build_swap_calldata,
    checksum,
    min_amount_out,
    parse_received_amount,
)
from bot.errors import (
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidSlippageError,
    QuoteFailedError,
    SwapError,
    TransactionRevertedError,
    error_kind_for,
)
from bot.pool_discovery import PoolDiscovery
from bot.token_info import fetch_token_info
from bot.types import QuoteResult, SwapRequest, SwapResult, TokenInfo
from execution.confirm import (
    receipt_block,
    receipt_gas_used,
    receipt_status,
    replay_revert_reason,
    wait_for_receipt,
)
from execution.submitter import address_for_key, broadcast, sign_transaction
from infra import gas as gas_oracle
from infra.cache import TTLCache
from infra.metrics import METRICS
from infra.rpc import RPCError, RPCPool


logger = logging.getLogger(__name__)


class EvmSwapRouter(ChainAdapter):
    """Native -> token buys through a Uniswap V3 style deployment.

    The wrapped native token is always the input side. Pool and fee tier come
    from PoolDiscovery, the expected output from the chain's quoter, and the
    calldata shape from the chain's router kind.
    """

    def __init__(
        self,
        chain: ChainConfig,
        *,
        rpc: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not chain.wrapped_native:
            raise ValueError(f"{chain.name}: wrapped_native is required")
        if chain.router_kind not in ROUTER_KINDS:
            raise ValueError(f"{chain.name}: unknown router kind {chain.router_kind!r}")
        for key in ("factory", "router"):
            if not chain.dex.get(key):
                raise ValueError(f"{chain.name}: dex.{key} is required")
        self.chain = chain
        self.wrapped_native = chain.wrapped_native.lower()
        self._rpc = rpc
        self._clock = clock
        self.pools = PoolDiscovery(chain.name, chain.dex["factory"], fee_tiers=chain.fee_tiers or None)
        self._tokens: TTLCache[str, TokenInfo] = TTLCache(float(getattr(config, "TOKEN_INFO_TTL_S", 3600.0)))

    def _ctx(self, execution: Optional[ExecutionContext]) -> ExecutionContext:
        if execution is not None:
            return execution
        if self._rpc is None:
            self._rpc = RPCPool(self.chain.rpc_urls)
        return ExecutionContext(rpc=self._rpc)

    def _quoter(self, rpc: Any) -> UniV3Quoter:
        return UniV3Quoter(rpc, quoter_v2=self.chain.dex.get("quoter_v2"), quoter_v1=self.chain.dex.get("quoter_v1"))

    async def close(self) -> None:
        closer = getattr(self._rpc, "close", None)
        if closer is not None:
            await closer()

    async def get_token_info(self, token: str, *, execution: Optional[ExecutionContext] = None) -> TokenInfo:
        key = str(token).lower()
        cached = self._tokens.get(key)
        if cached is not None:
            return cached
        ctx = self._ctx(execution)
        info = await fetch_token_info(ctx.rpc, key, timeout_s=ctx.read_timeout_s)
        self._tokens.set(key, info)
        return info

    async def get_balance(self, address: str, *, execution: Optional[ExecutionContext] = None) -> int:
        ctx = self._ctx(execution)
        res = await ctx.rpc.call("eth_getBalance", [str(address), "latest"], timeout_s=ctx.read_timeout_s)
        return int(res, 16) if isinstance(res, str) else int(res)

    async def quote(
        self,
        token_out: str,
        amount_in: int,
        fee_tier: Optional[int] = None,
        *,
        execution: Optional[ExecutionContext] = None,
    ) -> QuoteResult:
        if int(amount_in) <= 0:
            raise InvalidAmountError(f"amount_in must be positive, got {amount_in}")
        ctx = self._ctx(execution)
        token_out_l = str(token_out).lower()
        pool = await self.pools.discover(ctx.rpc, self.wrapped_native, token_out_l, fee_tier=fee_tier, timeout_s=ctx.read_timeout_s)
        q = await self._quoter(ctx.rpc).quote(
            self.wrapped_native, token_out_l, int(amount_in), pool.fee_tier, timeout_s=ctx.read_timeout_s
        )
        if q is None:
            METRICS.inc_reason("quote_failed", self.chain.name, 1)
            raise QuoteFailedError(f"no quote for {token_out_l} on {self.chain.name} fee={pool.fee_tier}")
        return QuoteResult(amount_in=int(amount_in), amount_out=q.amount_out, gas_estimate=q.gas_estimate, pool=pool)

    def build_request(self, token_out: str, amount_in: int, quoted_out: int, slippage_bps: int, recipient: str, fee_tier: int) -> SwapRequest:
        return SwapRequest(
            chain=self.chain.name,
            token_in=self.wrapped_native,
            token_out=str(token_out).lower(),
            amount_in=int(amount_in),
            min_amount_out=min_amount_out(quoted_out, slippage_bps),
            slippage_bps=int(slippage_bps),
            recipient=str(recipient).lower(),
            deadline=int(self._clock()) + int(getattr(config, "SWAP_DEADLINE_S", 600)),
            fee_tier=int(fee_tier),
        )

    async def _prepare_tx(self, ctx: ExecutionContext, sender: str, to: str, value: int, data: str, gas_limit: Optional[int] = None) -> Dict[str, Any]:
        fee_fields = await gas_oracle.build_fee_fields(ctx.rpc, ctx.gas, eip1559=self.chain.eip1559, timeout_s=ctx.read_timeout_s or 3.0)
        nonce_raw = await ctx.rpc.call("eth_getTransactionCount", [sender, "pending"], timeout_s=ctx.read_timeout_s)
        nonce = int(nonce_raw, 16) if isinstance(nonce_raw, str) else int(nonce_raw)
        tx: Dict[str, Any] = {
            "chainId": int(self.chain.chain_id or 0),
            "nonce": nonce,
            "to": checksum(to),
            "value": int(value),
            "data": data,
        }
        tx.update(fee_fields)
        if self.chain.eip1559:
            tx["type"] = 2
        if gas_limit is None:
            estimate = await gas_oracle.estimate_gas(
                ctx.rpc, {"from": sender, "to": tx["to"], "value": tx["value"], "data": data}
            )
            gas_limit = gas_oracle.gas_limit_for(estimate, ctx.gas)
        tx["gas"] = int(gas_limit)
        return tx

    def _max_gas_cost(self, tx: Dict[str, Any]) -> int:
        per_gas = int(tx.get("maxFeePerGas") or tx.get("gasPrice") or 0)
        return int(tx.get("gas") or 0) * per_gas

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
        ctx = self._ctx(execution)
        try:
            return await self._execute_buy(ctx, wallet_secret, token_out, int(amount_in), int(slippage_bps), fee_tier)
        except SwapError as e:
            METRICS.inc_reason("swap_failed", e.kind.value, 1)
            return SwapResult.failed(e)
        except RPCError as e:
            kind = error_kind_for(e)
            METRICS.inc_reason("swap_failed", kind.value, 1)
            return SwapResult(success=False, error_kind=kind, message=str(e))

    async def _execute_buy(
        self,
        ctx: ExecutionContext,
        wallet_secret: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        fee_tier: Optional[int],
    ) -> SwapResult:
        if not 1 <= slippage_bps <= 9900:
            raise InvalidSlippageError(f"slippage {slippage_bps} bps outside [1, 9900]")
        if amount_in <= 0:
            raise InvalidAmountError(f"amount_in must be positive, got {amount_in}")

        sender = address_for_key(wallet_secret)
        reserve = int(Web3.to_wei(self.chain.min_gas_reserve, "ether"))
        balance = await self.get_balance(sender, execution=ctx)
        if balance < amount_in + reserve:
            raise InsufficientBalanceError(
                f"balance {balance} wei < amount {amount_in} + gas reserve {reserve} on {self.chain.name}"
            )

        quote = await self.quote(token_out, amount_in, fee_tier, execution=ctx)
        req = self.build_request(token_out, amount_in, quote.amount_out, slippage_bps, sender, quote.pool.fee_tier)
        data = build_swap_calldata(str(self.chain.router_kind), req)
        tx = await self._prepare_tx(ctx, sender, self.chain.dex["router"], amount_in, data)
        if balance < amount_in + self._max_gas_cost(tx):
            raise InsufficientBalanceError(
                f"balance {balance} wei cannot cover amount {amount_in} plus max gas {self._max_gas_cost(tx)}"
            )

        raw_hex, tx_hash = sign_transaction(tx, wallet_secret)
        explorer = self.explorer_tx_url(tx_hash)
        if ctx.on_signed is not None:
            ctx.on_signed(tx_hash)
        sent = await broadcast(ctx.sender, raw_hex, tx_hash, url=ctx.submit_url)
        logger.info(
            "swap submitted chain=%s tx=%s pool=%s fee=%s min_out=%s acknowledged=%s",
            self.chain.name, tx_hash, quote.pool.address, quote.pool.fee_tier, req.min_amount_out, sent.acknowledged,
        )
        if ctx.on_submitted is not None:
            ctx.on_submitted(tx_hash)

        receipt = await wait_for_receipt(ctx.rpc, tx_hash, timeout_s=ctx.confirm_timeout_s)
        if receipt is None:
            raise ConfirmationTimeoutError(
                f"no receipt within budget; outcome unknown, check {explorer or tx_hash}",
                tx_hash=tx_hash,
                explorer_url=explorer,
            )

        block = receipt_block(receipt)
        if receipt_status(receipt) == 0:
            reason = await replay_revert_reason(ctx.rpc, {"from": sender, **tx}, block)
            raise TransactionRevertedError(
                f"transaction reverted{': ' + reason if reason else ''}",
                tx_hash=tx_hash,
                explorer_url=explorer,
            )

        amount_out = parse_received_amount(receipt, req.token_out, sender)
        METRICS.inc("swaps_confirmed_total", 1)
        return SwapResult(
            success=True,
            tx_hash=tx_hash,
            block_number=block,
            gas_used=receipt_gas_used(receipt),
            amount_out=amount_out,
            explorer_url=explorer,
            pool=quote.pool,
        )

    async def transfer_native(
        self,
        wallet_secret: str,
        to: str,
        amount: int,
        *,
        execution: Optional[ExecutionContext] = None,
    ) -> str:
        if int(amount) <= 0:
            raise InvalidAmountError(f"transfer amount must be positive, got {amount}")
        ctx = self._ctx(execution)
        sender = address_for_key(wallet_secret)
        tx = await self._prepare_tx(
            ctx, sender, to, int(amount), "0x", gas_limit=int(getattr(config, "NATIVE_TRANSFER_GAS", 21000))
        )
        balance = await self.get_balance(sender, execution=ctx)
        if balance < int(amount) + self._max_gas_cost(tx):
            raise InsufficientBalanceError(
                f"balance {balance} wei cannot cover transfer {amount} plus gas {self._max_gas_cost(tx)}"
            )
        raw_hex, tx_hash = sign_transaction(tx, wallet_secret)
        await broadcast(ctx.sender, raw_hex, tx_hash, url=ctx.submit_url)
        logger.info("native transfer chain=%s tx=%s to=%s amount=%s", self.chain.name, tx_hash, to, amount)
        return tx_hash
