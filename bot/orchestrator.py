from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from web3 import Web3

from bot import config
from bot.chains.base import ChainAdapter, ExecutionContext
from bot.chains.registry import AdapterRegistry
from bot.errors import (
    ErrorKind,
    InsufficientBalanceError,
    InvalidAmountError,
    SwapError,
    error_kind_for,
)
from bot.risk.slippage import LiquidityAdvisor, final_slippage_bps, validate_requested_slippage
from bot.tiers import ExecutionStrategy, TierService, compute_fee, select_strategy, trade_size_warning
from bot.trade import Trade, TradeBook, TradeKey, TradeState
from bot.types import FeeResult, RevenueRecord, WalletCandidate
from bot.wallets import find_wallet, has_sufficient_balance, load_candidates, select_wallet
from infra.metrics import METRICS
from infra.rpc import ProviderUnavailableError, RPCError, RpcRegistry


logger = logging.getLogger(__name__)


class TradeCancelled(Exception):
    """Raised inside the pipeline when a pending cancel is observed."""


def _parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"amount must be a number, got {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(f"amount must be positive, got {value}")
    return amount


class TradeOrchestrator:
    """Drives a buy through CREATED -> ... -> CONFIRMED or FAILED.

    execute_trade never raises for domain failures: the returned Trade
    carries the final state, the error kind and whatever is known about
    the transaction. Only task cancellation propagates, after the trade
    has been put in a definitive state.
    """

    def __init__(
        self,
        *,
        adapters: AdapterRegistry,
        wallet_store: Any,
        market_data: Any,
        tier_service: TierService,
        ledger: Any,
        rpc_registry: Optional[RpcRegistry] = None,
        book: Optional[TradeBook] = None,
        advisor: Optional[LiquidityAdvisor] = None,
        treasury_wallet: Optional[str] = None,
        fee_collection_enabled: Optional[bool] = None,
        confirm_timeout_s: Optional[float] = None,
        read_timeout_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapters = adapters
        self.wallet_store = wallet_store
        self.tier_service = tier_service
        self.ledger = ledger
        self.rpc_registry = rpc_registry or RpcRegistry()
        self.book = book or TradeBook(clock=clock)
        self.advisor = advisor or LiquidityAdvisor(market_data)
        self.treasury_wallet = treasury_wallet if treasury_wallet is not None else config.TREASURY_WALLET
        self.fee_collection_enabled = (
            fee_collection_enabled if fee_collection_enabled is not None else config.FEE_COLLECTION_ENABLED
        )
        self.confirm_timeout_s = float(confirm_timeout_s if confirm_timeout_s is not None else config.CONFIRM_TIMEOUT_S)
        self.read_timeout_s = float(read_timeout_s if read_timeout_s is not None else config.READ_TIMEOUT_S)
        self._clock = clock
        self._cancel_requested: set = set()
        self._deferred_cancel: set = set()
        self._swap_started: set = set()
        self._broadcasting: set = set()

    # ---- public surface -------------------------------------------------

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        return self.book.find(trade_id)

    def cancel(self, trade_id: str) -> bool:
        """Request cancellation. Only honoured before the swap task starts."""
        trade = self.book.find(trade_id)
        if trade is None or trade.terminal or trade.trade_id in self._swap_started:
            return False
        self._cancel_requested.add(trade.trade_id)
        return True

    async def preview_fee(self, user_id: str, gross_amount: Any) -> FeeResult:
        tier, _ = await self.tier_service.resolve(user_id)
        return compute_fee(_parse_amount(gross_amount), tier)

    async def execute_trade(
        self,
        user_id: str,
        chain: str,
        token_out: str,
        gross_amount: Any,
        requested_slippage_bps: Any,
        wallet_ref: Any = None,
        *,
        trade_id: Optional[str] = None,
    ) -> Trade:
        key = TradeKey(str(user_id), trade_id) if trade_id else TradeKey.new(user_id)
        existing = self.book.get(key)
        if existing is not None:
            return existing
        try:
            gross = Decimal(str(gross_amount))
        except (InvalidOperation, ValueError):
            gross = Decimal(0)
        trade = Trade(
            key=key,
            chain=str(chain or "").lower(),
            token_out=str(token_out or "").lower(),
            gross_amount=gross,
            requested_slippage_bps=requested_slippage_bps,
            wallet_ref=wallet_ref,
            created_at=self._clock(),
        )
        self.book.add(trade)
        logger.info("trade created id=%s user=%s chain=%s token=%s gross=%s", trade.trade_id, user_id, chain, token_out, gross_amount)

        async with self.book.lock(trade.trade_id):
            try:
                with METRICS.timer("trade_latency_ms"):
                    await self._run(trade, gross_amount)
            except asyncio.CancelledError:
                if not trade.terminal:
                    trade.fail(ErrorKind.CANCELLED, "trade task cancelled", now_s=self._clock())
                self._finish(trade)
                raise
            self._finish(trade)
        if trade.trade_id in self._deferred_cancel:
            self._deferred_cancel.discard(trade.trade_id)
            raise asyncio.CancelledError()
        return trade

    # ---- pipeline -------------------------------------------------------

    def _check_cancel(self, trade: Trade) -> None:
        if trade.trade_id in self._cancel_requested:
            raise TradeCancelled(f"trade {trade.trade_id} cancelled in {trade.state.value}")

    def _read_context(self, adapter: ChainAdapter) -> Optional[ExecutionContext]:
        urls = list(getattr(adapter.chain, "rpc_urls", []) or [])
        if not urls:
            return None
        return ExecutionContext(rpc=self.rpc_registry.pool(urls), read_timeout_s=self.read_timeout_s)

    def _trade_context(self, strategy: ExecutionStrategy, trade: Trade) -> ExecutionContext:
        rpc = self.rpc_registry.pool(strategy.rpc_urls, mode=strategy.rpc_mode, race_width=strategy.race_width)
        submit_rpc = self.rpc_registry.pool([strategy.private_rpc_url]) if strategy.private_rpc_url else None

        def _on_signed(tx_hash: str) -> None:
            self._broadcasting.add(trade.trade_id)
            logger.info("trade broadcasting id=%s tx=%s", trade.trade_id, tx_hash)

        def _on_submitted(tx_hash: str) -> None:
            trade.tx_hash = tx_hash
            trade.explorer_url = self._explorer_url(trade, tx_hash)
            trade.advance(TradeState.SUBMITTED, now_s=self._clock())
            self._cancel_requested.discard(trade.trade_id)
            METRICS.inc("trades_submitted_total", 1)
            logger.info("trade submitted id=%s tx=%s", trade.trade_id, tx_hash)

        return ExecutionContext(
            rpc=rpc,
            submit_rpc=submit_rpc,
            gas=strategy.gas,
            confirm_timeout_s=self.confirm_timeout_s,
            read_timeout_s=self.read_timeout_s,
            on_signed=_on_signed,
            on_submitted=_on_submitted,
        )

    def _explorer_url(self, trade: Trade, tx_hash: Optional[str]) -> Optional[str]:
        try:
            return self.adapters.get(trade.chain).explorer_tx_url(tx_hash)
        except SwapError:
            return None

    async def _run(self, trade: Trade, gross_amount: Any) -> None:
        try:
            await self._pipeline(trade, gross_amount)
        except TradeCancelled as e:
            trade.fail(ErrorKind.CANCELLED, str(e), now_s=self._clock())
        except (SwapError, RPCError, asyncio.TimeoutError) as e:
            self._fail_from(trade, e)
        except Exception as e:
            logger.exception("trade %s failed unexpectedly in %s", trade.trade_id, trade.state.value)
            self._fail_from(trade, e)

    def _fail_from(self, trade: Trade, exc: BaseException) -> None:
        if isinstance(exc, SwapError):
            trade.tx_hash = trade.tx_hash or exc.tx_hash
            trade.explorer_url = trade.explorer_url or exc.explorer_url
            message = exc.message
        else:
            message = str(exc) or type(exc).__name__
        if not trade.terminal:
            trade.fail(error_kind_for(exc), message, now_s=self._clock())

    async def _pipeline(self, trade: Trade, gross_amount: Any) -> None:
        # CREATED -> QUOTED
        gross = _parse_amount(gross_amount)
        requested = validate_requested_slippage(trade.requested_slippage_bps)
        adapter = self.adapters.get(trade.chain)
        trade.chain = adapter.name
        read_ctx = self._read_context(adapter)

        await adapter.get_token_info(trade.token_out, execution=read_ctx)
        profile = await self.advisor.analyze(trade.token_out, adapter.name, gross)
        trade.profile = profile
        for w in profile.warnings:
            trade.warn(w)
        trade.slippage_bps = final_slippage_bps(requested, profile.recommended_slippage_bps)
        gross_wei = int(Web3.to_wei(gross, "ether"))
        trade.quote = await adapter.quote(trade.token_out, gross_wei, execution=read_ctx)
        self._check_cancel(trade)
        trade.advance(TradeState.QUOTED, now_s=self._clock())

        # QUOTED -> FEE_APPLIED
        tier, tier_warning = await self.tier_service.resolve(trade.user_id)
        if tier_warning:
            trade.warn(f"{ErrorKind.TIER_LOOKUP_FAILED.value}: {tier_warning}")
        trade.tier = tier.name
        trade.fee = compute_fee(gross, tier)
        trade.warn(trade_size_warning(gross, tier, adapter.native_symbol))
        strategy = select_strategy(tier, adapter.chain)
        trade.warn(strategy.note)
        self._check_cancel(trade)
        trade.advance(TradeState.FEE_APPLIED, now_s=self._clock())

        # FEE_APPLIED -> WALLET_VALIDATED
        ctx = self._trade_context(strategy, trade)
        wallet = await self._choose_wallet(trade, adapter, ctx)
        reserve = Decimal(adapter.chain.min_gas_reserve)
        if not has_sufficient_balance(wallet, trade.fee.net_amount, reserve):
            raise InsufficientBalanceError(
                f"wallet {wallet.address} holds {wallet.balance} {adapter.native_symbol}; "
                f"needs {trade.fee.net_amount} plus {reserve} gas reserve"
            )
        trade.wallet = wallet
        self._check_cancel(trade)
        trade.advance(TradeState.WALLET_VALIDATED, now_s=self._clock())

        # WALLET_VALIDATED -> SUBMITTED -> CONFIRMED
        secret = await self.wallet_store.get_signing_key(trade.user_id, adapter.name, wallet.address)
        self._check_cancel(trade)
        net_wei = int(Web3.to_wei(trade.fee.net_amount, "ether"))
        fee_tier = trade.quote.pool.fee_tier if trade.quote is not None else None
        self._swap_started.add(trade.trade_id)
        task = asyncio.ensure_future(
            adapter.execute_buy(secret, trade.token_out, net_wei, trade.slippage_bps, fee_tier=fee_tier, execution=ctx)
        )
        result = await self._await_swap(trade, task)

        if result.tx_hash:
            trade.tx_hash = result.tx_hash
            trade.explorer_url = result.explorer_url or trade.explorer_url
        if not result.success:
            raise _SwapFailed(result.error_kind or ErrorKind.INTERNAL, result.message or "swap failed")

        trade.block_number = result.block_number
        trade.gas_used = result.gas_used
        trade.amount_out = result.amount_out
        trade.advance(TradeState.CONFIRMED, now_s=self._clock())
        logger.info("trade confirmed id=%s tx=%s block=%s out=%s", trade.trade_id, trade.tx_hash, trade.block_number, trade.amount_out)

        await self._collect_fee(trade, adapter, secret, ctx)
        await self._record_revenue(trade)

    async def _await_swap(self, trade: Trade, task: "asyncio.Future[Any]") -> Any:
        """Await the swap; once a signed tx is out, cancellation waits for the outcome."""
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if trade.state != TradeState.SUBMITTED and trade.trade_id not in self._broadcasting:
                    task.cancel()
                    raise
                # Re-raised by execute_trade once the trade is definitive.
                self._deferred_cancel.add(trade.trade_id)
                logger.warning("cancel ignored for broadcast trade id=%s; waiting for receipt", trade.trade_id)

    async def _choose_wallet(self, trade: Trade, adapter: ChainAdapter, ctx: ExecutionContext) -> WalletCandidate:
        records = await self.wallet_store.get_wallets(trade.user_id, adapter.name)
        if trade.wallet_ref is not None:
            records = [r for r in records if find_wallet([_as_candidate(r)], trade.wallet_ref) is not None]
            if not records:
                raise InsufficientBalanceError(f"no wallet matching {trade.wallet_ref!r} on {adapter.name}")
        if not records:
            raise InsufficientBalanceError(f"no wallets on {adapter.name}")
        candidates = await load_candidates(adapter, records, execution=ctx, timeout_s=self.read_timeout_s)
        if trade.wallet_ref is not None:
            chosen = find_wallet(candidates, trade.wallet_ref)
        else:
            chosen = select_wallet(candidates, now_s=self._clock())
        if chosen is None:
            raise InsufficientBalanceError(f"no usable wallet on {adapter.name}")
        if not chosen.balance_known:
            raise ProviderUnavailableError(f"balance of wallet {chosen.address} on {adapter.name} could not be read")
        return chosen

    async def _collect_fee(self, trade: Trade, adapter: ChainAdapter, secret: str, ctx: ExecutionContext) -> None:
        if not self.fee_collection_enabled or not self.treasury_wallet or trade.fee is None:
            return
        minimum = Decimal(str(config.MIN_FEE_TRANSFER_NATIVE))
        if trade.fee.fee_amount < minimum:
            logger.info("fee transfer skipped, fee %s below transfer minimum %s trade=%s", trade.fee.fee_amount, minimum, trade.trade_id)
            return
        amount_wei = int(Web3.to_wei(trade.fee.fee_amount, "ether"))
        fee_ctx = ExecutionContext(
            rpc=ctx.rpc,
            submit_rpc=ctx.submit_rpc,
            gas=ctx.gas,
            read_timeout_s=ctx.read_timeout_s,
        )
        try:
            trade.fee_tx_hash = await adapter.transfer_native(secret, self.treasury_wallet, amount_wei, execution=fee_ctx)
        except (SwapError, RPCError) as e:
            METRICS.inc_reason("fee_transfer_failed", type(e).__name__, 1)
            logger.warning("fee transfer failed trade=%s: %s", trade.trade_id, e)
            trade.warn(f"fee transfer failed: {e}")

    async def _record_revenue(self, trade: Trade) -> None:
        if trade.fee is None:
            return
        record = RevenueRecord(
            trade_id=trade.trade_id,
            fee_amount=trade.fee.fee_amount,
            tier=trade.fee.tier,
            chain=trade.chain,
            token=trade.token_out,
            timestamp=self._clock(),
            tx_hash=trade.tx_hash,
            extra={
                "user_id": trade.user_id,
                "gross_amount": str(trade.fee.gross_amount),
                "net_amount": str(trade.fee.net_amount),
                "fee_bps": trade.fee.fee_bps,
                "fee_tx_hash": trade.fee_tx_hash,
            },
        )
        try:
            await self.ledger.record_fee(record)
            METRICS.inc("revenue_records_total", 1)
        except Exception as e:
            METRICS.inc_reason("revenue_record_failed", type(e).__name__, 1)
            logger.error("revenue record failed trade=%s fee=%s: %s", trade.trade_id, trade.fee.fee_amount, e)
            trade.warn(f"revenue not recorded: {e}")

    def _finish(self, trade: Trade) -> None:
        self._cancel_requested.discard(trade.trade_id)
        self._swap_started.discard(trade.trade_id)
        self._broadcasting.discard(trade.trade_id)
        METRICS.inc_reason("trades", trade.state.value, 1)
        if trade.failure is not None:
            METRICS.inc_reason("trade_failed", trade.failure.kind.value, 1)
            logger.warning(
                "trade failed id=%s state=%s kind=%s tx=%s: %s",
                trade.trade_id, trade.failure.state.value, trade.failure.kind.value, trade.tx_hash, trade.failure.message,
            )


class _SwapFailed(SwapError):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def _as_candidate(record: Any) -> WalletCandidate:
    return WalletCandidate(
        slot=record.slot,
        address=record.address,
        balance=Decimal(0),
        is_imported=record.is_imported,
        created_at=record.created_at,
    )
