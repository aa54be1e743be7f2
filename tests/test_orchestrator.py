import asyncio
import random
from decimal import Decimal

import pytest
from web3 import Web3

from bot.chain_config import get_chain
from bot.chains.base import ChainAdapter
from bot.chains.registry import AdapterRegistry
from bot.errors import ErrorKind
from bot.orchestrator import TradeOrchestrator
from bot.stores import InMemoryRevenueLedger, InMemoryTierStore, InMemoryWalletStore, StaticMarketData
from bot.tiers import TierService
from bot.trade import TradeState
from bot.types import MarketSnapshot, PoolInfo, QuoteResult, SwapResult, TokenInfo, WalletRecord
from infra.rpc import ProviderUnavailableError, RPCTransportError, RpcRegistry


TOKEN = "0x1111111111111111111111111111111111111111"
W1 = "0x000000000000000000000000000000000000aaaa"
W2 = "0x000000000000000000000000000000000000bbbb"
NOW = 1_700_000_000.0


def eth(x: str) -> int:
    return int(Web3.to_wei(Decimal(x), "ether"))


class FakeAdapter(ChainAdapter):
    def __init__(self, balances, *, result=None):
        self.chain = get_chain("base")
        self.balances = balances
        self.result = result
        self.buys = []
        self.transfers = []
        self.token_gate = None
        self.confirm_gate = None

    async def get_token_info(self, token, *, execution=None):
        if self.token_gate is not None:
            await self.token_gate.wait()
        return TokenInfo(address=token, symbol="TKN", decimals=18)

    async def quote(self, token_out, amount_in, fee_tier=None, *, execution=None):
        pool = PoolInfo("base", self.chain.wrapped_native, token_out, "0x" + "ab" * 20, 500, 10**20)
        return QuoteResult(amount_in=amount_in, amount_out=amount_in * 1000, gas_estimate=90_000, pool=pool)

    async def get_balance(self, address, *, execution=None):
        value = self.balances.get(address, 0)
        if isinstance(value, Exception):
            raise value
        return value

    async def execute_buy(self, wallet_secret, token_out, amount_in, slippage_bps, *, fee_tier=None, execution=None):
        self.buys.append((wallet_secret, amount_in, slippage_bps, fee_tier))
        execution.on_submitted("0xfeed")
        if self.confirm_gate is not None:
            await self.confirm_gate.wait()
        if self.result is not None:
            return self.result
        return SwapResult(success=True, tx_hash="0xfeed", block_number=99, gas_used=120_000, amount_out=42, explorer_url="https://basescan.org/tx/0xfeed")

    async def transfer_native(self, wallet_secret, to, amount, *, execution=None):
        self.transfers.append((to, amount))
        return "0xfee0"


class DownClient:
    def __init__(self, url):
        self.url = url

    async def call(self, method, params, timeout_s=None, allow_revert_data=False, retries=None):
        raise RPCTransportError("timeout(1s)", url=self.url)


class FailingLedger:
    async def record_fee(self, record):
        raise IOError("disk full")


class BrokenTierStore:
    async def get_user_tier(self, user_id):
        raise ConnectionError("subscription db down")


def _setup(adapter=None, *, balances=None, tier="FREE", liquidity=2_000_000.0, ledger=None, tier_store=None, adapters=None, rpc_registry=None, **kw):
    adapter = adapter or FakeAdapter(balances if balances is not None else {W1: eth("1"), W2: eth("0.5")})
    wallets = InMemoryWalletStore()
    wallets.add("u1", "base", WalletRecord(slot=1, address=W1, is_imported=True, created_at=NOW), "key1")
    wallets.add("u1", "base", WalletRecord(slot=2, address=W2, created_at=NOW), "key2")
    tiers = tier_store or InMemoryTierStore()
    if tier_store is None:
        tiers.set_tier("u1", tier)
    market = StaticMarketData({(TOKEN, "base"): MarketSnapshot(liquidity_usd=liquidity, volume_24h_usd=liquidity)})
    orch = TradeOrchestrator(
        adapters=adapters or AdapterRegistry(adapters={"base": adapter}),
        wallet_store=wallets,
        market_data=market,
        tier_service=TierService(tiers),
        ledger=ledger if ledger is not None else InMemoryRevenueLedger(),
        rpc_registry=rpc_registry or RpcRegistry(client_factory=DownClient),
        clock=lambda: NOW,
        **kw,
    )
    return orch, adapter


@pytest.mark.asyncio
async def test_confirmed_trade_swaps_net_and_records_fee() -> None:
    orch, adapter = _setup()
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.state is TradeState.CONFIRMED, trade.summary()
    assert trade.fee.fee_amount == Decimal("0.0003")
    assert trade.fee.net_amount == Decimal("0.0997")
    secret, amount_in, slippage, fee_tier = adapter.buys[0]
    assert secret == "key1"
    assert amount_in == eth("0.0997")
    # high liquidity, 0.1 counts as a large trade: 300 * 1.2
    assert slippage == 360
    assert fee_tier == 500
    assert trade.tx_hash == "0xfeed"
    assert trade.amount_out == 42
    assert [s for s, _ in trade.history] == [
        TradeState.CREATED,
        TradeState.QUOTED,
        TradeState.FEE_APPLIED,
        TradeState.WALLET_VALIDATED,
        TradeState.SUBMITTED,
        TradeState.CONFIRMED,
    ]
    record = orch.ledger.records[trade.trade_id]
    assert record.fee_amount == Decimal("0.0003")
    assert record.tier == "FREE"
    assert record.chain == "base"


@pytest.mark.asyncio
async def test_requested_slippage_above_advice_is_kept() -> None:
    orch, adapter = _setup()
    await orch.execute_trade("u1", "base", TOKEN, "0.1", 2500)
    assert adapter.buys[0][2] == 2500


@pytest.mark.asyncio
async def test_insufficient_balance_fails_before_any_submission() -> None:
    orch, adapter = _setup(balances={W1: eth("0.05"), W2: eth("0.01")})
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.state is TradeState.FAILED
    assert trade.error_kind is ErrorKind.INSUFFICIENT_BALANCE
    assert trade.failure.state is TradeState.FEE_APPLIED
    assert adapter.buys == []
    assert orch.ledger.records == {}


@pytest.mark.asyncio
async def test_explicit_wallet_ref_bypasses_ranking() -> None:
    orch, adapter = _setup()
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100, wallet_ref=2)
    assert trade.wallet.address == W2
    assert adapter.buys[0][0] == "key2"

    missing = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100, wallet_ref="0xdead")
    assert missing.error_kind is ErrorKind.INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_invalid_inputs_fail_in_created() -> None:
    orch, adapter = _setup()
    bad_slip = await orch.execute_trade("u1", "base", TOKEN, "0.1", 0)
    assert bad_slip.error_kind is ErrorKind.INVALID_SLIPPAGE
    assert bad_slip.failure.state is TradeState.CREATED
    bad_amount = await orch.execute_trade("u1", "base", TOKEN, "-1", 100)
    assert bad_amount.error_kind is ErrorKind.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_unsupported_and_unknown_chains() -> None:
    orch, adapter = _setup()
    sol = await orch.execute_trade("u1", "solana", TOKEN, "0.1", 100)
    assert sol.error_kind is ErrorKind.UNSUPPORTED_CHAIN
    unknown = await orch.execute_trade("u1", "dogechain", TOKEN, "0.1", 100)
    assert unknown.error_kind is ErrorKind.UNSUPPORTED_CHAIN
    assert adapter.buys == []


@pytest.mark.asyncio
async def test_all_endpoints_down_is_provider_unavailable() -> None:
    orch, _ = _setup(adapters=AdapterRegistry(), rpc_registry=RpcRegistry(client_factory=DownClient))
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.state is TradeState.FAILED
    assert trade.error_kind is ErrorKind.PROVIDER_UNAVAILABLE
    assert trade.tx_hash is None
    assert orch.ledger.records == {}


@pytest.mark.asyncio
async def test_tier_lookup_failure_trades_as_free_with_warning() -> None:
    orch, _ = _setup(tier_store=BrokenTierStore())
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.state is TradeState.CONFIRMED
    assert trade.tier == "FREE"
    assert any(w.startswith("TierLookupFailed") for w in trade.warnings)


@pytest.mark.asyncio
async def test_whale_fee_and_size_warning() -> None:
    orch, _ = _setup(balances={W1: eth("20")}, tier="FREE")
    trade = await orch.execute_trade("u1", "base", TOKEN, "6", 100)
    assert any("tier maximum" in w for w in trade.warnings)

    orch, _ = _setup(tier="WHALE")
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.fee.fee_bps == 15
    assert trade.fee.fee_amount == Decimal("0.00015")


@pytest.mark.asyncio
async def test_reverted_swap_keeps_hash_and_records_no_fee() -> None:
    reverted = SwapResult(
        success=False,
        tx_hash="0xfeed",
        explorer_url="https://basescan.org/tx/0xfeed",
        error_kind=ErrorKind.TRANSACTION_REVERTED,
        message="transaction reverted: revert:Too little received",
    )
    orch, adapter = _setup(FakeAdapter({W1: eth("1")}, result=reverted))
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.error_kind is ErrorKind.TRANSACTION_REVERTED
    assert trade.failure.state is TradeState.SUBMITTED
    assert trade.tx_hash == "0xfeed"
    assert trade.explorer_url == "https://basescan.org/tx/0xfeed"
    assert orch.ledger.records == {}


@pytest.mark.asyncio
async def test_same_trade_id_is_not_executed_twice() -> None:
    orch, adapter = _setup()
    first = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100, trade_id="t-1")
    again = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100, trade_id="t-1")
    assert again is first
    assert len(adapter.buys) == 1
    assert list(orch.ledger.records) == ["t-1"]


@pytest.mark.asyncio
async def test_ledger_failure_never_fails_a_confirmed_trade() -> None:
    orch, _ = _setup(ledger=FailingLedger())
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.state is TradeState.CONFIRMED
    assert any("revenue not recorded" in w for w in trade.warnings)


@pytest.mark.asyncio
async def test_treasury_transfer_respects_minimum() -> None:
    orch, adapter = _setup(treasury_wallet="0x" + "cd" * 20, fee_collection_enabled=True)
    small = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert small.fee_tx_hash is None
    assert adapter.transfers == []

    big = await orch.execute_trade("u1", "base", TOKEN, "0.5", 100)
    assert adapter.transfers == [("0x" + "cd" * 20, eth("0.0015"))]
    assert big.fee_tx_hash == "0xfee0"
    assert orch.ledger.records[big.trade_id].extra["fee_tx_hash"] == "0xfee0"


@pytest.mark.asyncio
async def test_cancel_before_submission() -> None:
    adapter = FakeAdapter({W1: eth("1")})
    adapter.token_gate = asyncio.Event()
    orch, _ = _setup(adapter)
    task = asyncio.ensure_future(orch.execute_trade("u1", "base", TOKEN, "0.1", 100, trade_id="t-c"))
    await asyncio.sleep(0)
    assert orch.cancel("t-c")
    adapter.token_gate.set()
    trade = await task
    assert trade.error_kind is ErrorKind.CANCELLED
    assert adapter.buys == []
    assert orch.ledger.records == {}


@pytest.mark.asyncio
async def test_cancel_after_submission_is_ignored() -> None:
    adapter = FakeAdapter({W1: eth("1")})
    adapter.confirm_gate = asyncio.Event()
    orch, _ = _setup(adapter)
    task = asyncio.ensure_future(orch.execute_trade("u1", "base", TOKEN, "0.1", 100, trade_id="t-s"))
    while not adapter.buys:
        await asyncio.sleep(0)
    assert orch.get_trade("t-s").state is TradeState.SUBMITTED
    assert not orch.cancel("t-s")
    adapter.confirm_gate.set()
    trade = await task
    assert trade.state is TradeState.CONFIRMED


@pytest.mark.asyncio
async def test_task_cancellation_after_submission_still_confirms() -> None:
    adapter = FakeAdapter({W1: eth("1")})
    adapter.confirm_gate = asyncio.Event()
    orch, _ = _setup(adapter)
    task = asyncio.ensure_future(orch.execute_trade("u1", "base", TOKEN, "0.1", 100, trade_id="t-k"))
    while not adapter.buys:
        await asyncio.sleep(0)
    task.cancel()
    await asyncio.sleep(0)
    adapter.confirm_gate.set()
    with pytest.raises(asyncio.CancelledError):
        await task
    trade = orch.get_trade("t-k")
    assert trade.state is TradeState.CONFIRMED
    assert "t-k" in orch.ledger.records


@pytest.mark.asyncio
async def test_preview_fee() -> None:
    orch, _ = _setup(tier="PRO")
    fee = await orch.preview_fee("u1", "2")
    assert fee.tier == "PRO"
    assert fee.fee_amount == Decimal("0.006")


@pytest.mark.asyncio
async def test_metrics_count_outcomes() -> None:
    from infra.metrics import METRICS

    METRICS.reset()
    orch, _ = _setup()
    await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    await orch.execute_trade("u1", "solana", TOKEN, "0.1", 100)
    assert METRICS.reason("trades", "CONFIRMED") == 1
    assert METRICS.reason("trade_failed", "UnsupportedChain") == 1
    assert METRICS.counter("trades_submitted_total") == 1
    assert METRICS.snapshot()["histograms"]["trade_latency_ms"]["count"] == 2


@pytest.mark.asyncio
async def test_unreadable_balances_are_provider_unavailable() -> None:
    down = ProviderUnavailableError("all 3 endpoints unavailable")
    orch, adapter = _setup(balances={W1: down, W2: down})
    trade = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert trade.error_kind is ErrorKind.PROVIDER_UNAVAILABLE
    assert trade.failure.state is TradeState.FEE_APPLIED
    assert adapter.buys == []

    orch, adapter = _setup(balances={W1: down, W2: eth("1")})
    explicit = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100, wallet_ref=1)
    assert explicit.error_kind is ErrorKind.PROVIDER_UNAVAILABLE
    # One readable wallet is enough to trade without an explicit choice.
    ranked = await orch.execute_trade("u1", "base", TOKEN, "0.1", 100)
    assert ranked.state is TradeState.CONFIRMED
    assert ranked.wallet.address == W2


@pytest.mark.asyncio
async def test_cancel_is_refused_once_swap_started() -> None:
    adapter = FakeAdapter({W1: eth("1")})
    adapter.confirm_gate = asyncio.Event()
    orch, _ = _setup(adapter)
    task = asyncio.ensure_future(orch.execute_trade("u1", "base", TOKEN, "0.1", 100, trade_id="t-w"))
    while not adapter.buys:
        await asyncio.sleep(0)
    assert not orch.cancel("t-w")
    adapter.confirm_gate.set()
    assert (await task).state is TradeState.CONFIRMED


@pytest.mark.asyncio
async def test_never_submits_more_than_balance_allows() -> None:
    rng = random.Random(7)
    reserve = get_chain("base").min_gas_reserve
    for i in range(200):
        balance = rng.randrange(0, 3 * 10**18)
        gross = Decimal(rng.randrange(1, 3 * 10**6)) / Decimal(10**6)
        orch, adapter = _setup(balances={W1: balance, W2: 0})
        trade = await orch.execute_trade("u1", "base", TOKEN, gross, 100, wallet_ref=1)
        net = trade.fee.net_amount
        affordable = Decimal(balance) / Decimal(10**18) >= net + reserve
        if affordable:
            assert trade.state is TradeState.CONFIRMED, (i, balance, gross)
            assert adapter.buys[0][1] == int(Web3.to_wei(net, "ether"))
        else:
            assert trade.error_kind is ErrorKind.INSUFFICIENT_BALANCE, (i, balance, gross)
            assert adapter.buys == []
