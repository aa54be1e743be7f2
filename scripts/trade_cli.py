from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bot.artifacts import configure_logging  # noqa: E402
from bot.chains.registry import AdapterRegistry  # noqa: E402
from bot.orchestrator import TradeOrchestrator  # noqa: E402
from bot.risk.slippage import build_profile  # noqa: E402
from bot.stores import (  # noqa: E402
    DexScreenerMarketData,
    InMemoryTierStore,
    InMemoryWalletStore,
    JsonlRevenueLedger,
)
from bot.tiers import TIERS, TierService, compute_fee  # noqa: E402
from bot.types import MarketSnapshot, WalletRecord  # noqa: E402
from execution.submitter import address_for_key  # noqa: E402
from web3 import Web3  # noqa: E402


def _print(obj: Dict[str, Any]) -> None:
    print(json.dumps(obj, indent=2, default=str))


def cmd_fee(args: argparse.Namespace) -> int:
    res = compute_fee(Decimal(args.amount), TIERS[args.tier.upper()])
    _print({"tier": res.tier, "fee_bps": res.fee_bps, "gross": res.gross_amount, "fee": res.fee_amount, "net": res.net_amount})
    return 0


def cmd_slippage(args: argparse.Namespace) -> int:
    snap = MarketSnapshot(
        liquidity_usd=float(args.liquidity_usd),
        volume_24h_usd=float(args.volume_usd),
        market_cap_usd=float(args.market_cap_usd) if args.market_cap_usd else None,
        buy_tax_bps=int(args.buy_tax_bps),
        sell_tax_bps=int(args.sell_tax_bps),
    )
    p = build_profile(snap, Decimal(args.amount))
    _print(
        {
            "category": p.category,
            "recommended_slippage_bps": p.recommended_slippage_bps,
            "max_recommended_native": p.max_recommended_native,
            "risk_level": p.risk_level,
            "activity_level": p.activity_level,
            "warnings": list(p.warnings),
        }
    )
    return 0


async def _quote(args: argparse.Namespace) -> int:
    adapters = AdapterRegistry()
    try:
        adapter = adapters.get(args.chain)
        info = await adapter.get_token_info(args.token)
        q = await adapter.quote(args.token, int(Web3.to_wei(Decimal(args.amount), "ether")))
        _print(
            {
                "chain": adapter.name,
                "token": info.symbol,
                "decimals": info.decimals,
                "pool": q.pool.address,
                "fee_tier": q.pool.fee_tier,
                "amount_in_wei": q.amount_in,
                "amount_out": q.amount_out,
                "gas_estimate": q.gas_estimate,
            }
        )
    finally:
        await adapters.close()
    return 0


async def _buy(args: argparse.Namespace) -> int:
    key = os.getenv("PRIVATE_KEY", "")
    if not key:
        print("PRIVATE_KEY is not set", file=sys.stderr)
        return 2
    user_id = "cli"
    wallets = InMemoryWalletStore()
    wallets.add(user_id, args.chain, WalletRecord(slot=1, address=address_for_key(key), is_imported=True, created_at=time.time()), key)
    tiers = InMemoryTierStore()
    tiers.set_tier(user_id, args.tier)
    market = DexScreenerMarketData()
    adapters = AdapterRegistry()
    orch = TradeOrchestrator(
        adapters=adapters,
        wallet_store=wallets,
        market_data=market,
        tier_service=TierService(tiers),
        ledger=JsonlRevenueLedger(Path(args.ledger)),
    )
    try:
        trade = await orch.execute_trade(user_id, args.chain, args.token, args.amount, int(args.slippage_bps))
    finally:
        await market.close()
        await orch.rpc_registry.close()
        await adapters.close()
    _print(trade.summary())
    return 0 if trade.state.value == "CONFIRMED" else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="swapcore trade tools")
    parser.add_argument("--log-level", default="INFO", help="logging level")
    parser.add_argument("--log-file", default="", help="also log to this file (optional)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_fee = sub.add_parser("fee", help="platform fee for a tier and amount")
    p_fee.add_argument("--tier", default="FREE", choices=sorted(TIERS) + [t.lower() for t in TIERS])
    p_fee.add_argument("amount")

    p_slip = sub.add_parser("slippage", help="slippage advice from market numbers")
    p_slip.add_argument("--liquidity-usd", required=True)
    p_slip.add_argument("--volume-usd", default="0")
    p_slip.add_argument("--market-cap-usd", default="")
    p_slip.add_argument("--buy-tax-bps", default="0")
    p_slip.add_argument("--sell-tax-bps", default="0")
    p_slip.add_argument("amount")

    p_quote = sub.add_parser("quote", help="pool and expected output for a native buy")
    p_quote.add_argument("--chain", default="base")
    p_quote.add_argument("token")
    p_quote.add_argument("amount")

    p_buy = sub.add_parser("buy", help="buy a token with the PRIVATE_KEY wallet")
    p_buy.add_argument("--chain", default="base")
    p_buy.add_argument("--tier", default="FREE")
    p_buy.add_argument("--slippage-bps", default="100")
    p_buy.add_argument("--ledger", default="artifacts/revenue.jsonl")
    p_buy.add_argument("token")
    p_buy.add_argument("amount")

    args = parser.parse_args()
    configure_logging(args.log_level, Path(args.log_file) if args.log_file else None)

    if args.cmd == "fee":
        return cmd_fee(args)
    if args.cmd == "slippage":
        return cmd_slippage(args)
    if args.cmd == "quote":
        return asyncio.run(_quote(args))
    return asyncio.run(_buy(args))


if __name__ == "__main__":
    raise SystemExit(main())
