# bot/config.py
# NOTE:
# Do not hardcode private keys in the repo. Signing keys come from the wallet
# store (or env PRIVATE_KEY for the CLI) and never pass through this module.

import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return bool(default)
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 0.5
RPC_TIMEOUT_MAX_S = 10.0
RPC_DEFAULT_TIMEOUT_S = _env_float("RPC_TIMEOUT_S", 3.0)
RPC_RETRY_COUNT = 1
RPC_BACKOFF_BASE_S = 0.35
RPC_RATE_LIMIT_BACKOFF_S = 0.35

# Circuit breaker: N consecutive transport errors -> open for cooldown.
RPC_CB_THRESHOLD = 5
RPC_CB_COOLDOWN_S = 30.0

# Health window + auto-ban (cooldown) thresholds.
RPC_HEALTH_WINDOW = 50
RPC_BAN_TIMEOUT_RATE = 0.2
RPC_BAN_SUCCESS_RATE = 0.7
RPC_BAN_LATENCY_P95_MS = 2500.0
RPC_BAN_SECONDS = 60
RPC_BAN_MIN_SAMPLES = 3

# Short timeout for advisory reads (market data, wallet balances).
READ_TIMEOUT_S = 2.0

# Swap construction.
SWAP_DEADLINE_S = 600
GAS_LIMIT_BUFFER = 1.2
NATIVE_TRANSFER_GAS = 21000

# Confirmation polling: exponential backoff inside a fixed budget.
CONFIRM_TIMEOUT_S = _env_float("CONFIRM_TIMEOUT_S", 120.0)
CONFIRM_POLL_INITIAL_S = 0.5
CONFIRM_POLL_MAX_S = 8.0

# Pool discovery cache.
POOL_CACHE_TTL_S = 300.0

# Token metadata cache (decimals/symbol/name rarely change).
TOKEN_INFO_TTL_S = 3600.0

# Tier lookups are cached per user.
TIER_CACHE_TTL_S = 300.0

# Terminal trades stay queryable for this long.
TRADE_RETENTION_S = 3600.0

# Fee tiers (bps of the swap, Uniswap V3 units: 3000 == 0.30%).
FEE_TIERS = [3000, 500, 10000]

# Liquidity advisor thresholds (native units / USD).
LARGE_TRADE_NATIVE = "0.1"
DUST_TRADE_NATIVE = "0.001"
MICRO_CAP_USD = 100_000.0
SLIPPAGE_MIN_BPS = 50
SLIPPAGE_MAX_BPS = 9900

# Subscription tiers. fee_bps is taken from the gross native amount.
TIERS = {
    "FREE": {
        "fee_bps": 30,
        "speed": "standard",
        "concurrency": "single",
        "race_width": 1,
        "gas_multiplier": "1.1",
        "priority_fee_gwei": "0.1",
        "gas_limit_ceiling": 200_000,
        "mev": "none",
        "max_trade_native": "5",
    },
    "PRO": {
        "fee_bps": 30,
        "speed": "fast",
        "concurrency": "race",
        "race_width": 3,
        "gas_multiplier": "1.5",
        "priority_fee_gwei": "2",
        "gas_limit_ceiling": 300_000,
        "mev": "optional",
        "max_trade_native": "50",
    },
    "WHALE": {
        "fee_bps": 15,
        "speed": "lightning",
        "concurrency": "race",
        "race_width": 5,
        "gas_multiplier": "2.0",
        "priority_fee_gwei": "10",
        "gas_limit_ceiling": 500_000,
        "mev": "mandatory",
        "max_trade_native": "1000",
    },
}
DEFAULT_TIER = "FREE"

def _keyed(prefix: str, env_name: str) -> list:
    key = os.getenv(env_name, "").strip()
    return [prefix + key] if key else []


# Endpoint sets per chain and tier. Missing entries fall back to the chain's
# public rpc_urls. Premium URLs are only listed when their API key is set.
TIER_RPC_ENDPOINTS = {
    "base": {
        "FREE": ["https://mainnet.base.org", "https://base.publicnode.com"],
        "PRO": _keyed("https://base-mainnet.g.alchemy.com/v2/", "ALCHEMY_API_KEY")
        + _keyed("https://base-mainnet.infura.io/v3/", "INFURA_API_KEY")
        + ["https://rpc.ankr.com/base", "https://base.publicnode.com"],
        "WHALE": _keyed("https://base-mainnet.g.alchemy.com/v2/", "ALCHEMY_API_KEY")
        + _keyed("https://base-mainnet.infura.io/v3/", "INFURA_API_KEY")
        + [
            "https://rpc.ankr.com/base",
            "https://base.llamarpc.com",
            "https://base.drpc.org",
            "https://base.publicnode.com",
        ],
    },
}

# Private (MEV-shielded) submission endpoints per chain, overriding the
# chain file's private_rpc_url.
PRIVATE_RPC_URLS = {
    "ethereum": os.getenv("ETHEREUM_PRIVATE_RPC_URL", "https://rpc.flashbots.net"),
}

# Fee collection: move the retained fee to a treasury after a confirmed buy.
TREASURY_WALLET = os.getenv("TREASURY_WALLET", "")
FEE_COLLECTION_ENABLED = _env_bool("FEE_COLLECTION_ENABLED", False)
MIN_FEE_TRANSFER_NATIVE = os.getenv("MIN_FEE_TRANSFER_NATIVE", "0.001")

# Market data (DexScreener-compatible token endpoint).
MARKET_DATA_URL = "https://api.dexscreener.com/latest/dex/tokens"
MARKET_DATA_CHAIN_IDS = {
    "ethereum": "ethereum",
    "base": "base",
    "bsc": "bsc",
    "arbitrum": "arbitrum",
    "polygon": "polygon",
    "solana": "solana",
}
