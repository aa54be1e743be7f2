from decimal import Decimal

import pytest

from bot.chain_config import ChainId, get_chain, load_chain_config
from bot.chains.base import UnsupportedChainAdapter
from bot.chains.evm import EvmSwapRouter
from bot.chains.registry import AdapterRegistry
from bot.errors import UnsupportedChainError


def test_load_chain_config_base() -> None:
    cfg = load_chain_config("base")
    assert cfg is not None
    assert cfg.chain_id == 8453
    assert cfg.adapter == "evm"
    assert cfg.router_kind == "universal_router"
    assert cfg.wrapped_native == "0x4200000000000000000000000000000000000006"
    assert cfg.min_gas_reserve == Decimal("0.0005")
    assert cfg.dex.get("factory")
    assert cfg.explorer_tx_url("0xabc") == "https://basescan.org/tx/0xabc"


def test_load_chain_config_by_chain_id() -> None:
    cfg = load_chain_config(None, chain_id=56)
    assert cfg is not None
    assert cfg.name == "bsc"
    assert cfg.eip1559 is False


def test_env_overrides_rpc_urls(monkeypatch) -> None:
    monkeypatch.setenv("ETHEREUM_RPC_URLS", "https://one.example, https://two.example")
    cfg = load_chain_config("ethereum")
    assert cfg.rpc_urls == ["https://one.example", "https://two.example"]


def test_chain_aliases() -> None:
    assert ChainId.parse("ETH") is ChainId.ETHEREUM
    assert ChainId.parse("bnb") is ChainId.BSC
    with pytest.raises(ValueError):
        ChainId.parse("dogechain")


def test_registry_picks_adapter_by_chain_file() -> None:
    reg = AdapterRegistry()
    assert isinstance(reg.get("base"), EvmSwapRouter)
    assert isinstance(reg.get("sol"), UnsupportedChainAdapter)
    assert reg.get("base") is reg.get("BASE")
    with pytest.raises(UnsupportedChainError):
        reg.get("dogechain")


@pytest.mark.asyncio
async def test_unsupported_chain_surfaces_error_kind() -> None:
    adapter = UnsupportedChainAdapter(get_chain("solana"))
    with pytest.raises(UnsupportedChainError):
        await adapter.quote("So11111111111111111111111111111111111111112", 1)
    res = await adapter.execute_buy("0x" + "11" * 32, "token", 1, 100)
    assert res.success is False
    assert res.error_kind.value == "UnsupportedChain"
    assert res.tx_hash is None
