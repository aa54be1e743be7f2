from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from bot.chain_config import ChainConfig, ChainId, get_chain
from bot.chains.base import ChainAdapter, UnsupportedChainAdapter
from bot.chains.evm import EvmSwapRouter
from bot.errors import UnsupportedChainError


AdapterFactory = Callable[[ChainConfig], ChainAdapter]

ADAPTER_FACTORIES: Dict[str, AdapterFactory] = {
    "evm": EvmSwapRouter,
    "unsupported": UnsupportedChainAdapter,
}


class AdapterRegistry:
    """Chain -> adapter, chosen by the chain file's `adapter` field."""

    def __init__(
        self,
        *,
        factories: Optional[Dict[str, AdapterFactory]] = None,
        adapters: Optional[Dict[str, ChainAdapter]] = None,
        chain_loader: Callable[[Any], ChainConfig] = get_chain,
    ) -> None:
        self._factories = dict(factories or ADAPTER_FACTORIES)
        self._adapters: Dict[str, ChainAdapter] = {str(k).lower(): v for k, v in (adapters or {}).items()}
        self._chain_loader = chain_loader

    def register(self, chain: str, adapter: ChainAdapter) -> None:
        self._adapters[str(chain).lower()] = adapter

    def get(self, chain: Any) -> ChainAdapter:
        try:
            name = ChainId.parse(chain).value
        except ValueError:
            name = str(chain or "").strip().lower()
        adapter = self._adapters.get(name)
        if adapter is not None:
            return adapter
        try:
            cfg = self._chain_loader(name)
        except (KeyError, ValueError) as e:
            raise UnsupportedChainError(f"unknown chain: {chain}") from e
        factory = self._factories.get(cfg.adapter)
        if factory is None:
            raise UnsupportedChainError(f"no adapter for {cfg.name} ({cfg.adapter})")
        adapter = factory(cfg)
        self._adapters[cfg.name] = adapter
        return adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
