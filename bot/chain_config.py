from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional


CONFIG_DIR = Path(__file__).resolve().parents[1] / "configs" / "chains"


class ChainId(str, Enum):
    ETHEREUM = "ethereum"
    BASE = "base"
    BSC = "bsc"
    ARBITRUM = "arbitrum"
    POLYGON = "polygon"
    SOLANA = "solana"

    @classmethod
    def parse(cls, value: Any) -> "ChainId":
        if isinstance(value, ChainId):
            return value
        text = str(value or "").strip().lower()
        aliases = {"eth": "ethereum", "mainnet": "ethereum", "bnb": "bsc", "sol": "solana", "arb": "arbitrum"}
        text = aliases.get(text, text)
        return cls(text)


@dataclass(frozen=True)
class ChainConfig:
    chain_id: Optional[int]
    name: str
    adapter: str
    native_symbol: str
    explorer_url: str
    rpc_urls: List[str]
    eip1559: bool = True
    wrapped_native: Optional[str] = None
    min_gas_reserve: Decimal = Decimal("0")
    private_rpc_url: Optional[str] = None
    router_kind: Optional[str] = None
    fee_tiers: List[int] = field(default_factory=list)
    dex: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> ChainId:
        return ChainId(self.name)

    def explorer_tx_url(self, tx_hash: Optional[str]) -> Optional[str]:
        if not tx_hash or not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [u.strip() for u in str(raw).replace("\n", ",").split(",") if u.strip()]


def _normalize_dex(raw: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not isinstance(raw, dict):
        return out
    for k, v in raw.items():
        if not k:
            continue
        key = str(k).strip().lower()
        val = str(v).strip() if v is not None else ""
        if val:
            out[key] = val
    return out


def _normalize_fee_tiers(raw: Any) -> List[int]:
    out: List[int] = []
    if not isinstance(raw, (list, tuple)):
        return out
    for v in raw:
        try:
            fee = int(v)
        except (TypeError, ValueError):
            continue
        if fee > 0 and fee not in out:
            out.append(fee)
    return out


def _decimal(raw: Any) -> Decimal:
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def load_chain_config(chain_name: Optional[str] = None, chain_id: Optional[int] = None) -> Optional[ChainConfig]:
    name = str(chain_name or os.getenv("CHAIN_NAME") or "").strip().lower()

    candidates: List[Path] = []
    if name:
        candidates.append(CONFIG_DIR / f"{name}.json")
    if chain_id is not None:
        for path in sorted(CONFIG_DIR.glob("*.json")):
            data = _read_json(path)
            if isinstance(data, dict) and data.get("chain_id") == chain_id:
                candidates.append(path)

    data: Optional[Dict[str, Any]] = None
    for path in candidates:
        if path.exists():
            data = _read_json(path)
            if isinstance(data, dict):
                break
    if not data:
        return None

    chain_id_val = None
    if data.get("chain_id") is not None:
        try:
            chain_id_val = int(data.get("chain_id"))
        except (TypeError, ValueError):
            chain_id_val = None

    cfg_name = str(data.get("name") or name or "unknown").strip().lower()
    rpc_urls = _split_urls(os.getenv(f"{cfg_name.upper()}_RPC_URLS"))
    if not rpc_urls:
        rpc_urls = [str(x).strip() for x in (data.get("rpc_urls") or []) if str(x).strip()]

    return ChainConfig(
        chain_id=chain_id_val,
        name=cfg_name,
        adapter=str(data.get("adapter") or "unsupported").strip().lower(),
        native_symbol=str(data.get("native_symbol") or "ETH").strip(),
        explorer_url=str(data.get("explorer_url") or "").strip(),
        rpc_urls=rpc_urls,
        eip1559=bool(data.get("eip1559", True)),
        wrapped_native=(str(data.get("wrapped_native")).strip() or None) if data.get("wrapped_native") else None,
        min_gas_reserve=_decimal(data.get("min_gas_reserve", "0")),
        private_rpc_url=(str(data.get("private_rpc_url")).strip() or None) if data.get("private_rpc_url") else None,
        router_kind=(str(data.get("router_kind")).strip().lower() or None) if data.get("router_kind") else None,
        fee_tiers=_normalize_fee_tiers(data.get("fee_tiers")),
        dex=_normalize_dex(data.get("dex")),
    )


@lru_cache(maxsize=None)
def get_chain(chain: Any) -> ChainConfig:
    """Chain metadata, loaded once per process."""
    key = ChainId.parse(chain)
    cfg = load_chain_config(key.value)
    if cfg is None:
        raise KeyError(f"no chain config for {key.value}")
    return cfg


def all_chains() -> Dict[ChainId, ChainConfig]:
    out: Dict[ChainId, ChainConfig] = {}
    for key in ChainId:
        try:
            out[key] = get_chain(key)
        except KeyError:
            continue
    return out
