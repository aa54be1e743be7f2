from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from eth_abi import decode

from bot.types import TokenInfo
from infra.rpc import RPCResponseError


logger = logging.getLogger(__name__)

NAME_SELECTOR = "0x06fdde03"
SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"
TOTAL_SUPPLY_SELECTOR = "0x18160ddd"

FALLBACK_SYMBOL = "UNKNOWN"
FALLBACK_NAME = "Unknown Token"
FALLBACK_DECIMALS = 18


def _decode_int(hex_data: Any) -> Optional[int]:
    if not hex_data or not isinstance(hex_data, str):
        return None
    hx = hex_data[2:] if hex_data.startswith("0x") else hex_data
    if len(hx) < 64:
        return None
    try:
        return int(hx[:64], 16)
    except ValueError:
        return None


def _decode_string(hex_data: Any) -> Optional[str]:
    """ABI `string` first, then the bytes32 form some older tokens return."""
    if not hex_data or not isinstance(hex_data, str):
        return None
    hx = hex_data[2:] if hex_data.startswith("0x") else hex_data
    if len(hx) < 64:
        return None
    try:
        raw = bytes.fromhex(hx)
    except ValueError:
        return None
    if len(raw) >= 64:
        try:
            text = decode(["string"], raw)[0]
            text = text.strip("\x00").strip()
            if text:
                return text
        except Exception:
            pass
    text = raw[:32].rstrip(b"\x00").decode("utf-8", errors="ignore").strip()
    return text or None


async def _read(rpc: Any, token: str, selector: str, timeout_s: Optional[float]) -> Optional[str]:
    try:
        return await rpc.call("eth_call", [{"to": token, "data": selector}, "latest"], timeout_s=timeout_s)
    except RPCResponseError as e:
        # Optional ERC-20 method not implemented.
        logger.info("token read %s on %s reverted: %s", selector, token, e)
        return None


async def fetch_token_info(rpc: Any, token: str, *, timeout_s: Optional[float] = None) -> TokenInfo:
    """name/symbol/decimals/totalSupply with per-field fallbacks.

    Transport failures propagate; a token that simply lacks a field gets the
    fallback value for it.
    """
    addr = str(token or "").lower()
    name_raw, sym_raw, dec_raw, supply_raw = await asyncio.gather(
        _read(rpc, addr, NAME_SELECTOR, timeout_s),
        _read(rpc, addr, SYMBOL_SELECTOR, timeout_s),
        _read(rpc, addr, DECIMALS_SELECTOR, timeout_s),
        _read(rpc, addr, TOTAL_SUPPLY_SELECTOR, timeout_s),
    )
    decimals = _decode_int(dec_raw)
    if decimals is None or decimals > 255:
        decimals = FALLBACK_DECIMALS
    return TokenInfo(
        address=addr,
        symbol=_decode_string(sym_raw) or FALLBACK_SYMBOL,
        name=_decode_string(name_raw) or FALLBACK_NAME,
        decimals=int(decimals),
        total_supply=int(_decode_int(supply_raw) or 0),
    )
