from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from eth_abi import decode as abi_decode

from bot import config
from infra.rpc import RPCError, RPCResponseError


logger = logging.getLogger(__name__)

_SELECTOR_ERROR = b"\x08\xc3\x79\xa0"
_SELECTOR_PANIC = b"\x4e\x48\x7b\x71"


async def check_tx_receipt(
    rpc: Any,
    tx_hash: str,
    *,
    timeout_s: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """The receipt once mined, None while pending or when the read failed."""
    try:
        receipt = await rpc.call("eth_getTransactionReceipt", [tx_hash], timeout_s=timeout_s)
    except RPCError as e:
        logger.info("receipt poll failed tx=%s: %s", tx_hash, e)
        return None
    if not receipt or not isinstance(receipt, dict):
        return None
    if not receipt.get("blockNumber"):
        return None
    return receipt


def _hex_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError:
        return None


def receipt_status(receipt: Dict[str, Any]) -> int:
    status = _hex_int(receipt.get("status"))
    return 1 if status is None else int(status)


def receipt_block(receipt: Dict[str, Any]) -> Optional[int]:
    return _hex_int(receipt.get("blockNumber"))


def receipt_gas_used(receipt: Dict[str, Any]) -> Optional[int]:
    return _hex_int(receipt.get("gasUsed"))


async def wait_for_receipt(
    rpc: Any,
    tx_hash: str,
    *,
    timeout_s: Optional[float] = None,
    initial_delay_s: Optional[float] = None,
    max_delay_s: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[Dict[str, Any]]:
    """Poll with exponential backoff until a receipt shows up or the budget runs out.

    Returns None on timeout: the transaction may still land later.
    """
    budget = float(timeout_s if timeout_s is not None else getattr(config, "CONFIRM_TIMEOUT_S", 120.0))
    delay = float(initial_delay_s if initial_delay_s is not None else getattr(config, "CONFIRM_POLL_INITIAL_S", 0.5))
    cap = float(max_delay_s if max_delay_s is not None else getattr(config, "CONFIRM_POLL_MAX_S", 8.0))
    deadline = clock() + budget
    polls = 0
    while True:
        polls += 1
        receipt = await check_tx_receipt(rpc, tx_hash)
        if receipt is not None:
            logger.info("receipt tx=%s block=%s polls=%d", tx_hash, receipt.get("blockNumber"), polls)
            return receipt
        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning("no receipt tx=%s after %.1fs (%d polls)", tx_hash, budget, polls)
            return None
        await sleep(min(delay, remaining))
        delay = min(cap, delay * 2) if delay > 0 else cap


def decode_revert_reason(data_hex: Any) -> Optional[str]:
    if not data_hex or not isinstance(data_hex, str) or data_hex == "0x":
        return None
    hx = data_hex[2:] if data_hex.startswith("0x") else data_hex
    try:
        raw = bytes.fromhex(hx)
    except ValueError:
        return None
    if raw.startswith(_SELECTOR_ERROR):
        try:
            reason = abi_decode(["string"], raw[4:])[0]
            return f"revert:{reason}"
        except Exception:
            return "revert:error"
    if raw.startswith(_SELECTOR_PANIC):
        try:
            code = abi_decode(["uint256"], raw[4:])[0]
            return f"panic:0x{int(code):x}"
        except Exception:
            return "panic"
    return None


async def replay_revert_reason(rpc: Any, tx: Dict[str, Any], block: Optional[int]) -> Optional[str]:
    """Re-run a mined, reverted call with eth_call at its block to recover the reason."""
    call = {k: tx[k] for k in ("from", "to", "data") if k in tx}
    if tx.get("value"):
        call["value"] = hex(int(tx["value"]))
    tag = hex(int(block)) if block is not None else "latest"
    try:
        await rpc.call("eth_call", [call, tag])
    except RPCResponseError as e:
        data = e.data.get("data") if isinstance(e.data, dict) else e.data
        return decode_revert_reason(data) or str(e)
    except RPCError as e:
        logger.info("revert replay failed: %s", e)
    return None
