from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from bot import config


logger = logging.getLogger(__name__)

GWEI = 10 ** 9


@dataclass(frozen=True)
class GasPolicy:
    """How aggressively a strategy prices and sizes its transactions."""

    name: str
    fee_multiplier: Decimal = Decimal("1.1")
    priority_fee_gwei: Decimal = Decimal("0.1")
    gas_limit_buffer: Decimal = Decimal("1.2")
    gas_limit_ceiling: int = 200_000

    @property
    def priority_fee_wei(self) -> int:
        return int(self.priority_fee_gwei * GWEI)


def _to_hex(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    try:
        return hex(int(value))
    except (TypeError, ValueError):
        return None


def _median(values: Iterable[int]) -> int:
    vals = sorted(int(v) for v in values if v is not None)
    if not vals:
        return 0
    mid = len(vals) // 2
    if len(vals) % 2:
        return vals[mid]
    return int((vals[mid - 1] + vals[mid]) / 2)


def _scale(value: int, multiplier: Decimal) -> int:
    return int(math.ceil(Decimal(int(value)) * multiplier))


async def get_fee_params(
    rpc: Any,
    *,
    block_count: int = 10,
    reward_percentiles: Optional[list] = None,
    timeout_s: float = 3.0,
) -> Dict[str, int]:
    """Return EIP-1559 fee params from eth_feeHistory (fallback to eth_gasPrice)."""
    if reward_percentiles is None:
        reward_percentiles = [50, 75]

    try:
        res = await rpc.call(
            "eth_feeHistory",
            [hex(int(block_count)), "latest", reward_percentiles],
            timeout_s=timeout_s,
        )
        base_fees = [int(x, 16) for x in (res.get("baseFeePerGas") or []) if isinstance(x, str)]
        rewards = res.get("reward") or []
        idx = len(reward_percentiles) - 1
        priority_vals = []
        for row in rewards:
            if isinstance(row, (list, tuple)) and len(row) > idx and isinstance(row[idx], str):
                priority_vals.append(int(row[idx], 16))
        max_priority = _median(priority_vals) if priority_vals else 0
        base_fee = int(base_fees[-1]) if base_fees else 0
        if base_fee > 0:
            return {
                "base_fee_per_gas": int(base_fee),
                "max_priority_fee_per_gas": int(max_priority),
                "max_fee_per_gas": int(base_fee * 2 + max_priority),
            }
    except Exception as e:
        logger.debug("eth_feeHistory unavailable, using eth_gasPrice: %s", e)

    gp = await rpc.call("eth_gasPrice", [], timeout_s=timeout_s)
    gas_price = int(gp, 16) if isinstance(gp, str) else int(gp)
    return {
        "base_fee_per_gas": int(gas_price),
        "max_priority_fee_per_gas": 0,
        "max_fee_per_gas": int(gas_price),
    }


async def build_fee_fields(
    rpc: Any,
    policy: GasPolicy,
    *,
    eip1559: bool,
    timeout_s: float = 3.0,
) -> Dict[str, int]:
    """Transaction fee fields with the policy's premium applied.

    EIP-1559 chains get maxFeePerGas/maxPriorityFeePerGas; legacy chains get
    gasPrice. Errors from the node propagate: a transaction is never priced
    with zero.
    """
    if not eip1559:
        gp = await rpc.call("eth_gasPrice", [], timeout_s=timeout_s)
        gas_price = int(gp, 16) if isinstance(gp, str) else int(gp)
        return {"gasPrice": _scale(gas_price, policy.fee_multiplier)}

    params = await get_fee_params(rpc, timeout_s=timeout_s)
    base_fee = int(params["base_fee_per_gas"])
    priority = max(int(params["max_priority_fee_per_gas"]), policy.priority_fee_wei)
    priority = _scale(priority, policy.fee_multiplier)
    max_fee = _scale(base_fee * 2, policy.fee_multiplier) + priority
    return {"maxFeePerGas": int(max_fee), "maxPriorityFeePerGas": int(priority)}


async def estimate_gas(
    rpc: Any,
    tx_params: Dict[str, Any],
    *,
    timeout_s: float = 5.0,
) -> int:
    """Estimate gas via eth_estimateGas; accepts int values and converts to hex. 0 on failure."""
    if not isinstance(tx_params, dict):
        return 0
    payload = dict(tx_params)
    for key in ("value", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "nonce"):
        if key in payload:
            hx = _to_hex(payload.get(key))
            if hx is not None:
                payload[key] = hx
    try:
        res = await rpc.call("eth_estimateGas", [payload], timeout_s=timeout_s)
        return int(res, 16) if isinstance(res, str) else int(res)
    except Exception as e:
        logger.info("eth_estimateGas failed: %s", e)
        return 0


def gas_limit_for(estimate: int, policy: GasPolicy) -> int:
    """Buffered estimate, or the policy ceiling when there is no estimate."""
    if int(estimate) <= 0:
        return int(policy.gas_limit_ceiling)
    buffer = max(policy.gas_limit_buffer, Decimal(str(getattr(config, "GAS_LIMIT_BUFFER", 1.2))))
    return _scale(int(estimate), buffer)
