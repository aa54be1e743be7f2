from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_account import Account

from bot.errors import SubmissionRejectedError
from infra.metrics import METRICS
from infra.rpc import ProviderUnavailableError, RPCResponseError, RPCTransportError


logger = logging.getLogger(__name__)

# Node replies that mean "this exact transaction is already in the pool".
_ALREADY_KNOWN = ("already known", "already imported", "known transaction")


@dataclass(frozen=True)
class Broadcast:
    tx_hash: str
    acknowledged: bool
    note: Optional[str] = None


def address_for_key(private_key: str) -> str:
    return Account.from_key(private_key).address


def sign_transaction(tx: Dict[str, Any], private_key: str) -> Tuple[str, str]:
    """Return (raw_tx_hex, tx_hash) for an offline-signed transaction."""
    signed = Account.sign_transaction(tx, private_key)
    raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")
    return "0x" + bytes(raw).hex(), "0x" + bytes(signed.hash).hex()


async def broadcast(
    submit_rpc: Any,
    raw_hex: str,
    tx_hash: str,
    *,
    url: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> Broadcast:
    """Send a signed transaction to exactly one endpoint, once.

    A JSON-RPC error means the node refused it and nothing moved. A transport
    failure leaves the outcome open: the hash is returned unacknowledged so
    the caller keeps tracking it.
    """
    try:
        res = await submit_rpc.send_raw_transaction(raw_hex, url=url, timeout_s=timeout_s)
    except RPCResponseError as e:
        msg = str(e)
        if any(s in msg.lower() for s in _ALREADY_KNOWN):
            METRICS.inc("tx_broadcast_total", 1)
            return Broadcast(tx_hash=tx_hash, acknowledged=True, note="already_known")
        METRICS.inc_reason("tx_broadcast_rejected", msg[:60], 1)
        raise SubmissionRejectedError(f"node rejected transaction: {msg}") from e
    except ProviderUnavailableError:
        # Nothing was sent.
        raise
    except (RPCTransportError, asyncio.TimeoutError) as e:
        METRICS.inc("tx_broadcast_ambiguous_total", 1)
        logger.error("broadcast outcome unknown tx=%s: %s", tx_hash, e)
        return Broadcast(tx_hash=tx_hash, acknowledged=False, note=str(e))
    METRICS.inc("tx_broadcast_total", 1)
    if isinstance(res, str) and res.lower() != tx_hash.lower():
        logger.warning("node returned hash %s, expected %s", res, tx_hash)
    return Broadcast(tx_hash=tx_hash, acknowledged=True)
