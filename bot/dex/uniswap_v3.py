# bot/dex/uniswap_v3.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from bot.types import SwapRequest
from infra.rpc import RPCError


logger = logging.getLogger(__name__)


def _selector(sig: str) -> str:
    return keccak(text=sig)[:4].hex()


SIG_QUOTE_V1 = "quoteExactInputSingle(address,address,uint24,uint256,uint160)"
SIG_QUOTE_V2 = "quoteExactInputSingle((address,address,uint256,uint24,uint160))"
SIG_EXACT_INPUT_SINGLE = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))"
SIG_EXACT_INPUT_SINGLE_02 = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"
SIG_MULTICALL_DEADLINE = "multicall(uint256,bytes[])"
SIG_EXECUTE = "execute(bytes,bytes[],uint256)"

SEL_EXACT_INPUT_SINGLE = _selector(SIG_EXACT_INPUT_SINGLE)
SEL_EXACT_INPUT_SINGLE_02 = _selector(SIG_EXACT_INPUT_SINGLE_02)
SEL_MULTICALL_DEADLINE = _selector(SIG_MULTICALL_DEADLINE)
SEL_EXECUTE = _selector(SIG_EXECUTE)

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()

# Universal Router commands and recipient sentinels.
CMD_V3_SWAP_EXACT_IN = 0x00
CMD_WRAP_ETH = 0x0B
MSG_SENDER = "0x0000000000000000000000000000000000000001"
ADDRESS_THIS = "0x0000000000000000000000000000000000000002"

ROUTER_KINDS = ("swap_router", "swap_router02", "universal_router")


@dataclass(frozen=True)
class Quote:
    fee: int
    amount_out: int
    gas_estimate: Optional[int] = None
    raw_hex: Optional[str] = None


def _blob(raw: str) -> bytes:
    return bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)


class UniV3Quoter:
    """Exact-input single-pool quotes against one chain's quoter contracts."""

    def __init__(self, rpc: Any, *, quoter_v2: Optional[str], quoter_v1: Optional[str] = None):
        self.rpc = rpc
        self.quoter_v2 = quoter_v2
        self.quoter_v1 = quoter_v1
        self._sel_v1 = _selector(SIG_QUOTE_V1)
        self._sel_v2 = _selector(SIG_QUOTE_V2)

    async def quote_v1(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        fee: int,
        *,
        timeout_s: Optional[float] = None,
    ) -> Quote:
        """Quoter (v1) reverts on purpose to return the amount; revert data is passed through."""
        if not self.quoter_v1:
            raise RuntimeError("no v1 quoter configured")
        params = encode(
            ["address", "address", "uint24", "uint256", "uint160"],
            [token_in, token_out, int(fee), int(amount_in), 0],
        )
        data = "0x" + self._sel_v1 + params.hex()
        raw = await self.rpc.eth_call(self.quoter_v1, data, timeout_s=timeout_s, allow_revert_data=True)
        blob = _blob(str(raw))
        if len(blob) < 32:
            raise RuntimeError(f"Quoter returned short blob: {len(blob)} bytes")
        return Quote(fee=int(fee), amount_out=int.from_bytes(blob[:32], "big"), raw_hex=str(raw))

    async def quote_v2(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        fee: int,
        *,
        timeout_s: Optional[float] = None,
    ) -> Quote:
        """QuoterV2 quoteExactInputSingle: amount out plus the quoter's gas estimate."""
        if not self.quoter_v2:
            raise RuntimeError("no QuoterV2 configured")
        params = encode(
            ["(address,address,uint256,uint24,uint160)"],
            [(token_in, token_out, int(amount_in), int(fee), 0)],
        )
        data = "0x" + self._sel_v2 + params.hex()
        raw = await self.rpc.eth_call(self.quoter_v2, data, timeout_s=timeout_s)
        blob = _blob(str(raw))
        # Exactly 4 words: amountOut, sqrtPriceX96After, initializedTicksCrossed, gasEstimate.
        if len(blob) < 32 * 4:
            raise RuntimeError(f"QuoterV2 returned short blob: {len(blob)} bytes")
        amount_out, _sqrt_price_after, _ticks_crossed, gas_estimate = decode(
            ["uint256", "uint160", "uint32", "uint256"], blob
        )
        return Quote(fee=int(fee), amount_out=int(amount_out), gas_estimate=int(gas_estimate), raw_hex=str(raw))

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        fee: int,
        *,
        timeout_s: Optional[float] = None,
    ) -> Optional[Quote]:
        """QuoterV2 first, v1 as fallback. None when neither answers usefully."""
        try:
            q = await self.quote_v2(token_in, token_out, amount_in, fee, timeout_s=timeout_s)
            if q.amount_out > 0:
                return q
        except (RPCError, RuntimeError, ValueError) as e:
            logger.info("QuoterV2 failed fee=%s: %s", fee, e)
        if not self.quoter_v1:
            return None
        try:
            q1 = await self.quote_v1(token_in, token_out, amount_in, fee, timeout_s=timeout_s)
        except (RPCError, RuntimeError, ValueError) as e:
            logger.info("Quoter v1 failed fee=%s: %s", fee, e)
            return None
        return q1 if q1.amount_out > 0 else None


def encode_path(tokens: Sequence[str], fees: Sequence[int]) -> bytes:
    """token(20) | fee(3, big-endian) | token(20) ..."""
    if len(tokens) != len(fees) + 1 or not fees:
        raise ValueError("path needs one more token than fees")
    out = b""
    for i, fee in enumerate(fees):
        if not 0 <= int(fee) < 2 ** 24:
            raise ValueError(f"fee tier out of uint24 range: {fee}")
        out += bytes.fromhex(str(tokens[i])[2:].rjust(40, "0"))
        out += int(fee).to_bytes(3, "big")
    out += bytes.fromhex(str(tokens[-1])[2:].rjust(40, "0"))
    return out


def decode_path(path_bytes: bytes) -> Tuple[List[str], List[int]]:
    tokens: List[str] = []
    fees: List[int] = []
    i = 0
    data = bytes(path_bytes)
    while i + 20 <= len(data):
        tokens.append("0x" + data[i : i + 20].hex())
        i += 20
        if i + 3 > len(data):
            break
        fees.append(int.from_bytes(data[i : i + 3], "big"))
        i += 3
    return tokens, fees


def min_amount_out(amount_out: int, slippage_bps: int) -> int:
    return int(amount_out) * (10_000 - int(slippage_bps)) // 10_000


def encode_exact_input_single(req: SwapRequest) -> str:
    """SwapRouter exactInputSingle; the deadline lives inside the params struct."""
    params = encode(
        ["(address,address,uint24,address,uint256,uint256,uint256,uint160)"],
        [(
            req.token_in,
            req.token_out,
            int(req.fee_tier),
            req.recipient,
            int(req.deadline),
            int(req.amount_in),
            int(req.min_amount_out),
            0,
        )],
    )
    return "0x" + SEL_EXACT_INPUT_SINGLE + params.hex()


def encode_swap_router02(req: SwapRequest) -> str:
    """SwapRouter02 exactInputSingle wrapped in multicall(deadline, [...])."""
    inner = bytes.fromhex(SEL_EXACT_INPUT_SINGLE_02) + encode(
        ["(address,address,uint24,address,uint256,uint256,uint160)"],
        [(
            req.token_in,
            req.token_out,
            int(req.fee_tier),
            req.recipient,
            int(req.amount_in),
            int(req.min_amount_out),
            0,
        )],
    )
    params = encode(["uint256", "bytes[]"], [int(req.deadline), [inner]])
    return "0x" + SEL_MULTICALL_DEADLINE + params.hex()


def encode_universal_router(req: SwapRequest) -> str:
    """execute(commands, inputs, deadline): WRAP_ETH then V3_SWAP_EXACT_IN paid by the router."""
    commands = bytes([CMD_WRAP_ETH, CMD_V3_SWAP_EXACT_IN])
    wrap_input = encode(["address", "uint256"], [ADDRESS_THIS, int(req.amount_in)])
    path = encode_path([req.token_in, req.token_out], [int(req.fee_tier)])
    swap_input = encode(
        ["address", "uint256", "uint256", "bytes", "bool"],
        [req.recipient, int(req.amount_in), int(req.min_amount_out), path, False],
    )
    params = encode(["bytes", "bytes[]", "uint256"], [commands, [wrap_input, swap_input], int(req.deadline)])
    return "0x" + SEL_EXECUTE + params.hex()


def build_swap_calldata(router_kind: str, req: SwapRequest) -> str:
    if router_kind == "swap_router":
        return encode_exact_input_single(req)
    if router_kind == "swap_router02":
        return encode_swap_router02(req)
    if router_kind == "universal_router":
        return encode_universal_router(req)
    raise ValueError(f"unknown router kind: {router_kind}")


def decode_universal_router_swap(data_hex: str) -> Optional[Dict[str, Any]]:
    """Read back the first V3 exact-in swap from execute(...) calldata."""
    if not data_hex or not data_hex.startswith("0x") or data_hex[2:10].lower() != SEL_EXECUTE:
        return None
    try:
        commands, inputs, deadline = decode(["bytes", "bytes[]", "uint256"], bytes.fromhex(data_hex[10:]))
    except Exception:
        return None
    for idx, raw_cmd in enumerate(bytes(commands or b"")):
        if idx >= len(inputs):
            break
        if int(raw_cmd) & 0x3F != CMD_V3_SWAP_EXACT_IN:
            continue
        rec, amount_in, amount_out_min, path_bytes, payer_is_user = decode(
            ["address", "uint256", "uint256", "bytes", "bool"], inputs[idx]
        )
        tokens, fees = decode_path(path_bytes)
        return {
            "commands": bytes(commands),
            "recipient": str(rec).lower(),
            "amount_in": int(amount_in),
            "amount_out_min": int(amount_out_min),
            "path": tokens,
            "fees": fees,
            "payer_is_user": bool(payer_is_user),
            "deadline": int(deadline),
        }
    return None


def _topic_address(topic: Any) -> str:
    hx = str(topic or "")
    hx = hx[2:] if hx.startswith("0x") else hx
    return ("0x" + hx[-40:]).lower()


def parse_received_amount(receipt: Dict[str, Any], token: str, recipient: str) -> Optional[int]:
    """Sum of ERC-20 Transfer(to=recipient) amounts emitted by `token`; None when there are none."""
    token_l = str(token).lower()
    recipient_l = str(recipient).lower()
    total = 0
    found = False
    for log in receipt.get("logs") or []:
        if str(log.get("address") or "").lower() != token_l:
            continue
        topics = log.get("topics") or []
        if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_TOPIC:
            continue
        if _topic_address(topics[2]) != recipient_l:
            continue
        data = str(log.get("data") or "0x")
        try:
            total += int(data, 16) if data not in ("0x", "") else 0
        except ValueError:
            continue
        found = True
    return total if found else None


def checksum(addr: str) -> str:
    return to_checksum_address(str(addr))
