import asyncio

import pytest
from eth_abi import encode as abi_encode

from bot.errors import SubmissionRejectedError
from execution.confirm import decode_revert_reason, receipt_status, replay_revert_reason, wait_for_receipt
from execution.submitter import address_for_key, broadcast, sign_transaction
from infra.rpc import ProviderUnavailableError, RPCResponseError, RPCTransportError


KEY = "0x" + "11" * 32


def test_decode_revert_reason_error() -> None:
    data = "0x08c379a0" + abi_encode(["string"], ["boom"]).hex()
    assert decode_revert_reason(data) == "revert:boom"


def test_decode_revert_reason_panic() -> None:
    data = "0x4e487b71" + abi_encode(["uint256"], [0x11]).hex()
    assert decode_revert_reason(data) == "panic:0x11"
    assert decode_revert_reason("0x") is None


class ReceiptRPC:
    def __init__(self, receipts):
        self.receipts = list(receipts)
        self.polls = 0

    async def call(self, method, params, timeout_s=None):
        self.polls += 1
        item = self.receipts.pop(0) if self.receipts else None
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, s):
        self.sleeps.append(s)
        self.now += s


def test_wait_for_receipt_backs_off_through_errors() -> None:
    clock = FakeClock()
    rpc = ReceiptRPC([None, RPCTransportError("timeout(1s)"), {"blockNumber": "0x5", "status": "0x1"}])
    receipt = asyncio.run(
        wait_for_receipt(rpc, "0xabc", timeout_s=30, initial_delay_s=0.5, max_delay_s=8, sleep=clock.sleep, clock=clock)
    )
    assert receipt["blockNumber"] == "0x5"
    assert clock.sleeps == [0.5, 1.0]


def test_wait_for_receipt_times_out_with_none() -> None:
    clock = FakeClock()
    rpc = ReceiptRPC([])
    receipt = asyncio.run(
        wait_for_receipt(rpc, "0xabc", timeout_s=5, initial_delay_s=1, max_delay_s=2, sleep=clock.sleep, clock=clock)
    )
    assert receipt is None
    assert sum(clock.sleeps) == pytest.approx(5)


def test_receipt_status_defaults_to_success() -> None:
    assert receipt_status({"status": "0x0"}) == 0
    assert receipt_status({}) == 1


class ReplayRPC:
    async def call(self, method, params, timeout_s=None):
        raise RPCResponseError(
            "rpc_error:execution reverted",
            data={"data": "0x08c379a0" + abi_encode(["string"], ["Too little received"]).hex()},
        )


def test_replay_revert_reason() -> None:
    reason = asyncio.run(replay_revert_reason(ReplayRPC(), {"from": "0x1", "to": "0x2", "data": "0x", "value": 5}, 16))
    assert reason == "revert:Too little received"


class Sender:
    def __init__(self, outcome):
        self.outcome = outcome
        self.sent = []

    async def send_raw_transaction(self, raw_hex, *, url=None, timeout_s=None):
        self.sent.append(raw_hex)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _signed():
    tx = {
        "chainId": 8453,
        "nonce": 0,
        "to": "0x2626664c2603336E57B271c5C0b26F421741e481",
        "value": 1,
        "data": "0x",
        "gas": 21000,
        "maxFeePerGas": 2_000_000_000,
        "maxPriorityFeePerGas": 1_000_000_000,
        "type": 2,
    }
    return sign_transaction(tx, KEY)


def test_sign_is_deterministic() -> None:
    raw1, h1 = _signed()
    raw2, h2 = _signed()
    assert (raw1, h1) == (raw2, h2)
    assert h1.startswith("0x") and len(h1) == 66
    assert address_for_key(KEY).startswith("0x")


@pytest.mark.asyncio
async def test_broadcast_outcomes() -> None:
    raw, tx_hash = _signed()
    ok = await broadcast(Sender(tx_hash), raw, tx_hash)
    assert ok.acknowledged

    known = await broadcast(Sender(RPCResponseError("rpc_error:already known")), raw, tx_hash)
    assert known.acknowledged and known.note == "already_known"

    ambiguous = await broadcast(Sender(RPCTransportError("timeout(1s)")), raw, tx_hash)
    assert not ambiguous.acknowledged
    assert ambiguous.tx_hash == tx_hash

    with pytest.raises(SubmissionRejectedError):
        await broadcast(Sender(RPCResponseError("rpc_error:nonce too low")), raw, tx_hash)
    with pytest.raises(ProviderUnavailableError):
        await broadcast(Sender(ProviderUnavailableError("no endpoint")), raw, tx_hash)
