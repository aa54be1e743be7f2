from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from web3 import Web3

from bot import config
from bot.types import WalletCandidate, WalletRecord
from infra.rpc import ProviderUnavailableError


logger = logging.getLogger(__name__)

IMPORTED_BONUS = 100
BALANCE_POINTS_PER_NATIVE = 10
BALANCE_POINTS_CAP = 50
FRESHNESS_POINTS = 20
SECONDS_PER_DAY = 86_400


def wallet_score(candidate: WalletCandidate, *, now_s: float) -> Decimal:
    score = Decimal(IMPORTED_BONUS if candidate.is_imported else 0)
    if candidate.balance > 0:
        score += min(candidate.balance * BALANCE_POINTS_PER_NATIVE, Decimal(BALANCE_POINTS_CAP))
    age_days = max(0, int((float(now_s) - float(candidate.created_at)) // SECONDS_PER_DAY))
    score += max(0, FRESHNESS_POINTS - age_days)
    return score


def rank_wallets(candidates: Sequence[WalletCandidate], *, now_s: Optional[float] = None) -> List[WalletCandidate]:
    """Highest score first; slot then address break ties so ranking is stable."""
    now = float(now_s if now_s is not None else time.time())
    return sorted(
        candidates,
        key=lambda c: (-wallet_score(c, now_s=now), int(c.slot), str(c.address).lower()),
    )


def select_wallet(candidates: Sequence[WalletCandidate], *, now_s: Optional[float] = None) -> Optional[WalletCandidate]:
    """Top-ranked funded wallet, else the top-ranked wallet, else None."""
    ranked = rank_wallets(candidates, now_s=now_s)
    if not ranked:
        return None
    for c in ranked:
        if c.balance > 0:
            return c
    return ranked[0]


def find_wallet(candidates: Sequence[WalletCandidate], wallet_ref: Any) -> Optional[WalletCandidate]:
    for c in candidates:
        if c.matches_ref(wallet_ref):
            return c
    return None


def has_sufficient_balance(candidate: WalletCandidate, amount: Decimal, reserve: Decimal) -> bool:
    return candidate.balance >= Decimal(amount) + Decimal(reserve)


async def load_candidates(
    adapter: Any,
    records: Sequence[WalletRecord],
    *,
    execution: Any = None,
    timeout_s: Optional[float] = None,
) -> List[WalletCandidate]:
    """Attach native balances to wallet records.

    A single failed read scores that wallet as empty. When every read fails
    the balances are unknown, not zero, and ProviderUnavailableError is raised.
    """
    to_s = float(timeout_s if timeout_s is not None else getattr(config, "READ_TIMEOUT_S", 2.0))

    errors: List[BaseException] = []

    async def _one(rec: WalletRecord) -> WalletCandidate:
        try:
            wei = await asyncio.wait_for(adapter.get_balance(rec.address, execution=execution), timeout=to_s)
            balance = Decimal(Web3.from_wei(int(wei), "ether"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("balance read failed wallet=%s: %s", rec.address, e)
            errors.append(e)
            return WalletCandidate(
                slot=rec.slot,
                address=rec.address,
                balance=Decimal(0),
                is_imported=rec.is_imported,
                created_at=rec.created_at,
                balance_known=False,
            )
        return WalletCandidate(
            slot=rec.slot,
            address=rec.address,
            balance=balance,
            is_imported=rec.is_imported,
            created_at=rec.created_at,
        )

    candidates = list(await asyncio.gather(*[_one(r) for r in records]))
    if candidates and len(errors) == len(candidates):
        raise ProviderUnavailableError(
            f"balance reads failed for all {len(candidates)} wallets; last: {errors[-1]}", errors=errors
        )
    return candidates
