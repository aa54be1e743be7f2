from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar


T = TypeVar("T")


class AllAttemptsFailed(Exception):
    """Every branch of a fan-out raised."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors: List[BaseException] = list(errors)
        last = self.errors[-1] if self.errors else None
        super().__init__(f"all {len(self.errors)} attempts failed; last: {last!r}")


async def first_success(
    factories: Sequence[Callable[[], Awaitable[T]]],
    *,
    timeout_s: Optional[float] = None,
) -> T:
    """Run every factory concurrently and return the first successful result.

    A branch that raises does not end the race; the remaining branches keep
    running. Once one succeeds the others are cancelled and awaited so no task
    outlives the call. Raises AllAttemptsFailed when every branch failed and
    asyncio.TimeoutError when the overall budget ran out first.
    """
    if not factories:
        raise AllAttemptsFailed([])

    tasks = [asyncio.ensure_future(f()) for f in factories]
    errors: List[BaseException] = []
    loop = asyncio.get_running_loop()
    deadline = None if timeout_s is None else loop.time() + float(timeout_s)
    try:
        pending = set(tasks)
        while pending:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                raise asyncio.TimeoutError(f"fan-out timed out after {timeout_s}s")
            # Deterministic winner when several finish in the same tick: list order.
            for task in sorted(done, key=tasks.index):
                if task.cancelled():
                    errors.append(asyncio.CancelledError())
                    continue
                exc = task.exception()
                if exc is None:
                    return task.result()
                errors.append(exc)
        raise AllAttemptsFailed(errors)
    finally:
        losers = [t for t in tasks if not t.done()]
        for t in losers:
            t.cancel()
        if losers:
            await asyncio.gather(*losers, return_exceptions=True)
