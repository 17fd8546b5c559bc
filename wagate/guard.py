"""Operation guard: put a deadline on any call into the browser backend.

The backend has no cooperative cancellation, so a timeout here only means the
caller stops waiting. The wrapped work keeps running in the background and may
still complete or leave partial side effects; callers treat ``TimedOut`` as an
unknown outcome, never as a rollback.
"""

import asyncio
from typing import Any, Awaitable, TypeVar

from loguru import logger

from wagate.errors import GatewayError, OperationFailed, TimedOut

T = TypeVar("T")

# Abandoned operations stay referenced until they settle so the loop does not
# garbage-collect them mid-flight.
_abandoned: set[asyncio.Future] = set()


def _settle_abandoned(name: str, fut: asyncio.Future) -> None:
    _abandoned.discard(fut)
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.debug(f"Guard: abandoned {name} finished late with error: {exc!r}")
    else:
        logger.debug(f"Guard: abandoned {name} finished late")


def abandoned_count() -> int:
    return len(_abandoned)


async def guard(operation: Awaitable[T], budget: float, name: str = "operation") -> T:
    """Await ``operation`` for at most ``budget`` seconds.

    Raises ``TimedOut`` when the deadline passes, ``OperationFailed`` when the
    operation raises something that is not already a ``GatewayError``.
    """
    fut = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({fut}, timeout=budget)
    except asyncio.CancelledError:
        fut.cancel()
        raise

    if not done:
        _abandoned.add(fut)
        fut.add_done_callback(lambda f: _settle_abandoned(name, f))
        logger.warning(f"Guard: {name} exceeded {budget:g}s budget, abandoning")
        raise TimedOut(name, budget)

    try:
        return fut.result()
    except GatewayError:
        raise
    except asyncio.CancelledError as e:
        raise OperationFailed(f"{name} was cancelled") from e
    except Exception as e:
        raise OperationFailed(f"{name} failed", details=str(e)) from e


async def guard_quietly(operation: Awaitable[Any], budget: float, name: str = "operation") -> bool:
    """Best-effort variant for teardown paths: log failures, never raise."""
    try:
        await guard(operation, budget, name)
        return True
    except GatewayError as e:
        logger.warning(f"Guard: best-effort {name} failed: {e.message}")
        return False
