"""Run one call against several shards and collect per-shard outcomes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

import anyio

from .backends import ShardBackend
from .errors import ShardUnavailable

logger = logging.getLogger("bankadmin.fanout")

T = TypeVar("T")


@dataclass(frozen=True)
class ShardOutcome(Generic[T]):
    """Result of one shard call; ``error`` is set when the shard was skipped."""

    shard_key: str
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def _attempt(
    backend: ShardBackend,
    call: Callable[[ShardBackend], Awaitable[T]],
    *,
    timeout: Optional[float],
    operation: str,
) -> ShardOutcome[T]:
    try:
        if timeout is None:
            value = await call(backend)
        else:
            with anyio.fail_after(timeout):
                value = await call(backend)
    except ShardUnavailable as exc:
        logger.error("Error during %s on shard %s (%s): %s", operation, backend.key, backend.name, exc.reason)
        return ShardOutcome(backend.key, error=exc.reason)
    except TimeoutError:
        logger.error("Shard %s (%s) timed out after %ss during %s", backend.key, backend.name, timeout, operation)
        return ShardOutcome(backend.key, error="timed out")
    return ShardOutcome(backend.key, value=value)


async def gather_shards(
    backends: Sequence[ShardBackend],
    call: Callable[[ShardBackend], Awaitable[T]],
    *,
    parallel: bool = True,
    timeout: Optional[float] = None,
    operation: str = "request",
) -> List[ShardOutcome[T]]:
    """Call every backend and return outcomes in the order of ``backends``.

    With ``parallel`` the calls run in one task group; each result lands in the
    slot of its backend, so completion order never leaks into the output.
    """

    slots: List[Optional[ShardOutcome[T]]] = [None] * len(backends)

    async def run(index: int, backend: ShardBackend) -> None:
        slots[index] = await _attempt(backend, call, timeout=timeout, operation=operation)

    if parallel and len(backends) > 1:
        async with anyio.create_task_group() as task_group:
            for index, backend in enumerate(backends):
                task_group.start_soon(run, index, backend)
    else:
        for index, backend in enumerate(backends):
            await run(index, backend)

    return [outcome for outcome in slots if outcome is not None]


__all__ = ["ShardOutcome", "gather_shards"]
