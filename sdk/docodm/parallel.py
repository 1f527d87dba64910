"""
Fan-out / fan-in primitives.

This module provides the only synchronization primitive the ODM uses:
- after: "join after N completions" with first-error short-circuit
- fan_out: run coroutines concurrently and join them through ``after``
- Finder / parallel: run several prepared finders and collect named results

Invariants:
    - The continuation passed to ``after`` fires exactly once
    - The first error wins; later errors and successes are ignored
    - Sub-operations already started are neither cancelled nor rolled back

Example:
    >>> results = await parallel({
    ...     "users": User.prepare_find_all(),
    ...     "tasks": Task.prepare_find({"done": False}),
    ... })
    >>> results["users"]
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

Done = Callable[[Optional[BaseException]], None]

# Fan-out tasks are only referenced by the event loop; keep them alive here.
_pending: Set[asyncio.Task] = set()


def after(times: int, callback: Callable[[Optional[BaseException]], Any]) -> Done:
    """Create a completion counter.

    Args:
        times: Number of completions expected
        callback: Called once with ``None`` after ``times`` successful
            completions, or with the first error reported

    Returns:
        ``done(error=None)`` to be called once per completed sub-operation.
        When ``times`` is 0 the callback fires immediately and the returned
        function does nothing.
    """
    if times == 0:
        callback(None)
        return lambda error=None: None

    state = {"calls": times, "failed": False}

    def done(error: Optional[BaseException] = None) -> None:
        if state["failed"]:
            return
        if error is not None:
            state["failed"] = True
            callback(error)
            return
        state["calls"] -= 1
        if state["calls"] == 0:
            callback(None)

    return done


async def _report(awaitable: Awaitable[Any], done: Done) -> None:
    try:
        await awaitable
    except Exception as exc:
        done(exc)
    else:
        done(None)


async def fan_out(awaitables: List[Awaitable[Any]]) -> None:
    """Run ``awaitables`` concurrently and wait for all of them.

    Raises the first error any of them raises. Remaining work keeps running
    in the background and its outcome is discarded.
    """
    loop = asyncio.get_running_loop()
    finished: asyncio.Future = loop.create_future()

    def complete(error: Optional[BaseException]) -> None:
        if finished.done():
            return
        if error is not None:
            finished.set_exception(error)
        else:
            finished.set_result(None)

    done = after(len(awaitables), complete)
    for awaitable in awaitables:
        task = asyncio.ensure_future(_report(awaitable, done))
        _pending.add(task)
        task.add_done_callback(_pending.discard)

    await finished


@dataclass
class Finder:
    """A prepared lookup, runnable later by ``parallel``.

    Attributes:
        fn: Coroutine function of the model (``find``, ``find_one``, ...)
        query: Query, id, or ``None`` for ``find_all``
        fields: Optional projection
        options: Optional option bag
    """

    fn: Callable[..., Awaitable[Any]]
    query: Any = None
    fields: Optional[Dict[str, Any]] = None
    options: Optional[Dict[str, Any]] = None
    takes_query: bool = True

    def run(self) -> Awaitable[Any]:
        """Invoke the underlying finder."""
        if self.takes_query:
            return self.fn(self.query, self.fields, self.options)
        return self.fn(self.fields, self.options)


async def parallel(finders: Dict[str, Finder]) -> Dict[str, Any]:
    """Run named finders concurrently.

    Args:
        finders: Mapping of result name to prepared Finder

    Returns:
        Mapping of result name to finder result

    Raises:
        The first error raised by any finder
    """
    results: Dict[str, Any] = {}

    async def collect(name: str, finder: Finder) -> None:
        results[name] = await finder.run()

    await fan_out([collect(name, finder) for name, finder in finders.items()])
    logger.debug("Parallel finders completed", extra={"finders": list(finders)})
    return results
