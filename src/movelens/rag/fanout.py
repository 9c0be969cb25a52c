"""All-settled concurrent map.

Runs one coroutine per item, waits for all of them, and returns one Outcome
per item in input order. Counts are reduced from the outcomes after every
item has finished, so no counter is shared between tasks.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Outcome(Generic[T]):
    item: T
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_settled(
    items: Iterable[T], func: Callable[[T], Awaitable[R]]
) -> list[Outcome[T]]:
    """Apply *func* to every item concurrently and collect every result.

    One item failing never cancels the others. Cancellation of the caller
    is still propagated.
    """
    items = list(items)
    results = await asyncio.gather(*(func(item) for item in items), return_exceptions=True)
    outcomes: list[Outcome[T]] = []
    for item, result in zip(items, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            outcomes.append(Outcome(item=item, error=result))
        else:
            outcomes.append(Outcome(item=item, value=result))
    return outcomes


ProgressCallback = Callable[[int, int, str], Any]


async def notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a sync or async progress callback, if one was given."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
