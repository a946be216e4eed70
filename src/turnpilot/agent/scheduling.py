"""Timer and background-call seams for the single-threaded engine.

Every timer in the engine goes through a ``Scheduler`` (an asyncio event
loop satisfies it directly) and every blocking network call goes through
a ``BlockingCallRunner`` whose completion callback runs back on the
scheduler's thread.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, Protocol, TypeVar

T = TypeVar("T")
DoneCallback = Callable[["Future[Any] | asyncio.Future[Any]"], None]


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(
        self, delay: float, callback: Callable[..., object], *args: Any
    ) -> Cancellable: ...

    def time(self) -> float: ...


class BlockingCallRunner(Protocol):
    def submit(self, fn: Callable[[], T], on_done: DoneCallback) -> None: ...


class LoopExecutorRunner:
    """Runs blocking calls on the loop's default executor.

    ``asyncio.Future`` done-callbacks are scheduled on the event loop, so
    ``on_done`` never touches engine state from a worker thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    def submit(self, fn: Callable[[], T], on_done: DoneCallback) -> None:
        future = self.loop.run_in_executor(None, fn)
        future.add_done_callback(on_done)
