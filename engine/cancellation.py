from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from engine.completion_gateway import CompletionError

T = TypeVar("T")


class OperationCancelled(CompletionError):
    pass


class OperationTimeout(CompletionError):
    pass


class CancellationToken:
    """Deadline and cancel signal shared by every outbound call of one run."""

    def __init__(self, default_timeout: Optional[float] = None) -> None:
        self.default_timeout = default_timeout
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")

    async def run(self, awaitable: Awaitable[T], timeout: Optional[float] = None, label: str = "call") -> T:
        limit = timeout if timeout is not None else self.default_timeout
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            raise OperationCancelled(f"{label} cancelled before start")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        if self._event.is_set():
            raise OperationCancelled(f"{label} cancelled")
        raise OperationTimeout(f"{label} exceeded {limit}s")
