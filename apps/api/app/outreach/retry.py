from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar


T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, float, BaseException], None]


def is_overloaded(exc: BaseException) -> bool:
    """The generation API signals transient capacity problems with 503 / "overloaded"."""
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        return status_code == 503
    message = str(exc).lower()
    return "503" in message or "overloaded" in message


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_overloaded
    sleep: SleepFn = field(default=asyncio.sleep)

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay

    async def run(self, operation: Callable[[], Awaitable[T]], *, on_retry: RetryHook | None = None) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, delay, exc)
                await self.sleep(delay)
                attempt += 1
