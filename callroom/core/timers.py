"""One-shot timer scheduling shared by room cleanup and silence detection."""
from __future__ import annotations

import asyncio
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def loop_call_later(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule ``callback`` on the running event loop; ``asyncio.TimerHandle`` is cancellable."""

    return asyncio.get_running_loop().call_later(delay, callback)
