"""Time source shared by the rate-limit stores and middleware."""

from __future__ import annotations

import time


class Clock:
    """Wall-clock and monotonic time.

    Expiry arithmetic uses ``monotonic()``; ``time()`` is only used to render
    absolute reset instants for clients. Tests substitute a manual clock.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()


SYSTEM_CLOCK = Clock()
