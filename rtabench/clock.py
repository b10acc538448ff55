"""
Monotonic clock used by the race harness and observers.

All timing is expressed in integer-friendly milliseconds on a monotonic
base. Waiting goes through ``sleep`` and ``wait_for_event`` so tests can
swap in a simulated clock.
"""

import asyncio
import time


class MonotonicClock:
    """실제 시간 기반 시계"""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(ms, 0) / 1000.0)

    async def wait_for_event(self, event: asyncio.Event, timeout_ms: float) -> bool:
        """이벤트가 설정되면 True, timeout 시 False"""
        if event.is_set():
            return True
        if timeout_ms <= 0:
            return False
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout_ms / 1000.0)
            return True
        except asyncio.TimeoutError:
            return event.is_set()
