# herbionyx/services/qr/scan_sources.py
"""
Where scanned strings come from.

The orchestrator only needs something it can await for the raw payload
string: a camera bridge pushing a result, an uploaded image, or a string
that is already in hand.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol


class ScanSource(Protocol):
    async def read(self) -> str:
        ...


class StaticScanSource:
    """A payload string that is already known (pasted text, API request body)."""

    def __init__(self, raw: str, delay: float = 0.0):
        self.raw = raw
        self.delay = delay

    async def read(self) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.raw


class FutureScanSource:
    """
    Push-style source: a scanner callback calls deliver(raw) whenever the
    camera resolves a code; read() waits for it.
    """

    def __init__(self):
        self._future: Optional[asyncio.Future] = None
        self._cancelled = False

    def _get_future(self) -> asyncio.Future:
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            if self._cancelled:
                self._future.cancel()
        return self._future

    async def read(self) -> str:
        return await self._get_future()

    def deliver(self, raw: str) -> bool:
        fut = self._get_future()
        if fut.done():
            return False
        fut.set_result(raw)
        return True

    def fail(self, exc: BaseException) -> bool:
        fut = self._get_future()
        if fut.done():
            return False
        fut.set_exception(exc)
        return True

    def cancel(self) -> None:
        self._cancelled = True
        if self._future is not None and not self._future.done():
            self._future.cancel()
