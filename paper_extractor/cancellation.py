"""Cooperative cancellation shared by the relay session and the pipeline stages.

A client disconnect cancels the session's token. Stages check the token
between reads and stop at the next check; nothing is interrupted mid-read.
"""

from __future__ import annotations

import asyncio


class OperationCancelled(Exception):
    """Raised by a stage that noticed its token was cancelled."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{what} cancelled")

    async def wait(self) -> None:
        await self._event.wait()
