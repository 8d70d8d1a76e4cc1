"""Server-sent event session between one browser client and one interpretation.

Every frame, data or heartbeat, goes through a single queue and is yielded
whole, so a heartbeat can never land in the middle of a data frame.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .cancellation import CancellationToken
from .models import error_event

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

# Workers are not cancelled on disconnect; hold references until they finish.
_running_workers: set[asyncio.Task] = set()


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class RelaySession:
    def __init__(self, heartbeat_interval: float = 30.0):
        self.heartbeat_interval = heartbeat_interval
        self.token = CancellationToken()
        self.closed = False
        self._finished = False
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._close_callbacks: list[Callable[[], None]] = []
        self._heartbeat: Optional[asyncio.Task] = None

    def send(self, payload: dict) -> bool:
        """Queue one data frame. Returns False once the session is over."""
        if self.closed or self._finished:
            return False
        self._queue.put_nowait(format_sse(payload))
        return True

    def finish(self) -> None:
        """No more frames will be sent; the stream ends after the queued ones."""
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(None)

    def on_close(self, callback: Callable[[], None]) -> None:
        if self.closed:
            callback()
        else:
            self._close_callbacks.append(callback)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.token.cancel()
        if self._heartbeat is not None:
            self._heartbeat.cancel()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self._finished:
                self._queue.put_nowait(HEARTBEAT_FRAME)

    def _worker_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Interpretation worker crashed", exc_info=task.exception())
            self.send(error_event("Internal server error"))
        self.finish()

    async def stream(self, worker: Callable[["RelaySession"], Awaitable[object]]) -> AsyncIterator[str]:
        """Run ``worker`` against this session and yield its frames until it finishes."""
        task = asyncio.create_task(worker(self))
        _running_workers.add(task)
        task.add_done_callback(_running_workers.discard)
        task.add_done_callback(self._worker_done)
        self._heartbeat = asyncio.create_task(self._beat())

        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if not self._finished:
                logger.info("Client disconnected")
            self.close()
