"""
Per-batch event channel backing the streaming submission endpoint.

The orchestrator writes into it from a background task; one HTTP
response reads from it. The channel closes itself when the batch emits
its terminal event, which ends the reader's iteration.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from einvoice.app.events.models import SubmissionEvent

logger = logging.getLogger("einvoice.events")

_END = None


class BatchEventChannel:
    def __init__(self, maxsize: int = 0) -> None:
        # maxsize bounds progress events only; terminal events always fit
        self._limit = maxsize
        self._pending: asyncio.Queue[Optional[SubmissionEvent]] = asyncio.Queue()
        self._finished = False
        self.dropped = 0

    @property
    def finished(self) -> bool:
        return self._finished

    async def emit(self, event: SubmissionEvent) -> None:
        if self._finished:
            self.dropped += 1
            logger.debug(
                "event_after_close_dropped",
                extra={"batch_id": event.batch_id, "event_type": event.event_type.value},
            )
            return

        if not event.is_terminal and self._backlogged():
            # Slow reader; progress events are observational only
            self.dropped += 1
            logger.warning(
                "event_queue_full",
                extra={"batch_id": event.batch_id, "event_type": event.event_type.value},
            )
            return

        self._pending.put_nowait(event)

        if event.is_terminal:
            await self.close()

    async def close(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._pending.put_nowait(_END)

    def _backlogged(self) -> bool:
        return 0 < self._limit <= self._pending.qsize()

    async def stream(self) -> AsyncIterator[SubmissionEvent]:
        """Yield events in emission order until the batch ends."""
        while (event := await self._pending.get()) is not _END:
            yield event

    def drain(self) -> List[SubmissionEvent]:
        """Everything queued so far, without waiting."""
        drained: List[SubmissionEvent] = []
        while not self._pending.empty():
            event = self._pending.get_nowait()
            if event is not _END:
                drained.append(event)
        return drained
