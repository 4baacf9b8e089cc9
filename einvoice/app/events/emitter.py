from __future__ import annotations

from typing import Protocol

from einvoice.app.events.models import SubmissionEvent


class SubmissionEventEmitter(Protocol):
    """
    Interface for broadcasting submission progress.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not fail the batch)
    - observational only
    """

    async def emit(self, event: SubmissionEvent) -> None:
        ...


class NullEventEmitter:
    """No-op emitter used when the caller does not observe progress."""

    async def emit(self, event: SubmissionEvent) -> None:
        return
