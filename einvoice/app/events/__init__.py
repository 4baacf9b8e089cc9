from .models import SubmissionEvent, SubmissionEventType
from .emitter import SubmissionEventEmitter, NullEventEmitter
from .memory_emitter import BatchEventChannel

__all__ = [
    "SubmissionEvent",
    "SubmissionEventType",
    "SubmissionEventEmitter",
    "NullEventEmitter",
    "BatchEventChannel",
]
