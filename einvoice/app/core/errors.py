"""
Typed error taxonomy for the submission pipeline.

Per-document failures (LocalValidationError, a single remote rejection)
are converted into DocumentOutcome entries and never abort sibling
documents. Batch-global failures (AuthError, failure of the submit call
itself) propagate out of the orchestrator exactly once.
"""

from __future__ import annotations

from typing import Any, Optional


class SubmissionError(Exception):
    """Base class for every error raised by the submission pipeline."""


class LocalValidationError(SubmissionError):
    """
    An item is missing a required field or reference.

    Raised before any network call is made for the item.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class DocumentEncodingError(LocalValidationError):
    """The codec could not render an item into a wire document."""


# ----------------------------------------------------------------------
# Gateway errors
# ----------------------------------------------------------------------

class GatewayError(SubmissionError):
    """
    Normalized failure of a call to the intake service.

    Carries the HTTP status (None when no response was received) and the
    remote error body exactly as parsed.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.body = body


class TransportError(GatewayError):
    """The intake service could not be reached. Retryable by the caller."""


class RemoteRejection(GatewayError):
    """The intake service answered with a non-2xx status."""


class MalformedResponseError(GatewayError):
    """A nominally successful response whose body could not be parsed."""


class AuthError(GatewayError):
    """
    Token issuance failed.

    Fails the whole batch: no authenticated call can proceed without
    a credential.
    """


# ----------------------------------------------------------------------
# Polling errors
# ----------------------------------------------------------------------

class PollingTimeout(SubmissionError):
    """Attempt budget exhausted without ever observing a document summary."""

    def __init__(self, submission_uid: str, attempts: int) -> None:
        super().__init__(
            f"Polling submission {submission_uid} timed out after "
            f"{attempts} attempts"
        )
        self.submission_uid = submission_uid
        self.attempts = attempts


class SubmissionCancelled(SubmissionError):
    """The caller aborted a batch while it was waiting on the remote service."""

    def __init__(self, submission_uid: str) -> None:
        super().__init__(f"Polling submission {submission_uid} was cancelled")
        self.submission_uid = submission_uid
