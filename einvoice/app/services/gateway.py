"""
Async client for the document intake service.

HARD GUARANTEES:
- Every call except issue_token carries a bearer token obtained from
  CredentialManager immediately before the request
- Every failure leaves this module as a typed GatewayError:
    TransportError          connection failure, no response
    AuthError               token issuance failed
    RemoteRejection         non-2xx response (remote error body attached)
    MalformedResponseError  2xx response whose body cannot be parsed
- No call is retried here; retry policy belongs to the caller
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from einvoice.app.core.config import Settings
from einvoice.app.core.errors import (
    AuthError,
    MalformedResponseError,
    RemoteRejection,
    TransportError,
)
from einvoice.app.schemas.submission import Document
from einvoice.app.schemas.wire import (
    DocumentDetails,
    RemoteErrorBody,
    SubmissionReceipt,
    SubmissionStatus,
    TokenGrant,
)
from einvoice.app.services.credentials import CredentialManager

logger = logging.getLogger("einvoice.gateway")

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_remote_error(response: httpx.Response) -> RemoteErrorBody:
    """
    Best-effort parse of a remote error body.

    The intake service answers with at least three shapes:
    - {"error": {"code", "message", "details"}}   API errors
    - {"error": "invalid_client", "error_description": ...}   OAuth2
    - {"title": ..., "detail": ...}   RFC 7807 problem details
    """
    try:
        body = response.json()
    except ValueError:
        return RemoteErrorBody(message=response.text or None)

    if not isinstance(body, dict):
        return RemoteErrorBody(message=str(body))

    error = body.get("error")
    if isinstance(error, dict):
        try:
            return RemoteErrorBody.model_validate(error)
        except ValidationError:
            return RemoteErrorBody(message=str(error))

    if isinstance(error, str):
        return RemoteErrorBody(
            code=error,
            message=body.get("error_description") or error,
        )

    return RemoteErrorBody(
        code=body.get("code") or body.get("title"),
        message=body.get("message") or body.get("detail") or body.get("title"),
    )


class SubmissionGateway:
    """
    Point-to-point request/response calls to the intake service.

    The gateway is also the TokenIssuer its CredentialManager renews
    through; use from_settings() to get both wired together.
    """

    SUBMISSIONS_PATH = "/api/v1.0/documentsubmissions"
    DOCUMENTS_PATH = "/api/v1.0/documents"

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings: Settings,
        credentials: Optional[CredentialManager] = None,
    ) -> None:
        self.client = http_client
        self.settings = settings
        self.credentials = credentials

        self.base_url = settings.api_root
        self.token_url = settings.token_url
        self._timeout = settings.request_timeout_seconds

    # ------------------------------------------------------------------
    # Composition root helper
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
        **credential_options: Any,
    ) -> "SubmissionGateway":
        gateway = cls(http_client=http_client, settings=settings)
        gateway.credentials = CredentialManager(
            issuer=gateway,
            refresh_threshold_seconds=settings.token_refresh_threshold_seconds,
            **credential_options,
        )
        return gateway

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def issue_token(self) -> TokenGrant:
        """OAuth2 client-credentials exchange against /connect/token."""
        form = {
            "grant_type": "client_credentials",
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret.get_secret_value(),
            "scope": self.settings.token_scope,
        }

        try:
            response = await self.client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.RequestError as exc:
            logger.error(
                "token_request_unreachable",
                extra={
                    "token_url": self.token_url,
                    "error_type": type(exc).__name__,
                },
            )
            raise AuthError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            error = parse_remote_error(response)
            logger.error(
                "token_request_rejected",
                extra={
                    "token_url": self.token_url,
                    "status_code": response.status_code,
                    "error_code": error.code,
                },
            )
            raise AuthError(
                f"Token request rejected: {error.message or 'Unknown error'}",
                status_code=response.status_code,
                code=error.code,
                body=error.model_dump(exclude_none=True),
            )

        try:
            return TokenGrant.model_validate_json(response.content)
        except ValidationError as exc:
            raise AuthError(
                "Token response could not be parsed",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    # ------------------------------------------------------------------
    # Submission endpoints
    # ------------------------------------------------------------------

    async def submit_batch(
        self, documents: Sequence[Document]
    ) -> SubmissionReceipt:
        """
        Submit documents in one call.

        The response splits documents into accepted-for-processing and
        rejected-immediately. No polling happens here.
        """
        if not documents:
            raise ValueError("submit_batch requires at least one document")

        response = await self._request(
            "POST",
            self.SUBMISSIONS_PATH,
            json={"documents": [d.to_wire() for d in documents]},
        )
        receipt = self._parse(response, SubmissionReceipt)

        logger.info(
            "batch_submitted",
            extra={
                "submission_uid": receipt.submission_uid,
                "accepted": len(receipt.accepted_documents),
                "rejected": len(receipt.rejected_documents),
            },
        )
        return receipt

    async def get_status(self, submission_uid: str) -> SubmissionStatus:
        response = await self._request(
            "GET", f"{self.SUBMISSIONS_PATH}/{submission_uid}"
        )
        return self._parse(response, SubmissionStatus)

    async def get_document_details(self, document_uuid: str) -> DocumentDetails:
        response = await self._request(
            "GET", f"{self.DOCUMENTS_PATH}/{document_uuid}/details"
        )
        return self._parse(response, DocumentDetails)

    async def cancel_document(self, document_uuid: str, reason: str) -> None:
        await self._request(
            "PUT",
            f"{self.DOCUMENTS_PATH}/state/{document_uuid}/state",
            json={"status": "cancelled", "reason": reason},
        )
        logger.info("document_cancelled", extra={"document_uuid": document_uuid})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _auth_headers(self) -> Dict[str, str]:
        if self.credentials is None:
            raise RuntimeError("SubmissionGateway has no CredentialManager")

        token = await self.credentials.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        headers = await self._auth_headers()

        try:
            response = await self.client.request(
                method,
                url,
                headers=headers,
                json=json,
                timeout=self._timeout,
            )
        except httpx.RequestError as exc:
            logger.error(
                "intake_request_unreachable",
                extra={
                    "method": method,
                    "path": path,
                    "error_type": type(exc).__name__,
                },
            )
            raise TransportError(
                f"{method} {path} failed: {exc}"
            ) from exc

        if response.is_success:
            return response

        if response.status_code == 401 and self.credentials is not None:
            self.credentials.invalidate()

        error = parse_remote_error(response)
        logger.error(
            "intake_request_rejected",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "error_code": error.code,
                "response_body": response.text,
            },
        )
        raise RemoteRejection(
            error.message
            or f"{method} {path} returned {response.status_code}",
            status_code=response.status_code,
            code=error.code,
            body=error.model_dump(exclude_none=True),
        )

    @staticmethod
    def _parse(response: httpx.Response, model: Type[ModelT]) -> ModelT:
        try:
            return model.model_validate_json(response.content)
        except ValidationError as exc:
            raise MalformedResponseError(
                f"{model.__name__} response could not be parsed",
                status_code=response.status_code,
                body=response.text,
            ) from exc
