"""
Customer reference data used while encoding documents.

The lookup is an external collaborator. This module defines its
interface, a short-TTL cache in front of it, and an HTTP implementation
that reads the CRUD service.

The cache is safe for concurrent reads once populated. Two concurrent
misses for the same customer both fetch and both write; the writes are
idempotent so the race is tolerated rather than prevented.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import httpx
from pydantic import ValidationError

from einvoice.app.core.errors import MalformedResponseError, RemoteRejection, TransportError
from einvoice.app.schemas.invoice import CustomerRecord

logger = logging.getLogger("einvoice.reference_data")


class CustomerDirectory(Protocol):
    async def get_customer_data(
        self, customer_id: str
    ) -> Optional[CustomerRecord]:
        """Return the customer, or None if it does not exist."""
        ...


class CachedCustomerDirectory:
    """TTL cache in front of another directory. Misses are not cached."""

    def __init__(
        self,
        inner: CustomerDirectory,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, CustomerRecord]] = {}

    async def get_customer_data(
        self, customer_id: str
    ) -> Optional[CustomerRecord]:
        cached = self._entries.get(customer_id)
        if cached and (self._clock() - cached[0]) < self._ttl:
            return cached[1]

        record = await self._inner.get_customer_data(customer_id)
        if record is not None:
            self._entries[customer_id] = (self._clock(), record)
        return record

    def invalidate(self, customer_id: Optional[str] = None) -> None:
        if customer_id is None:
            self._entries.clear()
        else:
            self._entries.pop(customer_id, None)


class HttpCustomerDirectory:
    """Reads customers from the CRUD service: GET {base}/api/customers/{id}."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        base_url: str,
        timeout: float = 10.0,
    ) -> None:
        self._client = http_client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def get_customer_data(
        self, customer_id: str
    ) -> Optional[CustomerRecord]:
        url = f"{self._base_url}/api/customers/{customer_id}"

        try:
            response = await self._client.get(url, timeout=self._timeout)
        except httpx.RequestError as exc:
            logger.error(
                "customer_lookup_unreachable",
                extra={"customer_id": customer_id, "error_type": type(exc).__name__},
            )
            raise TransportError(
                f"Customer service unreachable: {exc}"
            ) from exc

        if response.status_code == 404:
            return None

        if response.is_error:
            raise RemoteRejection(
                f"Customer service returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            return CustomerRecord.model_validate_json(response.content)
        except ValidationError as exc:
            raise MalformedResponseError(
                f"Customer {customer_id} response is not a customer record",
                status_code=response.status_code,
                body=response.text,
            ) from exc
