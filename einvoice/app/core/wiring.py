"""
Composition root.

Builds the single CredentialManager, gateway, orchestrator and reconciler
for one process. Nothing in the pipeline is a module-level singleton;
the FastAPI lifespan owns what this returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from einvoice.app.coordinator.orchestrator import BatchOrchestrator
from einvoice.app.coordinator.reconciliation import DocumentReconciler
from einvoice.app.core.config import Settings
from einvoice.app.services.codec import DocumentCodec
from einvoice.app.services.credentials import CredentialManager
from einvoice.app.services.gateway import SubmissionGateway
from einvoice.app.services.reference_data import (
    CachedCustomerDirectory,
    CustomerDirectory,
    HttpCustomerDirectory,
)

logger = logging.getLogger("einvoice.wiring")


@dataclass
class SubmissionServices:
    settings: Settings
    http_client: httpx.AsyncClient
    gateway: SubmissionGateway
    credentials: CredentialManager
    orchestrator: BatchOrchestrator
    reconciler: DocumentReconciler

    async def aclose(self) -> None:
        await self.credentials.aclose()


def build_services(
    settings: Settings,
    http_client: httpx.AsyncClient,
    *,
    customers: Optional[CustomerDirectory] = None,
    codec: Optional[DocumentCodec] = None,
) -> SubmissionServices:
    """
    Wire the pipeline from settings.

    `customers` defaults to the HTTP directory at customer_api_url behind
    a TTL cache. One of the two must be available.
    """
    gateway = SubmissionGateway.from_settings(
        settings,
        http_client,
        proactive_refresh=settings.token_proactive_refresh,
    )

    if customers is None:
        if settings.customer_api_url is None:
            raise ValueError(
                "customer_api_url must be configured when no customer "
                "directory is supplied"
            )
        customers = CachedCustomerDirectory(
            HttpCustomerDirectory(
                http_client=http_client,
                base_url=str(settings.customer_api_url),
                timeout=settings.request_timeout_seconds,
            ),
            ttl_seconds=settings.customer_cache_ttl_seconds,
        )

    orchestrator = BatchOrchestrator.from_settings(
        settings,
        gateway=gateway,
        customers=customers,
        codec=codec,
    )
    reconciler = DocumentReconciler(
        gateway=gateway,
        concurrency=settings.encode_concurrency,
    )

    logger.info(
        "submission_services_built",
        extra={
            "api_root": settings.api_root,
            "token_url": settings.token_url,
            "polling_max_attempts": settings.polling_max_attempts,
        },
    )

    return SubmissionServices(
        settings=settings,
        http_client=http_client,
        gateway=gateway,
        credentials=gateway.credentials,
        orchestrator=orchestrator,
        reconciler=reconciler,
    )
