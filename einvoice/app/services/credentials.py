"""
Bearer credential lifecycle for the intake service.

CredentialManager is the only writer of the live Credential. Consumers
receive the token value through get_token() and never the Credential
itself.

Renewal happens two ways:
- lazily, when a caller finds the credential inside the refresh window
- proactively, from a one-shot timer armed after every successful renewal

Both paths share one in-flight renewal task, so concurrent callers that
observe expiry at the same moment trigger exactly one token request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

from einvoice.app.core.errors import AuthError
from einvoice.app.schemas.submission import Credential, TokenProbe
from einvoice.app.schemas.wire import TokenGrant

logger = logging.getLogger("einvoice.credentials")


class TokenIssuer(Protocol):
    token_url: str

    async def issue_token(self) -> TokenGrant:
        ...


class CredentialManager:
    """
    Owns the single shared bearer credential.

    Instances are constructed by the composition root and passed by
    reference; there is no module-level credential.
    """

    def __init__(
        self,
        *,
        issuer: TokenIssuer,
        refresh_threshold_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        proactive_refresh: bool = True,
    ) -> None:
        self._issuer = issuer
        self._threshold = refresh_threshold_seconds
        self._clock = clock
        self._proactive = proactive_refresh

        self._credential: Optional[Credential] = None
        self._last_grant: Optional[TokenGrant] = None
        self._inflight: Optional[asyncio.Task[Credential]] = None
        self._timer: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_token(self) -> str:
        """
        Return a token that is outside the refresh window.

        Blocks on a renewal when the live credential is missing or within
        refresh_threshold_seconds of expiry.

        Raises:
            AuthError: the renewal failed.
        """
        credential = self._credential
        if credential is None or credential.needs_renewal(
            self._clock(), self._threshold
        ):
            credential = await self._renew()
        return credential.token

    async def probe(self) -> TokenProbe:
        """
        Force a renewal and describe the result.

        Used for connectivity diagnostics. The token value is not exposed.
        """
        credential = await self._renew()
        grant = self._last_grant
        return TokenProbe(
            token_type=grant.token_type if grant else "Bearer",
            expires_in=credential.ttl_seconds,
            endpoint=self._issuer.token_url,
        )

    def invalidate(self) -> None:
        """Drop the live credential. The next caller renews."""
        if self._credential is not None:
            logger.info("credential_invalidated")
        self._credential = None

    @property
    def expires_at(self) -> Optional[float]:
        return self._credential.expires_at if self._credential else None

    async def aclose(self) -> None:
        """Cancel the proactive timer and any renewal in flight."""
        for task in (self._timer, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, AuthError):
                    pass
        self._timer = None
        self._inflight = None

    # ------------------------------------------------------------------
    # Renewal (single-flight)
    # ------------------------------------------------------------------

    async def _renew(self) -> Credential:
        if self._inflight is None:
            task = asyncio.ensure_future(self._issue())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task

        # Shield so that one cancelled waiter does not abort the renewal
        # the other waiters are sharing.
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: "asyncio.Task[Credential]") -> None:
        if self._inflight is task:
            self._inflight = None

    async def _issue(self) -> Credential:
        try:
            grant = await self._issuer.issue_token()
        except AuthError:
            logger.error("credential_renewal_failed")
            raise

        credential = Credential(
            token=grant.access_token,
            issued_at=self._clock(),
            ttl_seconds=grant.expires_in,
        )
        self._credential = credential
        self._last_grant = grant

        logger.info(
            "credential_renewed",
            extra={
                "ttl_seconds": grant.expires_in,
                "token_type": grant.token_type,
            },
        )

        self._arm_timer(grant.expires_in)
        return credential

    # ------------------------------------------------------------------
    # Proactive timer
    # ------------------------------------------------------------------

    def _arm_timer(self, ttl_seconds: float) -> None:
        if not self._proactive:
            return

        if self._timer is not None and not self._timer.done():
            self._timer.cancel()

        delay = ttl_seconds - self._threshold
        if delay <= 0:
            logger.warning(
                "credential_ttl_within_refresh_window",
                extra={
                    "ttl_seconds": ttl_seconds,
                    "refresh_threshold_seconds": self._threshold,
                },
            )
            self._timer = None
            return

        self._timer = asyncio.ensure_future(self._refresh_after(delay))

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._renew()
        except AuthError:
            # Next caller retries lazily.
            logger.warning("proactive_credential_renewal_failed")
