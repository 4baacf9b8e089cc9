import asyncio
from typing import List, Optional

import pytest

from einvoice.app.core.errors import AuthError
from einvoice.app.schemas.wire import TokenGrant
from einvoice.app.services.credentials import CredentialManager

pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeIssuer:
    token_url = "https://intake.test/connect/token"

    def __init__(self, ttls: Optional[List[float]] = None) -> None:
        self.ttls = list(ttls or [3600])
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None

    async def issue_token(self) -> TokenGrant:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        ttl = self.ttls.pop(0) if len(self.ttls) > 1 else self.ttls[0]
        return TokenGrant(access_token=f"token-{self.calls}", expires_in=ttl)


def manager(issuer: FakeIssuer, clock: FakeClock, **kwargs) -> CredentialManager:
    kwargs.setdefault("proactive_refresh", False)
    return CredentialManager(
        issuer=issuer,
        refresh_threshold_seconds=300,
        clock=clock,
        **kwargs,
    )


async def test_token_reused_until_inside_refresh_window():
    issuer, clock = FakeIssuer(), FakeClock(0)
    credentials = manager(issuer, clock)

    assert await credentials.get_token() == "token-1"

    # 301 seconds of validity left: reused
    clock.now = 3600 - 301
    assert await credentials.get_token() == "token-1"
    assert issuer.calls == 1

    # 299 seconds left: renewed before use
    clock.now = 3600 - 299
    assert await credentials.get_token() == "token-2"
    assert issuer.calls == 2


async def test_concurrent_callers_share_one_renewal():
    issuer, clock = FakeIssuer(), FakeClock(0)
    issuer.gate = asyncio.Event()
    credentials = manager(issuer, clock)

    waiters = [asyncio.ensure_future(credentials.get_token()) for _ in range(10)]
    await asyncio.sleep(0)
    issuer.gate.set()
    tokens = await asyncio.gather(*waiters)

    assert issuer.calls == 1
    assert set(tokens) == {"token-1"}


async def test_renewal_failure_surfaces_auth_error_and_next_call_retries():
    issuer, clock = FakeIssuer(), FakeClock(0)
    issuer.fail_with = AuthError("Token request rejected", status_code=401)
    credentials = manager(issuer, clock)

    with pytest.raises(AuthError):
        await credentials.get_token()

    issuer.fail_with = None
    assert await credentials.get_token() == "token-2"
    assert issuer.calls == 2


async def test_invalidate_forces_renewal():
    issuer, clock = FakeIssuer(), FakeClock(0)
    credentials = manager(issuer, clock)

    await credentials.get_token()
    credentials.invalidate()

    assert credentials.expires_at is None
    assert await credentials.get_token() == "token-2"


async def test_ttl_inside_refresh_window_renews_every_call():
    issuer, clock = FakeIssuer([200]), FakeClock(0)
    credentials = manager(issuer, clock, proactive_refresh=True)

    await credentials.get_token()
    await credentials.get_token()

    assert issuer.calls == 2
    await credentials.aclose()


async def test_connectivity_check_forces_renewal_and_hides_token():
    issuer, clock = FakeIssuer(), FakeClock(100)
    credentials = manager(issuer, clock)

    await credentials.get_token()
    probe = await credentials.probe()

    assert issuer.calls == 2
    assert probe.endpoint == FakeIssuer.token_url
    assert probe.expires_in == 3600
    assert probe.token_type == "Bearer"
    assert "token-2" not in probe.model_dump_json()
    assert credentials.expires_at == 3700


async def test_proactive_timer_renews_before_expiry():
    # First credential is due for renewal 50ms after issue
    issuer = FakeIssuer([300.05, 3600])
    credentials = CredentialManager(
        issuer=issuer,
        refresh_threshold_seconds=300,
        proactive_refresh=True,
    )

    try:
        assert await credentials.get_token() == "token-1"
        await asyncio.sleep(0.3)

        assert issuer.calls == 2
        assert await credentials.get_token() == "token-2"
        assert issuer.calls == 2
    finally:
        await credentials.aclose()
