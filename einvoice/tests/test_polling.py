import asyncio
from typing import Callable, List, Optional, Union

import pytest

from einvoice.app.coordinator.polling import PollingPolicy, PollingStateMachine
from einvoice.app.core.errors import (
    AuthError,
    PollingTimeout,
    SubmissionCancelled,
    TransportError,
)
from einvoice.app.events import BatchEventChannel, SubmissionEventType
from einvoice.app.schemas.submission import OutcomeBasis, OverallStatus
from einvoice.app.schemas.wire import SubmissionStatus
from einvoice.tests.fixtures.intake import status_body

pytestmark = pytest.mark.anyio

Entry = Union[SubmissionStatus, Exception]


class ScriptedStatusSource:
    """Answers get_status from a script; the last entry repeats."""

    def __init__(self, script: List[Entry]) -> None:
        self.script = list(script)
        self.calls = 0
        self.on_call: Optional[Callable[[int], None]] = None

    async def get_status(self, submission_uid: str) -> SubmissionStatus:
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self.calls)
        entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(entry, Exception):
            raise entry
        return entry


def status(overall: str, documents: dict) -> SubmissionStatus:
    return SubmissionStatus.model_validate(status_body(overall, documents))


def policy(**overrides) -> PollingPolicy:
    values = dict(interval_seconds=0, initial_delay_seconds=0, max_attempts=10)
    values.update(overrides)
    return PollingPolicy(**values)


SUBMITTED = status("InProgress", {"A": "Submitted", "B": "Submitted"})


async def test_terminal_status_settles_with_remote_basis():
    source = ScriptedStatusSource(
        [
            status("InProgress", {}),
            SUBMITTED,
            status("Partial", {"A": "Valid", "B": "Invalid"}),
        ]
    )
    machine = PollingStateMachine(gateway=source, policy=policy())

    result = await machine.run("SUB-1")

    assert result.reported_status == OverallStatus.PARTIAL
    assert result.basis == OutcomeBasis.REMOTE
    assert result.attempts == 3
    assert result.confirmed


async def test_heuristic_accepts_after_ten_submitted_polls():
    source = ScriptedStatusSource([SUBMITTED])
    machine = PollingStateMachine(gateway=source, policy=policy())

    result = await machine.run("SUB-1")

    assert source.calls == 10
    assert result.attempts == 10
    assert result.basis == OutcomeBasis.HEURISTIC
    assert result.reported_status == OverallStatus.IN_PROGRESS
    assert not result.confirmed


async def test_heuristic_never_fires_before_min_attempt():
    source = ScriptedStatusSource([SUBMITTED] * 9 + [status("Valid", {"A": "Valid", "B": "Valid"})])
    machine = PollingStateMachine(gateway=source, policy=policy())

    result = await machine.run("SUB-1")

    assert result.basis == OutcomeBasis.REMOTE
    assert result.attempts == 10


async def test_heuristic_needs_consecutive_sub_status():
    mixed = status("InProgress", {"A": "Submitted", "B": "Valid"})
    source = ScriptedStatusSource([SUBMITTED] * 9 + [mixed])
    machine = PollingStateMachine(gateway=source, policy=policy())

    result = await machine.run("SUB-1")

    # Attempt 10 broke the streak; budget exhausted with a summary
    assert result.basis == OutcomeBasis.OPTIMISTIC
    assert result.attempts == 10
    assert result.status.document_summary[1].status == "Valid"


async def test_disabled_heuristic_degrades_to_last_summary():
    source = ScriptedStatusSource([SUBMITTED])
    machine = PollingStateMachine(
        gateway=source, policy=policy(heuristic_enabled=False, max_attempts=4)
    )

    result = await machine.run("SUB-1")

    assert result.basis == OutcomeBasis.OPTIMISTIC
    assert result.attempts == 4


async def test_timeout_without_any_summary():
    source = ScriptedStatusSource([status("InProgress", {})])
    machine = PollingStateMachine(gateway=source, policy=policy(max_attempts=3))

    with pytest.raises(PollingTimeout) as info:
        await machine.run("SUB-1")

    assert info.value.attempts == 3
    assert info.value.submission_uid == "SUB-1"


async def test_transport_errors_consume_attempts():
    source = ScriptedStatusSource(
        [
            TransportError("unreachable"),
            TransportError("unreachable"),
            status("Valid", {"A": "Valid"}),
        ]
    )
    machine = PollingStateMachine(gateway=source, policy=policy())

    result = await machine.run("SUB-1")

    assert result.reported_status == OverallStatus.VALID
    assert source.calls == 3


async def test_auth_error_is_not_retried():
    source = ScriptedStatusSource([AuthError("Token request rejected")])
    machine = PollingStateMachine(gateway=source, policy=policy())

    with pytest.raises(AuthError):
        await machine.run("SUB-1")

    assert source.calls == 1


async def test_cancel_interrupts_wait_between_polls():
    cancel = asyncio.Event()
    source = ScriptedStatusSource([SUBMITTED])
    source.on_call = lambda n: cancel.set()
    machine = PollingStateMachine(
        gateway=source, policy=policy(interval_seconds=30)
    )

    with pytest.raises(SubmissionCancelled):
        await asyncio.wait_for(machine.run("SUB-1", cancel=cancel), timeout=5)

    assert source.calls == 1


async def test_poll_events_are_emitted_in_order():
    emitter = BatchEventChannel()
    source = ScriptedStatusSource([SUBMITTED, status("Valid", {"A": "Valid", "B": "Valid"})])
    machine = PollingStateMachine(gateway=source, policy=policy())

    await machine.run("SUB-1", emitter=emitter, batch_id="batch-1")

    events = emitter.drain()
    assert [e.event_type for e in events] == [
        SubmissionEventType.POLL_ATTEMPTED,
        SubmissionEventType.POLL_ATTEMPTED,
        SubmissionEventType.POLL_SETTLED,
    ]
    assert events[-1].details["basis"] == "remote"
    assert all(e.batch_id == "batch-1" for e in events)
