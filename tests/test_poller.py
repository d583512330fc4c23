"""Tests for the generic operation poller."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Iterator

import pytest
from azure.core.exceptions import HttpResponseError, ServiceRequestError
from remote_mock import ScriptedStatus

from provisioner.errors import CallCanceledError, CallTimeoutError, TransientRemoteError
from provisioner.phases import (
    ARM_OPERATION,
    REMEDIATION_CANCELLATION,
    RESOURCE_DELETION,
)
from provisioner.poller import (
    OperationPoller,
    PollError,
    PollErrorReason,
    StillPending,
    Terminal,
    run_blocking,
)

FAST = 0.01


@pytest.fixture
def poller() -> OperationPoller:
    return OperationPoller(min_interval=FAST, max_interval=0.02)


@pytest.fixture
def gate() -> Iterator[threading.Event]:
    """Blocks hung status queries until the test ends."""
    event = threading.Event()
    yield event
    event.set()


def hung_query(gate: threading.Event, calls: list[int]):
    def refresh() -> str | None:
        calls.append(1)
        gate.wait(timeout=5)
        return "Succeeded"

    return refresh


class TestClassify:
    """Tests for single-observation classification."""

    def test_pending_phase(self) -> None:
        result = OperationPoller.classify("Cancelling", REMEDIATION_CANCELLATION)
        assert result == StillPending(phase="Cancelling")

    def test_terminal_phase(self) -> None:
        result = OperationPoller.classify("Canceled", REMEDIATION_CANCELLATION)
        assert result == Terminal(phase="Canceled")

    def test_unlisted_phase_is_protocol_violation(self) -> None:
        result = OperationPoller.classify("Evaluating", REMEDIATION_CANCELLATION)
        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.UNKNOWN_PHASE
        assert result.last_phase == "Evaluating"

    def test_absent_when_profile_expects_it(self) -> None:
        assert OperationPoller.classify(None, RESOURCE_DELETION) == Terminal(phase="Absent")

    def test_absent_when_profile_does_not_expect_it(self) -> None:
        result = OperationPoller.classify(None, ARM_OPERATION)
        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.NOT_FOUND


class TestPollTermination:
    """Terminal phases end the poll exactly once."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("phases", "expected"),
        [
            (["Succeeded"], "Succeeded"),
            (["Accepted", "InProgress", "Succeeded"], "Succeeded"),
            (["InProgress", "Running", "Failed"], "Failed"),
            (["Accepted", "Canceled"], "Canceled"),
        ],
    )
    async def test_returns_first_terminal_phase(
        self, poller: OperationPoller, phases: list[str], expected: str
    ) -> None:
        """Test that the first terminal phase is returned and querying stops."""
        # Anything after the terminal phase must never be read
        status = ScriptedStatus([*phases, "Bogus"])

        result = await poller.poll(status, ARM_OPERATION, timeout=5)

        assert isinstance(result, Terminal)
        assert result.phase == expected
        assert result.attempts == len(phases)
        assert status.calls == len(phases)

    @pytest.mark.asyncio
    async def test_cancellation_profile(self, poller: OperationPoller) -> None:
        status = ScriptedStatus(["Cancelling", "Cancelling", "Canceled"])

        result = await poller.poll(status, REMEDIATION_CANCELLATION, timeout=5)

        assert result == Terminal(phase="Canceled", attempts=3)

    @pytest.mark.asyncio
    async def test_poll_to_absence(self, poller: OperationPoller) -> None:
        status = ScriptedStatus(["Deleting", "Deleting", None])

        result = await poller.poll(status, RESOURCE_DELETION, timeout=5)

        assert result == Terminal(phase="Absent", attempts=3)


class TestPollErrors:
    """Tests for poll error outcomes."""

    @pytest.mark.asyncio
    async def test_unknown_phase_stops_querying(self, poller: OperationPoller) -> None:
        """Test that an unlisted phase ends the poll without further queries."""
        status = ScriptedStatus(["Cancelling", "Mystery", "Canceled"])

        result = await poller.poll(status, REMEDIATION_CANCELLATION, timeout=5)

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.UNKNOWN_PHASE
        assert result.last_phase == "Mystery"
        assert status.calls == 2

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, poller: OperationPoller) -> None:
        """Test that transient query failures do not end the poll."""
        throttled = HttpResponseError(message="throttled", response=None)
        throttled.status_code = 429
        status = ScriptedStatus(
            [
                TransientRemoteError("connection reset"),
                ServiceRequestError("dns failure"),
                "InProgress",
                throttled,
                "Succeeded",
            ]
        )

        result = await poller.poll(status, ARM_OPERATION, timeout=5)

        assert result == Terminal(phase="Succeeded", attempts=5)

    @pytest.mark.asyncio
    async def test_non_transient_failure_is_fatal(self, poller: OperationPoller) -> None:
        error = HttpResponseError(message="forbidden", response=None)
        error.status_code = 403
        status = ScriptedStatus(["InProgress", error, "Succeeded"])

        result = await poller.poll(status, ARM_OPERATION, timeout=5)

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.REMOTE
        assert result.cause is error
        assert result.last_phase == "InProgress"
        assert status.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_not_before_deadline(self, poller: OperationPoller) -> None:
        """Test that a never-terminal operation times out at, not before, T."""
        status = ScriptedStatus(["InProgress"])
        timeout = 0.2

        started = time.monotonic()
        result = await poller.poll(status, ARM_OPERATION, timeout=timeout)
        elapsed = time.monotonic() - started

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.TIMEOUT
        assert result.last_phase == "InProgress"
        # Small tolerance for event loop clock resolution
        assert elapsed >= timeout - 0.005
        assert elapsed < timeout + 0.5

    @pytest.mark.asyncio
    async def test_timeout_keeps_last_transient_error(self, poller: OperationPoller) -> None:
        error = TransientRemoteError("service unavailable")
        status = ScriptedStatus([error])

        result = await poller.poll(status, ARM_OPERATION, timeout=0.05)

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.TIMEOUT
        assert result.cause is error

    @pytest.mark.asyncio
    async def test_hung_query_abandoned_at_deadline(
        self, poller: OperationPoller, gate: threading.Event
    ) -> None:
        """Test that a query that never returns does not hold the poll past T."""
        calls: list[int] = []

        started = time.monotonic()
        result = await poller.poll(hung_query(gate, calls), ARM_OPERATION, timeout=0.1)
        elapsed = time.monotonic() - started

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.TIMEOUT
        assert calls == [1]
        assert elapsed < 1

    @pytest.mark.asyncio
    async def test_not_found_tolerance(self, poller: OperationPoller) -> None:
        """Test that a few absent reads are tolerated before giving up."""
        status = ScriptedStatus([None, None, "Succeeded"])

        result = await poller.poll(status, ARM_OPERATION, timeout=5, not_found_checks=2)

        assert result == Terminal(phase="Succeeded", attempts=3)

    @pytest.mark.asyncio
    async def test_not_found_exhausted(self, poller: OperationPoller) -> None:
        status = ScriptedStatus([None])

        result = await poller.poll(status, ARM_OPERATION, timeout=5, not_found_checks=1)

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.NOT_FOUND
        assert status.calls == 2


class TestPollCancellation:
    """Tests for caller-initiated cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_during_sleep_is_prompt(self) -> None:
        """Test that cancel does not wait for the next interval boundary."""
        poller = OperationPoller(min_interval=30, max_interval=30)
        status = ScriptedStatus(["InProgress"])
        cancel_event = asyncio.Event()

        asyncio.get_running_loop().call_later(0.05, cancel_event.set)
        started = time.monotonic()
        result = await poller.poll(
            status, ARM_OPERATION, timeout=60, cancel_event=cancel_event
        )

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.CANCELED
        assert result.last_phase == "InProgress"
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_cancel_during_query_is_prompt(self, gate: threading.Event) -> None:
        """Test that cancel abandons a status query that is still running."""
        poller = OperationPoller(min_interval=FAST)
        cancel_event = asyncio.Event()
        calls: list[int] = []

        asyncio.get_running_loop().call_later(0.05, cancel_event.set)
        started = time.monotonic()
        result = await poller.poll(
            hung_query(gate, calls), ARM_OPERATION, timeout=60, cancel_event=cancel_event
        )

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.CANCELED
        assert calls == [1]
        assert time.monotonic() - started < 1

    @pytest.mark.asyncio
    async def test_already_canceled(self, poller: OperationPoller) -> None:
        status = ScriptedStatus(["Succeeded"])
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await poller.poll(status, ARM_OPERATION, timeout=5, cancel_event=cancel_event)

        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.CANCELED
        assert status.calls == 0


class TestPollerCheck:
    """Tests for single-attempt checks."""

    @pytest.mark.asyncio
    async def test_pending(self, poller: OperationPoller) -> None:
        result = await poller.check(ScriptedStatus(["Running"]), ARM_OPERATION)
        assert result == StillPending(phase="Running")

    @pytest.mark.asyncio
    async def test_transient_error(self, poller: OperationPoller) -> None:
        result = await poller.check(
            ScriptedStatus([TransientRemoteError("flaky")]), ARM_OPERATION
        )
        assert isinstance(result, PollError)
        assert result.reason == PollErrorReason.TRANSIENT

    def test_invalid_interval_rejected(self) -> None:
        with pytest.raises(ValueError):
            OperationPoller(min_interval=0)


class TestRunBlocking:
    """Tests for bounded blocking calls."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        assert await run_blocking(lambda: "done", timeout=1) == "done"

    @pytest.mark.asyncio
    async def test_errors_propagate(self) -> None:
        def fail() -> None:
            raise TransientRemoteError("flaky")

        with pytest.raises(TransientRemoteError):
            await run_blocking(fail, timeout=1)

    @pytest.mark.asyncio
    async def test_no_budget_left(self) -> None:
        calls: list[int] = []

        with pytest.raises(CallTimeoutError):
            await run_blocking(lambda: calls.append(1), timeout=0)

        assert calls == []

    @pytest.mark.asyncio
    async def test_canceled_before_call(self) -> None:
        cancel_event = asyncio.Event()
        cancel_event.set()
        calls: list[int] = []

        with pytest.raises(CallCanceledError):
            await run_blocking(lambda: calls.append(1), timeout=1, cancel_event=cancel_event)

        assert calls == []

    @pytest.mark.asyncio
    async def test_hung_call_times_out(self, gate: threading.Event) -> None:
        calls: list[int] = []

        with pytest.raises(CallTimeoutError):
            await run_blocking(hung_query(gate, calls), timeout=0.05)
