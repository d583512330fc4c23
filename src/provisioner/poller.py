"""Generic operation poller.

One poller serves every resource kind: callers pass a status query and a
PhaseProfile instead of duplicating a pending/target wait at each call site.

The wait loop is the engine's only suspension point. It never busy-spins,
it never mutates the remote resource, and it reports every outcome as a
PollResult instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TypeVar

from .config import (
    DEFAULT_MAX_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    Config,
)
from .errors import CallCanceledError, CallTimeoutError, is_transient
from .phases import OperationPhase, PhaseProfile

logger = logging.getLogger(__name__)

# Interval multiplier between consecutive pending observations
BACKOFF_FACTOR = 2.0

# A status query returns the current phase, or None if the resource is absent
StatusQuery = Callable[[], str | None]

T = TypeVar("T")


class PollErrorReason(str, Enum):
    """Why a poll did not end in a terminal phase."""

    TIMEOUT = "timeout"
    UNKNOWN_PHASE = "unknown_phase"
    CANCELED = "canceled"
    NOT_FOUND = "not_found"
    REMOTE = "remote"
    # Attempt-level only; poll() retries these until the deadline
    TRANSIENT = "transient"


@dataclass(frozen=True)
class StillPending:
    """The operation is in a pending phase."""

    phase: str


@dataclass(frozen=True)
class Terminal:
    """The operation reached a terminal phase."""

    phase: str
    attempts: int = 1


@dataclass(frozen=True)
class PollError:
    """The poll ended without a terminal phase."""

    reason: PollErrorReason
    last_phase: str | None = None
    cause: BaseException | None = None
    attempts: int = 0


PollResult = StillPending | Terminal | PollError


async def run_blocking(
    fn: Callable[[], T],
    *,
    timeout: float,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Run a blocking call in the default executor within a budget.

    The call is raced against the deadline and the cancel event. An executor
    thread cannot be interrupted, so an abandoned call runs to completion in
    the background and its result is discarded.

    Raises:
        CallCanceledError: If the cancel event is set before or during the call.
        CallTimeoutError: If no budget is left or the call outlives it.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise CallCanceledError("canceled before the call was made")
    if timeout <= 0:
        raise CallTimeoutError("no time left for the call")

    loop = asyncio.get_running_loop()
    call = loop.run_in_executor(None, fn)
    waiters: set[asyncio.Future[object]] = {call}

    cancel_waiter: asyncio.Future[object] | None = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if call in done:
        return call.result()

    call.cancel()
    if cancel_waiter is not None and cancel_waiter in done:
        raise CallCanceledError("canceled while the call was in flight")
    raise CallTimeoutError(f"call did not return within {timeout:.3f}s")


class OperationPoller:
    """Waits for remote operations to reach a terminal phase.

    The interval between queries starts at ``min_interval`` and doubles
    after each query up to ``max_interval``. An optional ``delay`` is
    applied before the first query.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_interval: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS,
        delay: float = 0.0,
    ) -> None:
        if min_interval <= 0:
            raise ValueError("min_interval must be positive")
        self._min_interval = min_interval
        self._max_interval = max(max_interval, min_interval)
        self._delay = delay

    @classmethod
    def from_config(cls, config: Config) -> OperationPoller:
        return cls(
            min_interval=config.poll_interval_seconds,
            max_interval=config.max_poll_interval_seconds,
        )

    @property
    def min_interval(self) -> float:
        return self._min_interval

    @staticmethod
    def classify(phase: str | None, profile: PhaseProfile) -> PollResult:
        """Map one observed phase onto the profile.

        None (resource absent) is the ABSENT phase. If the profile does not
        list ABSENT the result is a NOT_FOUND error, which poll() may
        tolerate a limited number of times.
        """
        observed = OperationPhase.ABSENT.value if phase is None else phase

        if profile.is_terminal(observed):
            return Terminal(phase=observed)
        if profile.is_pending(observed):
            return StillPending(phase=observed)
        if phase is None:
            return PollError(reason=PollErrorReason.NOT_FOUND)
        return PollError(reason=PollErrorReason.UNKNOWN_PHASE, last_phase=observed)

    async def check(self, refresh: StatusQuery, profile: PhaseProfile) -> PollResult:
        """Run exactly one status query and classify it."""
        loop = asyncio.get_running_loop()
        try:
            phase = await loop.run_in_executor(None, refresh)
        except Exception as e:
            if is_transient(e):
                return PollError(reason=PollErrorReason.TRANSIENT, cause=e, attempts=1)
            return PollError(reason=PollErrorReason.REMOTE, cause=e, attempts=1)

        result = self.classify(phase, profile)
        if isinstance(result, PollError):
            return replace(result, attempts=1)
        return result

    async def poll(
        self,
        refresh: StatusQuery,
        profile: PhaseProfile,
        *,
        timeout: float,
        min_interval: float | None = None,
        cancel_event: asyncio.Event | None = None,
        not_found_checks: int | None = None,
    ) -> PollResult:
        """Query status until a terminal phase, an error, or the deadline.

        Args:
            refresh: Synchronous status query, run in the default executor.
            profile: Closed pending/terminal phase sets.
            timeout: Overall budget in seconds.
            min_interval: Overrides the poller's minimum interval.
            cancel_event: When set, the poll ends promptly with CANCELED.
            not_found_checks: Overrides the profile's absent tolerance.

        Returns:
            Terminal, or PollError with reason TIMEOUT, UNKNOWN_PHASE,
            CANCELED, NOT_FOUND or REMOTE. Never StillPending.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = min_interval if min_interval is not None else self._min_interval
        max_interval = max(self._max_interval, interval)
        allowed_absent = (
            not_found_checks if not_found_checks is not None else profile.not_found_checks
        )

        attempts = 0
        transient_failures = 0
        absent_streak = 0
        last_phase: str | None = None
        last_error: BaseException | None = None

        def timed_out() -> PollError:
            logger.warning(
                "Poll timed out",
                extra={
                    "profile": profile.name,
                    "timeout_seconds": timeout,
                    "attempts": attempts,
                    "transient_failures": transient_failures,
                    "last_phase": last_phase,
                },
            )
            return PollError(
                reason=PollErrorReason.TIMEOUT,
                last_phase=last_phase,
                cause=last_error,
                attempts=attempts,
            )

        def canceled() -> PollError:
            logger.info(
                "Poll canceled",
                extra={"profile": profile.name, "attempts": attempts, "last_phase": last_phase},
            )
            return PollError(
                reason=PollErrorReason.CANCELED, last_phase=last_phase, attempts=attempts
            )

        if cancel_event is not None and cancel_event.is_set():
            return canceled()

        if self._delay > 0:
            if await self._wait(min(self._delay, timeout), cancel_event):
                return canceled()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return timed_out()

            attempts += 1
            try:
                phase = await run_blocking(refresh, timeout=remaining, cancel_event=cancel_event)
            except CallCanceledError:
                return canceled()
            except CallTimeoutError:
                return timed_out()
            except Exception as e:
                if not is_transient(e):
                    logger.error(
                        "Status query failed",
                        extra={"profile": profile.name, "error": str(e), "attempts": attempts},
                    )
                    return PollError(
                        reason=PollErrorReason.REMOTE,
                        last_phase=last_phase,
                        cause=e,
                        attempts=attempts,
                    )
                transient_failures += 1
                last_error = e
                logger.warning(
                    "Transient status query failure, retrying",
                    extra={
                        "profile": profile.name,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "transient_failures": transient_failures,
                    },
                )
            else:
                result = self.classify(phase, profile)
                match result:
                    case Terminal():
                        logger.info(
                            "Operation reached terminal phase",
                            extra={
                                "profile": profile.name,
                                "phase": result.phase,
                                "attempts": attempts,
                            },
                        )
                        return replace(result, attempts=attempts)
                    case StillPending():
                        last_phase = result.phase
                        absent_streak = 0
                        logger.debug(
                            "Operation still pending",
                            extra={"profile": profile.name, "phase": result.phase},
                        )
                    case PollError(reason=PollErrorReason.NOT_FOUND):
                        absent_streak += 1
                        if absent_streak > allowed_absent:
                            return PollError(
                                reason=PollErrorReason.NOT_FOUND,
                                last_phase=last_phase,
                                attempts=attempts,
                            )
                    case PollError():
                        logger.error(
                            "Unknown phase reported",
                            extra={"profile": profile.name, "phase": result.last_phase},
                        )
                        return replace(result, attempts=attempts)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return timed_out()
            if await self._wait(min(interval, remaining), cancel_event):
                return canceled()
            interval = min(interval * BACKOFF_FACTOR, max_interval)

    @staticmethod
    async def _wait(seconds: float, cancel_event: asyncio.Event | None) -> bool:
        """Sleep for ``seconds``. Returns True if canceled meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True
