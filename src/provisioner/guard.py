"""Precondition guard for destructive operations.

Some resources cannot be deleted while they are busy. A policy remediation
running with ``ReEvaluateCompliance`` discovery must be canceled first, and
the cancel itself is asynchronous. The guard checks the current state,
issues the corrective action once, and waits for it to settle.

Every remote call the guard makes is bounded by the caller's budget and
abandoned as soon as the cancel event is set.
"""

from __future__ import annotations

import asyncio
import logging

from .client import RemoteResourceClient, RemoteState
from .errors import (
    CallCanceledError,
    CallTimeoutError,
    CancelSubmitFailedError,
    CancelTimedOutError,
    CancelWaitFailedError,
    GuardCanceledError,
    GuardReadFailedError,
)
from .identity import ResourceIdentity
from .kinds import ResourceKind
from .poller import OperationPoller, PollError, PollErrorReason, Terminal, run_blocking

logger = logging.getLogger(__name__)


class PreconditionGuard:
    """Makes a resource safe to delete."""

    def __init__(self, client: RemoteResourceClient, poller: OperationPoller) -> None:
        self._client = client
        self._poller = poller

    async def ensure_deletable(
        self,
        identity: ResourceIdentity,
        kind: ResourceKind,
        *,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Check and, if needed, correct the state that blocks deletion.

        An absent resource needs no guarding. No cancel is sent once the
        cancel event is set.

        Raises:
            GuardReadFailedError: If the current state cannot be read in time.
            GuardCanceledError: If the caller cancels at any point.
            CancelSubmitFailedError: If the cancel action is rejected.
            CancelTimedOutError: If the cancel is not sent or does not settle in time.
            CancelWaitFailedError: If waiting for the cancel fails otherwise.
        """
        loop = asyncio.get_running_loop()
        expires_at = loop.time() + timeout

        def remaining() -> float:
            return max(0.0, expires_at - loop.time())

        try:
            state: RemoteState | None = await run_blocking(
                lambda: self._client.get(identity, api_version=kind.api_version),
                timeout=remaining(),
                cancel_event=cancel_event,
            )
        except CallCanceledError as e:
            raise GuardCanceledError(f"delete of {identity} canceled before reading it") from e
        except Exception as e:
            raise GuardReadFailedError(f"reading {identity} before delete: {e}") from e

        if state is None:
            logger.info(
                "Resource already absent, nothing to guard",
                extra={"resource_id": identity.id_string},
            )
            return

        if not kind.requires_cancel(state):
            return

        logger.info(
            "Cancelling before delete",
            extra={
                "resource_id": identity.id_string,
                "kind": kind.name,
                "phase": state.phase,
            },
        )
        try:
            await run_blocking(
                lambda: self._client.cancel(identity, api_version=kind.api_version),
                timeout=remaining(),
                cancel_event=cancel_event,
            )
        except CallCanceledError as e:
            raise GuardCanceledError(
                f"delete of {identity} canceled before the cancel action completed",
                last_phase=state.phase,
            ) from e
        except CallTimeoutError as e:
            raise CancelTimedOutError(
                f"cancel request for {identity} did not return within {timeout}s",
                last_phase=state.phase,
            ) from e
        except Exception as e:
            raise CancelSubmitFailedError(
                f"cancelling {identity}: {e}", last_phase=state.phase
            ) from e

        def refresh() -> str | None:
            current = self._client.get(identity, api_version=kind.api_version)
            if current is None:
                return None
            return current.phase

        result = await self._poller.poll(
            refresh,
            kind.cancellation_profile,
            timeout=remaining(),
            cancel_event=cancel_event,
        )

        match result:
            case Terminal():
                logger.info(
                    "Cancel settled",
                    extra={"resource_id": identity.id_string, "phase": result.phase},
                )
            case PollError(reason=PollErrorReason.NOT_FOUND):
                # Gone while cancelling; there is nothing left to block the delete
                logger.info(
                    "Resource disappeared while cancelling",
                    extra={"resource_id": identity.id_string},
                )
            case PollError(reason=PollErrorReason.CANCELED):
                raise GuardCanceledError(
                    f"delete of {identity} canceled while waiting for the cancel to settle",
                    last_phase=result.last_phase or state.phase,
                )
            case PollError(reason=PollErrorReason.TIMEOUT):
                raise CancelTimedOutError(
                    f"waiting for {identity} to be canceled timed out after {timeout}s",
                    last_phase=result.last_phase or state.phase,
                ) from result.cause
            case PollError():
                raise CancelWaitFailedError(
                    f"waiting for {identity} to be canceled: {result.reason.value}",
                    last_phase=result.last_phase or state.phase,
                ) from result.cause
