"""Reconciliation of declared resources against the remote control plane.

Each resource moves through a small state machine:

    Absent -> Creating -> Present -> Updating -> Present -> Deleting -> Absent

Creating, Updating and Deleting all wait on the operation poller before the
state advances. Present is the only state a read materializes.

The engine holds no locks. Calls for one identity must be serialized by the
caller; distinct identities can be reconciled concurrently. The only shared
structure is the active-operation registry, which enforces that at most one
mutation per identity is in flight. Identities compare without regard to
case, so two spellings of one resource ID share a slot.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .client import (
    ImmediateResult,
    MutationKind,
    OperationHandle,
    RemoteResourceClient,
    RemoteState,
)
from .config import Config
from .errors import (
    AlreadyExistsError,
    CallCanceledError,
    CallTimeoutError,
    GuardCanceledError,
    GuardError,
    IdentityChangedError,
    NotFoundError,
    OperationCanceledError,
    OperationFailedError,
    OperationInProgressError,
    OperationKind,
    PreconditionFailedError,
    ReconcileTimeoutError,
    RemoteRequestError,
    ResourceVanishedError,
    UnknownPhaseError,
)
from .guard import PreconditionGuard
from .identity import ResourceIdentity
from .kinds import DesiredState, ResourceKind
from .phases import OperationPhase, PhaseProfile
from .poller import (
    OperationPoller,
    PollError,
    PollErrorReason,
    PollResult,
    Terminal,
    run_blocking,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LifecycleState(str, Enum):
    """Reconciler-side state of a resource."""

    ABSENT = "Absent"
    CREATING = "Creating"
    PRESENT = "Present"
    UPDATING = "Updating"
    DELETING = "Deleting"


@dataclass(frozen=True)
class LifecycleEvent:
    """Emitted on every lifecycle state transition."""

    identity: ResourceIdentity
    operation: OperationKind
    state: LifecycleState
    phase: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


LifecycleListener = Callable[[LifecycleEvent], None]


class _Deadline:
    """One budget shared by every wait of a single reconciler call."""

    def __init__(self, seconds: float) -> None:
        self._loop = asyncio.get_running_loop()
        self._seconds = seconds
        self._expires_at = self._loop.time() + seconds

    @property
    def seconds(self) -> float:
        return self._seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._loop.time())


class Reconciler:
    """Creates, reads, updates and deletes resources of one kind.

    The remote client is an explicit dependency; nothing here reaches for a
    shared global client.
    """

    def __init__(
        self,
        client: RemoteResourceClient,
        kind: ResourceKind,
        *,
        config: Config | None = None,
        poller: OperationPoller | None = None,
        guard: PreconditionGuard | None = None,
        listener: LifecycleListener | None = None,
    ) -> None:
        self._client = client
        self._kind = kind
        self._config = config or Config()
        self._poller = poller or OperationPoller.from_config(self._config)
        self._guard = guard or PreconditionGuard(client, self._poller)
        self._listener = listener

        # identity -> handle being polled (None while the submit is in flight)
        self._active: dict[ResourceIdentity, OperationHandle | None] = {}
        self._states: dict[ResourceIdentity, LifecycleState] = {}
        # identity -> last phase observed by the mutation in flight
        self._last_phases: dict[ResourceIdentity, str | None] = {}

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    def state_of(self, identity: ResourceIdentity) -> LifecycleState:
        return self._states.get(identity, LifecycleState.ABSENT)

    def active_handle(self, identity: ResourceIdentity) -> OperationHandle | None:
        return self._active.get(identity)

    def is_busy(self, identity: ResourceIdentity) -> bool:
        return identity in self._active

    # =========================================================================
    # Operations
    # =========================================================================

    async def create(
        self,
        desired: DesiredState,
        *,
        adopt: bool = False,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResourceIdentity:
        """Create the resource and wait until it is confirmed present.

        Args:
            desired: Declared configuration.
            adopt: Take over a resource that already exists at the identity
                (applied as an update) instead of failing.
            timeout: Whole-call budget; defaults to the configured create timeout.
            cancel_event: Aborts any wait promptly when set.

        Returns:
            The new identity. Callers record it only after this returns.

        Raises:
            AlreadyExistsError: The identity is taken and ``adopt`` is False.
            ReconcileError: Any other failure, annotated with the identity.
        """
        op = OperationKind.CREATE
        identity = self._kind.build_identity(desired)
        deadline = _Deadline(timeout if timeout is not None else self._config.timeouts.create)

        with self._exclusive(identity, op):
            existing = await self._call(
                op, identity, deadline, lambda: self._get(identity), cancel_event
            )
            if existing is not None and not adopt:
                raise AlreadyExistsError(
                    "a resource with this ID already exists; import it to manage it",
                    identity=identity,
                    operation=op,
                    last_phase=existing.phase,
                )

            mutation = MutationKind.CREATE if existing is None else MutationKind.UPDATE
            if existing is not None:
                self._observe(identity, existing.phase)
                logger.info(
                    "Adopting existing resource",
                    extra={"resource_id": identity.id_string, "kind": self._kind.name},
                )

            payload = self._kind.build_payload(desired)
            self._transition(identity, op, LifecycleState.CREATING)
            try:
                await self._mutate(op, mutation, identity, payload, deadline, cancel_event)
                materialized = await self._confirm(op, identity, deadline, cancel_event)
            except BaseException:
                # A failed create leaves nothing tracked
                self._transition(identity, op, LifecycleState.ABSENT)
                self._forget(identity)
                raise

            self._transition(identity, op, LifecycleState.PRESENT)
            logger.info(
                "Resource created",
                extra={
                    "resource_id": identity.id_string,
                    "kind": self._kind.name,
                    "fields": sorted(materialized),
                },
            )
            return identity

    async def read(
        self,
        identity: ResourceIdentity,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any] | None:
        """Read the resource back into its declared shape.

        Returns:
            The materialized state, or None if the resource no longer
            exists. None tells the caller to stop tracking the identity.
        """
        op = OperationKind.READ
        deadline = _Deadline(timeout if timeout is not None else self._config.timeouts.read)

        state = await self._call(op, identity, deadline, lambda: self._get(identity))
        if state is None:
            logger.info(
                "Resource does not exist, dropping from tracked state",
                extra={"resource_id": identity.id_string, "kind": self._kind.name},
            )
            self._forget(identity)
            return None

        if identity not in self._states:
            self._states[identity] = LifecycleState.PRESENT
        return self._kind.materialize(state)

    async def import_resource(
        self,
        resource_id: str,
        *,
        timeout: float | None = None,
    ) -> tuple[ResourceIdentity, dict[str, Any]]:
        """Start tracking an existing resource from its persisted ID.

        Raises:
            InvalidIdentityError: If the ID does not fit this kind.
            ResourceVanishedError: If nothing exists at the ID.
        """
        identity = self._kind.parse_identity(resource_id)
        materialized = await self.read(identity, timeout=timeout)
        if materialized is None:
            raise ResourceVanishedError(
                "cannot import a resource that does not exist",
                identity=identity,
                operation=OperationKind.READ,
                last_phase=OperationPhase.ABSENT.value,
            )
        return identity, materialized

    async def update(
        self,
        identity: ResourceIdentity,
        desired: DesiredState,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Apply desired state to an existing resource and confirm it.

        Immutable fields are the desired-state layer's concern; the payload
        is sent as built by the kind.

        Raises:
            IdentityChangedError: If ``desired`` names a different resource.
            ReconcileError: Any other failure, annotated with the identity.
        """
        op = OperationKind.UPDATE
        desired_identity = self._kind.build_identity(desired)
        if desired_identity != identity:
            raise IdentityChangedError(
                f"desired state names {desired_identity.id_string}; "
                "renames require delete and create",
                identity=identity,
                operation=op,
            )

        deadline = _Deadline(timeout if timeout is not None else self._config.timeouts.update)
        with self._exclusive(identity, op):
            payload = self._kind.build_payload(desired)
            self._transition(identity, op, LifecycleState.UPDATING)
            try:
                await self._mutate(
                    op, MutationKind.UPDATE, identity, payload, deadline, cancel_event
                )
                await self._confirm(op, identity, deadline, cancel_event)
            finally:
                # Still tracked either way; a failed update can be retried
                self._transition(identity, op, LifecycleState.PRESENT)

    async def delete(
        self,
        identity: ResourceIdentity,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Delete the resource and wait until it is gone.

        Deleting an absent resource succeeds. On failure the resource stays
        tracked so the delete can be retried.

        Raises:
            PreconditionFailedError: The guard could not make it deletable.
            ReconcileError: Any other failure, annotated with the identity.
        """
        op = OperationKind.DELETE
        deadline = _Deadline(timeout if timeout is not None else self._config.timeouts.delete)

        with self._exclusive(identity, op):
            previous = self.state_of(identity)
            self._transition(identity, op, LifecycleState.DELETING)
            try:
                await self._delete(op, identity, deadline, cancel_event)
            except BaseException:
                self._transition(
                    identity,
                    op,
                    previous if previous != LifecycleState.ABSENT else LifecycleState.PRESENT,
                )
                raise

            self._transition(identity, op, LifecycleState.ABSENT)
            self._forget(identity)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _delete(
        self,
        op: OperationKind,
        identity: ResourceIdentity,
        deadline: _Deadline,
        cancel_event: asyncio.Event | None,
    ) -> None:
        try:
            await self._guard.ensure_deletable(
                identity, self._kind, timeout=deadline.remaining(), cancel_event=cancel_event
            )
        except GuardCanceledError as e:
            raise OperationCanceledError(
                str(e), identity=identity, operation=op, last_phase=e.last_phase
            ) from e
        except GuardError as e:
            raise PreconditionFailedError(
                str(e), identity=identity, operation=op, last_phase=e.last_phase
            ) from e

        try:
            submitted = await self._call(
                op,
                identity,
                deadline,
                lambda: self._client.submit(
                    MutationKind.DELETE, identity, {}, api_version=self._kind.api_version
                ),
                cancel_event,
            )
        except NotFoundError:
            logger.info(
                "Resource already deleted",
                extra={"resource_id": identity.id_string, "kind": self._kind.name},
            )
            return

        if isinstance(submitted, OperationHandle):
            await self._wait_for_handle(op, identity, submitted, deadline, cancel_event)

        def refresh() -> str | None:
            state = self._get(identity)
            if state is None:
                return None
            # A resource without a provisioning state counts as settled
            return state.phase or OperationPhase.SUCCEEDED.value

        result = await self._poller.poll(
            refresh,
            self._kind.deletion_profile,
            timeout=deadline.remaining(),
            cancel_event=cancel_event,
        )
        self._require_success(op, identity, result, self._kind.deletion_profile, deadline)

    async def _mutate(
        self,
        op: OperationKind,
        mutation: MutationKind,
        identity: ResourceIdentity,
        payload: Mapping[str, Any],
        deadline: _Deadline,
        cancel_event: asyncio.Event | None,
    ) -> None:
        submitted = await self._call(
            op,
            identity,
            deadline,
            lambda: self._client.submit(
                mutation, identity, payload, api_version=self._kind.api_version
            ),
            cancel_event,
        )

        if isinstance(submitted, OperationHandle):
            await self._wait_for_handle(op, identity, submitted, deadline, cancel_event)
        elif isinstance(submitted, ImmediateResult):
            logger.debug(
                "Mutation completed synchronously",
                extra={"resource_id": identity.id_string, "operation": op.value},
            )

        if self._kind.settle_profile is not None:
            profile = self._kind.settle_profile

            def refresh() -> str | None:
                state = self._get(identity)
                return None if state is None else state.phase

            result = await self._poller.poll(
                refresh,
                profile,
                timeout=deadline.remaining(),
                cancel_event=cancel_event,
                not_found_checks=self._config.not_found_checks,
            )
            self._require_success(op, identity, result, profile, deadline)

    async def _wait_for_handle(
        self,
        op: OperationKind,
        identity: ResourceIdentity,
        handle: OperationHandle,
        deadline: _Deadline,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self._active[identity] = handle
        logger.info(
            "Waiting for operation",
            extra={
                "resource_id": identity.id_string,
                "operation": op.value,
                "status_endpoint": handle.status_endpoint,
                "phase": handle.phase,
            },
        )

        def refresh() -> str | None:
            handle.phase = self._client.operation_status(handle)
            return handle.phase

        profile = self._kind.operation_profile
        result = await self._poller.poll(
            refresh, profile, timeout=deadline.remaining(), cancel_event=cancel_event
        )
        self._require_success(op, identity, result, profile, deadline)

    def _require_success(
        self,
        op: OperationKind,
        identity: ResourceIdentity,
        result: PollResult,
        profile: PhaseProfile,
        deadline: _Deadline,
    ) -> str:
        """Turn a poll result into the terminal phase or an annotated error."""
        if isinstance(result, Terminal):
            self._observe(identity, result.phase)
            if profile.is_success(result.phase):
                return result.phase
            raise OperationFailedError(
                f"{profile.name} ended in {result.phase}",
                identity=identity,
                operation=op,
                last_phase=result.phase,
            )

        if not isinstance(result, PollError):
            raise RuntimeError(f"Poll returned a non-final result: {result!r}")

        kwargs = {
            "identity": identity,
            "operation": op,
            "last_phase": result.last_phase or self._last_phases.get(identity),
        }
        match result.reason:
            case PollErrorReason.TIMEOUT:
                raise ReconcileTimeoutError(
                    f"{profile.name} did not finish within {deadline.seconds}s", **kwargs
                ) from result.cause
            case PollErrorReason.UNKNOWN_PHASE:
                raise UnknownPhaseError(
                    f"{profile.name} reported a phase outside its vocabulary", **kwargs
                )
            case PollErrorReason.CANCELED:
                raise OperationCanceledError(f"{profile.name} wait canceled", **kwargs)
            case PollErrorReason.NOT_FOUND:
                raise ResourceVanishedError(
                    f"resource disappeared during {profile.name} wait", **kwargs
                )
            case _:
                raise RemoteRequestError(
                    f"{profile.name} status query failed: {result.cause}", **kwargs
                ) from result.cause

    async def _confirm(
        self,
        op: OperationKind,
        identity: ResourceIdentity,
        deadline: _Deadline,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, Any]:
        state = await self._call(
            op, identity, deadline, lambda: self._get(identity), cancel_event
        )
        if state is None:
            raise ResourceVanishedError(
                "resource not found after the operation completed",
                identity=identity,
                operation=op,
                last_phase=OperationPhase.ABSENT.value,
            )
        return self._kind.materialize(state)

    def _get(self, identity: ResourceIdentity) -> RemoteState | None:
        try:
            return self._client.get(identity, api_version=self._kind.api_version)
        except NotFoundError:
            return None

    async def _call(
        self,
        op: OperationKind,
        identity: ResourceIdentity,
        deadline: _Deadline,
        fn: Callable[[], T],
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """Run a blocking client call within the remaining budget.

        NotFoundError is passed through for callers that treat absence as
        success; everything else is annotated with identity, operation and
        the last phase observed so far.
        """
        last_phase = self._last_phases.get(identity)
        try:
            return await run_blocking(fn, timeout=deadline.remaining(), cancel_event=cancel_event)
        except CallTimeoutError as e:
            raise ReconcileTimeoutError(
                f"remote call did not return within the {deadline.seconds}s budget",
                identity=identity,
                operation=op,
                last_phase=last_phase,
            ) from e
        except CallCanceledError as e:
            raise OperationCanceledError(
                str(e), identity=identity, operation=op, last_phase=last_phase
            ) from e
        except NotFoundError:
            raise
        except Exception as e:
            logger.error(
                "Remote call failed",
                extra={
                    "resource_id": identity.id_string,
                    "operation": op.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise RemoteRequestError(
                str(e), identity=identity, operation=op, last_phase=last_phase
            ) from e

    def _observe(self, identity: ResourceIdentity, phase: str | None) -> None:
        if phase is not None:
            self._last_phases[identity] = phase

    @contextmanager
    def _exclusive(self, identity: ResourceIdentity, op: OperationKind) -> Iterator[None]:
        """Reserve the identity for one mutation at a time."""
        if identity in self._active:
            handle = self._active[identity]
            raise OperationInProgressError(
                "another operation is still in progress for this resource",
                identity=identity,
                operation=op,
                last_phase=handle.phase if handle is not None else None,
            )
        self._active[identity] = None
        try:
            yield
        finally:
            # Terminal or abandoned; the handle is discarded
            self._active.pop(identity, None)
            self._last_phases.pop(identity, None)

    def _transition(
        self,
        identity: ResourceIdentity,
        op: OperationKind,
        state: LifecycleState,
        phase: str | None = None,
    ) -> None:
        previous = self._states.get(identity, LifecycleState.ABSENT)
        self._states[identity] = state
        handle = self._active.get(identity)
        if phase is None and handle is not None:
            phase = handle.phase

        logger.info(
            "Lifecycle transition",
            extra={
                "resource_id": identity.id_string,
                "kind": self._kind.name,
                "operation": op.value,
                "from_state": previous.value,
                "to_state": state.value,
                "phase": phase,
            },
        )
        if self._listener is not None:
            self._listener(
                LifecycleEvent(identity=identity, operation=op, state=state, phase=phase)
            )

    def _forget(self, identity: ResourceIdentity) -> None:
        self._states.pop(identity, None)
