"""Error taxonomy for remote mutations and their reconciliation.

Client-side errors describe what the remote API said. Reconcile errors are
the annotated form surfaced to callers: each carries the resource identity,
the operation that failed and the last phase observed before failing.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

if TYPE_CHECKING:
    from .identity import ResourceIdentity

# HTTP status codes that indicate the request may succeed if repeated
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class OperationKind(str, Enum):
    """Reconciler operations, used to annotate errors and events."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class ProvisionerError(Exception):
    """Base class for all errors raised by this package."""

    pass


# =============================================================================
# Remote client errors
# =============================================================================


class RemoteCallError(ProvisionerError):
    """A remote API call failed and repeating it will not help."""

    pass


class TransientRemoteError(RemoteCallError):
    """A remote API call failed in a way that may succeed on retry."""

    pass


class NotFoundError(RemoteCallError):
    """The remote resource does not exist."""

    pass


class InvalidIdentityError(ProvisionerError, ValueError):
    """Raised when a resource identity string cannot be parsed."""

    pass


class CallCanceledError(ProvisionerError):
    """A blocking remote call was abandoned because the caller canceled."""

    pass


class CallTimeoutError(ProvisionerError):
    """A blocking remote call did not return within the remaining budget."""

    pass


def is_transient(error: BaseException) -> bool:
    """Decide whether a failed status query should be retried.

    Network level failures and throttling/5xx responses are transient.
    Everything else, including 4xx responses, is a hard failure.
    """
    if isinstance(error, TransientRemoteError):
        return True
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return isinstance(error, (ConnectionError, TimeoutError))


# =============================================================================
# Reconcile errors
# =============================================================================


class ReconcileError(ProvisionerError):
    """A reconciler operation failed for a specific resource."""

    def __init__(
        self,
        message: str,
        *,
        identity: ResourceIdentity,
        operation: OperationKind,
        last_phase: str | None = None,
    ) -> None:
        self.identity = identity
        self.operation = operation
        self.last_phase = last_phase
        detail = f"{operation.value} {identity.id_string}: {message}"
        if last_phase is not None:
            detail += f" (last phase: {last_phase})"
        super().__init__(detail)


class AlreadyExistsError(ReconcileError):
    """A resource already exists at the identity a create would use.

    Resolve manually: import the resource or pick another name.
    """

    pass


class UnknownPhaseError(ReconcileError):
    """The remote reported a phase outside the closed vocabulary."""

    pass


class ReconcileTimeoutError(ReconcileError):
    """The operation did not reach a terminal phase within its budget."""

    pass


class OperationFailedError(ReconcileError):
    """The remote operation reached a terminal phase other than success."""

    pass


class OperationCanceledError(ReconcileError):
    """The caller canceled the operation while it was waiting."""

    pass


class OperationInProgressError(ReconcileError):
    """Another mutation for the same identity is still being polled."""

    pass


class IdentityChangedError(ReconcileError):
    """Desired naming fields resolve to a different identity.

    Identities are immutable; a rename is a delete followed by a create.
    """

    pass


class RemoteRequestError(ReconcileError):
    """A remote call made on behalf of the operation failed."""

    pass


class ResourceVanishedError(ReconcileError):
    """The resource was absent when it was expected to exist."""

    pass


class PreconditionFailedError(ReconcileError):
    """The deletion precondition could not be satisfied.

    The underlying GuardError is attached as ``__cause__``.
    """

    pass


# =============================================================================
# Precondition guard errors
# =============================================================================


class GuardError(ProvisionerError):
    """Base class for precondition guard failures. Always fatal to a delete."""

    def __init__(self, message: str, *, last_phase: str | None = None) -> None:
        self.last_phase = last_phase
        super().__init__(message)


class GuardReadFailedError(GuardError):
    """Current remote state could not be read before deleting."""

    pass


class CancelSubmitFailedError(GuardError):
    """The corrective cancel action was rejected by the remote."""

    pass


class CancelTimedOutError(GuardError):
    """The cancel action did not reach a terminal phase in time."""

    pass


class CancelWaitFailedError(GuardError):
    """Waiting for the cancel action failed for a reason other than timeout."""

    pass


class GuardCanceledError(GuardError):
    """The caller canceled the delete while the guard was running."""

    pass
