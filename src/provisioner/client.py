"""Remote resource client contract.

The reconciler and guard receive a RemoteResourceClient explicitly; there is
no shared global client. Implementations are synchronous (like the Azure SDK)
and are run in an executor by the poller.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .identity import ResourceIdentity


class MutationKind(str, Enum):
    """Kinds of remote mutation a client can submit."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CANCEL = "cancel"


@dataclass(frozen=True)
class RemoteState:
    """Observed state of a remote resource.

    ``phase`` is the resource's provisioning state, or None when the
    resource does not report one. ``properties`` is the resource's
    ``properties`` bag.
    """

    identity: ResourceIdentity
    phase: str | None = None
    properties: Mapping[str, Any] = field(default_factory=dict)
    location: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass
class OperationHandle:
    """An in-flight remote mutation.

    Owned by the poll that waits on it and discarded once terminal.
    ``native`` carries whatever the client needs to query status (an
    LROPoller for the Azure adapter).
    """

    identity: ResourceIdentity
    kind: MutationKind
    status_endpoint: str
    phase: str
    native: Any = None


@dataclass(frozen=True)
class ImmediateResult:
    """A mutation that completed synchronously."""

    identity: ResourceIdentity
    state: RemoteState | None = None


SubmitResult = OperationHandle | ImmediateResult


@runtime_checkable
class RemoteResourceClient(Protocol):
    """Capability required by the reconciliation engine.

    Errors: ``get`` returns None for a missing resource. ``submit`` of a
    delete raises NotFoundError when the resource is already gone. Other
    failures raise RemoteCallError/TransientRemoteError or the SDK's own
    exceptions.
    """

    def submit(
        self,
        kind: MutationKind,
        identity: ResourceIdentity,
        payload: Mapping[str, Any],
        *,
        api_version: str,
    ) -> SubmitResult: ...

    def get(self, identity: ResourceIdentity, *, api_version: str) -> RemoteState | None: ...

    def cancel(self, identity: ResourceIdentity, *, api_version: str) -> OperationHandle: ...

    def operation_status(self, handle: OperationHandle) -> str: ...
