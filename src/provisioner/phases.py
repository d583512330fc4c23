"""Phase vocabulary and per-operation phase profiles.

Every in-flight remote mutation is in exactly one phase. A PhaseProfile
names the closed pending and terminal sets a poller waits on; anything
outside both sets is a protocol violation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OperationPhase(str, Enum):
    """Phases reported by Resource Manager operations and resources."""

    PENDING = "Pending"
    ACCEPTED = "Accepted"
    IN_PROGRESS = "InProgress"
    RUNNING = "Running"
    CREATING = "Creating"
    UPDATING = "Updating"
    DELETING = "Deleting"
    PROVISIONING = "Provisioning"
    EVALUATING = "Evaluating"
    CANCELLING = "Cancelling"
    SUCCEEDED = "Succeeded"
    COMPLETE = "Complete"
    FAILED = "Failed"
    CANCELED = "Canceled"
    # Synthetic: the resource could not be found
    ABSENT = "Absent"


def _names(*phases: OperationPhase) -> frozenset[str]:
    return frozenset(p.value for p in phases)


@dataclass(frozen=True)
class PhaseProfile:
    """Closed phase sets for one kind of wait.

    Attributes:
        name: Used in log lines and error messages.
        pending: Phases meaning "keep waiting".
        terminal: Phases that end the wait.
        success: Terminal phases counted as a successful outcome.
        not_found_checks: Consecutive absent observations tolerated when
            ABSENT is in neither set.
    """

    name: str
    pending: frozenset[str]
    terminal: frozenset[str]
    success: frozenset[str] = _names(OperationPhase.SUCCEEDED)
    not_found_checks: int = 0

    def __post_init__(self) -> None:
        overlap = self.pending & self.terminal
        if overlap:
            raise ValueError(f"phases cannot be both pending and terminal: {sorted(overlap)}")
        if not self.terminal:
            raise ValueError(f"profile {self.name!r} has no terminal phases")
        if not self.success <= self.terminal:
            raise ValueError(f"success phases must be terminal: {sorted(self.success)}")

    def is_pending(self, phase: str) -> bool:
        return phase in self.pending

    def is_terminal(self, phase: str) -> bool:
        return phase in self.terminal

    def is_success(self, phase: str) -> bool:
        return phase in self.success

    def knows(self, phase: str) -> bool:
        return phase in self.pending or phase in self.terminal

    @property
    def absent_is_expected(self) -> bool:
        return self.knows(OperationPhase.ABSENT.value)


# Remediation run lifecycle after a create or update
REMEDIATION_LIFECYCLE = PhaseProfile(
    name="remediation",
    pending=_names(OperationPhase.PENDING, OperationPhase.ACCEPTED, OperationPhase.EVALUATING),
    terminal=_names(
        OperationPhase.SUCCEEDED,
        OperationPhase.COMPLETE,
        OperationPhase.FAILED,
        OperationPhase.CANCELED,
    ),
    success=_names(OperationPhase.SUCCEEDED, OperationPhase.COMPLETE),
)

# Waiting for a cancel action; any terminal phase lets the delete proceed
REMEDIATION_CANCELLATION = PhaseProfile(
    name="cancellation",
    pending=_names(OperationPhase.CANCELLING),
    terminal=_names(OperationPhase.SUCCEEDED, OperationPhase.CANCELED, OperationPhase.FAILED),
    success=_names(OperationPhase.SUCCEEDED, OperationPhase.CANCELED, OperationPhase.FAILED),
)

# Status of an Azure long-running operation (LROPoller.status())
ARM_OPERATION = PhaseProfile(
    name="arm-operation",
    pending=_names(
        OperationPhase.ACCEPTED,
        OperationPhase.IN_PROGRESS,
        OperationPhase.RUNNING,
        OperationPhase.CREATING,
        OperationPhase.UPDATING,
        OperationPhase.DELETING,
        OperationPhase.PROVISIONING,
    ),
    terminal=_names(OperationPhase.SUCCEEDED, OperationPhase.FAILED, OperationPhase.CANCELED),
)

# Waiting for a deleted resource to disappear; any observed phase is pending
RESOURCE_DELETION = PhaseProfile(
    name="deletion",
    pending=frozenset(p.value for p in OperationPhase if p is not OperationPhase.ABSENT),
    terminal=_names(OperationPhase.ABSENT),
    success=_names(OperationPhase.ABSENT),
)
