"""Resource kinds: per-type configuration for the generic engine.

A ResourceKind is data, not control flow. It tells the reconciler how to
name a resource, what to send, how to read it back, which phase profiles
apply to its waits, and whether deletion needs a corrective action first.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .client import RemoteState
from .identity import ResourceIdentity
from .models import GenericResourceSpec, RemediationSpec
from .phases import (
    ARM_OPERATION,
    REMEDIATION_CANCELLATION,
    REMEDIATION_LIFECYCLE,
    RESOURCE_DELETION,
    PhaseProfile,
)

# Declared configuration as produced by the desired-state layer
DesiredState = Mapping[str, Any]

REMEDIATION_API_VERSION = "2021-10-01"


def _never(state: RemoteState) -> bool:  # noqa: ARG001
    return False


def _changed_fields(desired: DesiredState, observed: Mapping[str, Any]) -> list[str]:
    return sorted(key for key, value in desired.items() if observed.get(key) != value)


@dataclass(frozen=True)
class ResourceKind:
    """Everything resource-type specific the engine needs.

    Attributes:
        name: Kind name used in documents, logs and errors.
        api_version: Resource Manager API version for this type.
        build_identity: Derives the identity from desired naming fields.
        build_payload: Builds the request body from desired state.
        materialize: Maps observed state back to the declared shape.
        operation_profile: Phases of the operation handle after submit.
        deletion_profile: Phases while waiting for a deleted resource to go.
        cancellation_profile: Phases while waiting for a cancel action.
        settle_profile: If set, resource phases to wait on after the
            operation handle completes (e.g. a remediation run).
        requires_cancel: Deletion precondition predicate.
        detect_drift: Names the declared fields whose observed value differs.
        identity_keys: Segment keys a persisted identity must contain.
    """

    name: str
    api_version: str
    build_identity: Callable[[DesiredState], ResourceIdentity]
    build_payload: Callable[[DesiredState], dict[str, Any]]
    materialize: Callable[[RemoteState], dict[str, Any]]
    operation_profile: PhaseProfile = ARM_OPERATION
    deletion_profile: PhaseProfile = RESOURCE_DELETION
    cancellation_profile: PhaseProfile = REMEDIATION_CANCELLATION
    settle_profile: PhaseProfile | None = None
    requires_cancel: Callable[[RemoteState], bool] = _never
    detect_drift: Callable[[DesiredState, Mapping[str, Any]], list[str]] = _changed_fields
    identity_keys: tuple[str, ...] = ()

    def parse_identity(self, resource_id: str) -> ResourceIdentity:
        """Parse and shape-check a persisted identity (read/import)."""
        return ResourceIdentity.parse(resource_id).require(*self.identity_keys)


# =============================================================================
# Policy remediation
# =============================================================================


def _remediation_identity(desired: DesiredState) -> ResourceIdentity:
    return RemediationSpec.model_validate(desired).identity()


def _remediation_payload(desired: DesiredState) -> dict[str, Any]:
    return RemediationSpec.model_validate(desired).to_payload()


def _remediation_materialize(state: RemoteState) -> dict[str, Any]:
    return RemediationSpec.from_remote(state).to_document()


def _remediation_requires_cancel(state: RemoteState) -> bool:
    return RemediationSpec.mode_requires_cancel(
        (state.properties or {}).get("resourceDiscoveryMode")
    )


def _remediation_drift(desired: DesiredState, observed: Mapping[str, Any]) -> list[str]:
    return RemediationSpec.model_validate(desired).drifted_from(
        RemediationSpec.model_validate(observed)
    )


def remediation_kind(*, wait_for_evaluation: bool = False) -> ResourceKind:
    """Kind for management-group scoped policy remediations.

    Args:
        wait_for_evaluation: Also wait for the remediation run itself to
            finish after the create/update request completes.
    """
    return ResourceKind(
        name="PolicyRemediation",
        api_version=REMEDIATION_API_VERSION,
        build_identity=_remediation_identity,
        build_payload=_remediation_payload,
        materialize=_remediation_materialize,
        cancellation_profile=REMEDIATION_CANCELLATION,
        settle_profile=REMEDIATION_LIFECYCLE if wait_for_evaluation else None,
        requires_cancel=_remediation_requires_cancel,
        detect_drift=_remediation_drift,
        identity_keys=("managementGroups", "remediations"),
    )


REMEDIATION_KIND = remediation_kind()


# =============================================================================
# Generic ARM resource
# =============================================================================


def generic_arm_kind(resource_type: str, api_version: str) -> ResourceKind:
    """Kind for any ARM resource whose desired state carries its full ``id``."""

    def build_identity(desired: DesiredState) -> ResourceIdentity:
        identity = GenericResourceSpec.model_validate(desired).identity()
        if identity.resource_type.lower() != resource_type.lower():
            raise ValueError(
                f"resource ID type {identity.resource_type} does not match {resource_type}"
            )
        return identity

    def build_payload(desired: DesiredState) -> dict[str, Any]:
        return GenericResourceSpec.model_validate(desired).to_payload()

    def materialize(state: RemoteState) -> dict[str, Any]:
        return GenericResourceSpec.from_remote(state).model_dump(mode="json")

    return ResourceKind(
        name=resource_type,
        api_version=api_version,
        build_identity=build_identity,
        build_payload=build_payload,
        materialize=materialize,
        identity_keys=("providers",),
    )


# Kinds addressable by name from documents and the CLI
KIND_REGISTRY: dict[str, ResourceKind] = {
    REMEDIATION_KIND.name: REMEDIATION_KIND,
}


def register_kind(kind: ResourceKind) -> ResourceKind:
    """Make a kind addressable by name, e.g. one built with generic_arm_kind().

    Register before the CLI module is imported so its --kind choices
    include the new name.

    Raises:
        ValueError: If a different kind is already registered under the name.
    """
    existing = KIND_REGISTRY.get(kind.name)
    if existing is not None and existing is not kind:
        raise ValueError(f"Resource kind already registered: {kind.name}")
    KIND_REGISTRY[kind.name] = kind
    return kind


def get_kind(name: str) -> ResourceKind:
    """Look up a registered kind by name.

    Raises:
        ValueError: If no kind is registered under that name.
    """
    if name not in KIND_REGISTRY:
        raise ValueError(f"Unknown resource kind: {name}. Valid kinds: {list(KIND_REGISTRY)}")
    return KIND_REGISTRY[name]
