"""Pydantic models for declared resource configuration.

These models provide:
1. Type-safe parsing of desired-state documents
2. Validation at the boundary (fail fast, fail loudly)
3. Transformation to ARM request bodies and back (drift detection)
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .client import RemoteState
from .identity import ResourceIdentity

MANAGEMENT_GROUP_ID_PATTERN = r"^/providers/Microsoft\.Management/managementGroups/[^/]+$"
POLICY_ASSIGNMENT_SEGMENT = "/providers/microsoft.authorization/policyassignments/"
REMEDIATION_NAME_FORBIDDEN = re.compile(r"[%&?#/\\]")

POLICY_INSIGHTS_NAMESPACE = "Microsoft.PolicyInsights"
REMEDIATIONS_TYPE = "remediations"


class ResourceDiscoveryMode(str, Enum):
    """How a remediation discovers resources to remediate."""

    EXISTING_NON_COMPLIANT = "ExistingNonCompliant"
    RE_EVALUATE_COMPLIANCE = "ReEvaluateCompliance"


class RemediationSpec(BaseModel):
    """Management-group scoped Azure Policy remediation."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=260)]
    management_group_id: str = Field(alias="managementGroupId")
    policy_assignment_id: str = Field(alias="policyAssignmentId")
    location_filters: list[str] = Field(default_factory=list, alias="locationFilters")
    policy_definition_id: str | None = Field(None, alias="policyDefinitionId")
    resource_discovery_mode: ResourceDiscoveryMode = Field(
        ResourceDiscoveryMode.EXISTING_NON_COMPLIANT, alias="resourceDiscoveryMode"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if REMEDIATION_NAME_FORBIDDEN.search(v):
            raise ValueError("name must not contain any of % & ? # / \\")
        if v.endswith((".", " ")):
            raise ValueError("name must not end with '.' or ' '")
        return v

    @field_validator("management_group_id")
    @classmethod
    def validate_management_group_id(cls, v: str) -> str:
        if not re.match(MANAGEMENT_GROUP_ID_PATTERN, v):
            raise ValueError(
                "managementGroupId must look like "
                "/providers/Microsoft.Management/managementGroups/{name}"
            )
        return v

    @field_validator("policy_assignment_id")
    @classmethod
    def validate_policy_assignment_id(cls, v: str) -> str:
        if POLICY_ASSIGNMENT_SEGMENT not in v.lower():
            raise ValueError("policyAssignmentId must be a policy assignment resource ID")
        return v

    @field_validator("location_filters")
    @classmethod
    def normalize_locations(cls, v: list[str]) -> list[str]:
        # "West Europe" and "westeurope" name the same region
        return [loc.replace(" ", "").lower() for loc in v]

    def identity(self) -> ResourceIdentity:
        return (
            ResourceIdentity.parse(self.management_group_id)
            .child("providers", POLICY_INSIGHTS_NAMESPACE)
            .child(REMEDIATIONS_TYPE, self.name)
        )

    @staticmethod
    def mode_requires_cancel(mode: str | None) -> bool:
        """A re-evaluating remediation has to be canceled before it is deleted."""
        return mode == ResourceDiscoveryMode.RE_EVALUATE_COMPLIANCE.value

    def to_payload(self) -> dict[str, Any]:
        """Convert to an ARM request body."""
        properties: dict[str, Any] = {
            "policyAssignmentId": self.policy_assignment_id,
            "resourceDiscoveryMode": self.resource_discovery_mode.value,
            "filters": {"locations": list(self.location_filters)},
        }
        if self.policy_definition_id:
            properties["policyDefinitionReferenceId"] = self.policy_definition_id
        return {"properties": properties}

    @classmethod
    def from_remote(cls, state: RemoteState) -> RemediationSpec:
        """Flatten an observed remediation back into the declared shape."""
        identity = state.identity
        props: Mapping[str, Any] = state.properties or {}
        filters = props.get("filters") or {}
        management_group = identity.get("managementGroups")

        return cls(
            name=identity.name,
            management_group_id=(
                f"/providers/Microsoft.Management/managementGroups/{management_group}"
            ),
            policy_assignment_id=props.get("policyAssignmentId", ""),
            location_filters=list(filters.get("locations") or []),
            policy_definition_id=props.get("policyDefinitionReferenceId") or None,
            resource_discovery_mode=props.get(
                "resourceDiscoveryMode", ResourceDiscoveryMode.EXISTING_NON_COMPLIANT.value
            ),
        )

    def drifted_from(self, observed: RemediationSpec) -> list[str]:
        """Names of fields whose observed value differs from this spec.

        Resource ID comparisons ignore case; the service does not preserve it.
        """
        drifted: list[str] = []
        if self.policy_assignment_id.lower() != observed.policy_assignment_id.lower():
            drifted.append("policyAssignmentId")
        if (self.policy_definition_id or "").lower() != (
            observed.policy_definition_id or ""
        ).lower():
            drifted.append("policyDefinitionId")
        if sorted(self.location_filters) != sorted(observed.location_filters):
            drifted.append("locationFilters")
        if self.resource_discovery_mode != observed.resource_discovery_mode:
            drifted.append("resourceDiscoveryMode")
        return drifted

    def to_document(self) -> dict[str, Any]:
        """Serialize using the document field names."""
        return self.model_dump(mode="json", by_alias=True)


class GenericResourceSpec(BaseModel):
    """Any ARM resource addressed by its full resource ID."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: Annotated[str, Field(min_length=1)]
    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    properties: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        ResourceIdentity.parse(v)
        return v

    def identity(self) -> ResourceIdentity:
        return ResourceIdentity.parse(self.id)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"properties": dict(self.properties)}
        if self.location:
            payload["location"] = self.location
        if self.tags:
            payload["tags"] = dict(self.tags)
        return payload

    @classmethod
    def from_remote(cls, state: RemoteState) -> GenericResourceSpec:
        properties = {k: v for k, v in state.properties.items() if k != "provisioningState"}
        return cls(
            id=state.identity.id_string,
            location=state.location,
            tags=dict(state.tags),
            properties=properties,
        )
