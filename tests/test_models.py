"""Tests for declared resource models."""

import pytest
from pydantic import ValidationError

from provisioner.client import RemoteState
from provisioner.identity import ResourceIdentity
from provisioner.models import (
    GenericResourceSpec,
    RemediationSpec,
    ResourceDiscoveryMode,
)

MG_ID = "/providers/Microsoft.Management/managementGroups/mg1"
ASSIGNMENT_ID = f"{MG_ID}/providers/Microsoft.Authorization/policyAssignments/require-tags"


def remediation_doc(**overrides: object) -> dict[str, object]:
    doc: dict[str, object] = {
        "name": "fix-tags",
        "managementGroupId": MG_ID,
        "policyAssignmentId": ASSIGNMENT_ID,
    }
    doc.update(overrides)
    return doc


class TestRemediationSpec:
    """Tests for RemediationSpec validation."""

    def test_minimal(self) -> None:
        spec = RemediationSpec.model_validate(remediation_doc())

        assert spec.resource_discovery_mode == ResourceDiscoveryMode.EXISTING_NON_COMPLIANT
        assert spec.location_filters == []
        assert not RemediationSpec.mode_requires_cancel(spec.resource_discovery_mode)

    def test_identity(self) -> None:
        spec = RemediationSpec.model_validate(remediation_doc())

        assert spec.identity().id_string == (
            f"{MG_ID}/providers/Microsoft.PolicyInsights/remediations/fix-tags"
        )

    def test_locations_normalized(self) -> None:
        spec = RemediationSpec.model_validate(
            remediation_doc(locationFilters=["West Europe", "eastus"])
        )
        assert spec.location_filters == ["westeurope", "eastus"]

    def test_re_evaluate_requires_cancel(self) -> None:
        spec = RemediationSpec.model_validate(
            remediation_doc(resourceDiscoveryMode="ReEvaluateCompliance")
        )
        assert RemediationSpec.mode_requires_cancel(spec.resource_discovery_mode)

    @pytest.mark.parametrize("name", ["", "a/b", "fix?", "50%", "trailing.", "trailing "])
    def test_invalid_name(self, name: str) -> None:
        with pytest.raises(ValidationError):
            RemediationSpec.model_validate(remediation_doc(name=name))

    @pytest.mark.parametrize(
        "management_group_id",
        [
            "mg1",
            "/subscriptions/12345678-1234-1234-1234-123456789012",
            f"{MG_ID}/providers/Microsoft.PolicyInsights/remediations/x",
        ],
    )
    def test_invalid_management_group(self, management_group_id: str) -> None:
        with pytest.raises(ValidationError):
            RemediationSpec.model_validate(remediation_doc(managementGroupId=management_group_id))

    def test_invalid_assignment(self) -> None:
        with pytest.raises(ValidationError):
            RemediationSpec.model_validate(remediation_doc(policyAssignmentId=MG_ID))

    def test_invalid_discovery_mode(self) -> None:
        with pytest.raises(ValidationError):
            RemediationSpec.model_validate(remediation_doc(resourceDiscoveryMode="Sometimes"))


class TestRemediationPayload:
    """Tests for conversion to and from ARM shapes."""

    def test_to_payload(self) -> None:
        spec = RemediationSpec.model_validate(
            remediation_doc(locationFilters=["westeurope"], policyDefinitionId="tagging")
        )

        assert spec.to_payload() == {
            "properties": {
                "policyAssignmentId": ASSIGNMENT_ID,
                "resourceDiscoveryMode": "ExistingNonCompliant",
                "filters": {"locations": ["westeurope"]},
                "policyDefinitionReferenceId": "tagging",
            }
        }

    def test_payload_omits_missing_reference(self) -> None:
        payload = RemediationSpec.model_validate(remediation_doc()).to_payload()
        assert "policyDefinitionReferenceId" not in payload["properties"]

    def test_from_remote(self) -> None:
        identity = ResourceIdentity.parse(
            f"{MG_ID}/providers/Microsoft.PolicyInsights/remediations/fix-tags"
        )
        state = RemoteState(
            identity=identity,
            phase="Succeeded",
            properties={
                "policyAssignmentId": ASSIGNMENT_ID.lower(),
                "resourceDiscoveryMode": "ReEvaluateCompliance",
                "filters": {"locations": ["eastus"]},
                "provisioningState": "Succeeded",
            },
        )

        observed = RemediationSpec.from_remote(state)

        assert observed.name == "fix-tags"
        assert observed.management_group_id == MG_ID
        assert observed.location_filters == ["eastus"]
        assert observed.resource_discovery_mode == ResourceDiscoveryMode.RE_EVALUATE_COMPLIANCE

    def test_drift_ignores_id_case(self) -> None:
        desired = RemediationSpec.model_validate(remediation_doc(locationFilters=["eastus"]))
        observed = RemediationSpec.model_validate(
            remediation_doc(
                policyAssignmentId=ASSIGNMENT_ID.upper(),
                locationFilters=["westus"],
            )
        )

        assert desired.drifted_from(observed) == ["locationFilters"]

    def test_to_document_uses_aliases(self) -> None:
        document = RemediationSpec.model_validate(remediation_doc()).to_document()

        assert document["managementGroupId"] == MG_ID
        assert document["resourceDiscoveryMode"] == "ExistingNonCompliant"


class TestGenericResourceSpec:
    """Tests for GenericResourceSpec."""

    STORAGE_ID = (
        "/subscriptions/12345678-1234-1234-1234-123456789012/resourceGroups/rg1"
        "/providers/Microsoft.Storage/storageAccounts/sa1"
    )

    def test_payload(self) -> None:
        spec = GenericResourceSpec(
            id=self.STORAGE_ID, location="westeurope", properties={"minimumTlsVersion": "TLS1_2"}
        )

        assert spec.to_payload() == {
            "properties": {"minimumTlsVersion": "TLS1_2"},
            "location": "westeurope",
        }

    def test_invalid_id(self) -> None:
        with pytest.raises(ValidationError):
            GenericResourceSpec(id="storageAccounts/sa1")

    def test_from_remote_drops_provisioning_state(self) -> None:
        state = RemoteState(
            identity=ResourceIdentity.parse(self.STORAGE_ID),
            phase="Succeeded",
            properties={"provisioningState": "Succeeded", "minimumTlsVersion": "TLS1_2"},
            location="westeurope",
        )

        spec = GenericResourceSpec.from_remote(state)

        assert spec.properties == {"minimumTlsVersion": "TLS1_2"}
        assert spec.location == "westeurope"
