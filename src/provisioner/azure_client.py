"""Azure Resource Manager implementation of the remote client contract.

Create, update, delete and get go through the generic resource operations
of ``ResourceManagementClient`` so any resource type can be addressed by ID.
Cancel is a POST action on the resource, sent through an ARM pipeline.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ResourceNotFoundError
from azure.core.pipeline.policies import RetryPolicy
from azure.core.pipeline.transport import HttpTransport
from azure.core.polling import LROPoller
from azure.core.rest import HttpRequest
from azure.mgmt.core import ARMPipelineClient
from azure.mgmt.core.policies import ARMChallengeAuthenticationPolicy
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .client import (
    MutationKind,
    OperationHandle,
    RemoteState,
    SubmitResult,
)
from .config import Config, ConfigurationError
from .errors import NotFoundError
from .identity import ResourceIdentity
from .phases import OperationPhase

logger = logging.getLogger(__name__)

_CANONICAL_PHASES = {phase.value.lower(): phase.value for phase in OperationPhase}


def canonical_phase(status: str | None) -> str | None:
    """Normalize the casing of a status reported by the service.

    Resource Manager is not consistent about casing ("succeeded",
    "Succeeded"). Unrecognized values are returned unchanged so the poller
    can reject them.
    """
    if status is None:
        return None
    return _CANONICAL_PHASES.get(status.lower(), status)


def _state_from_resource(identity: ResourceIdentity, resource: GenericResource) -> RemoteState:
    properties: dict[str, Any] = dict(resource.properties or {})
    return RemoteState(
        identity=identity,
        phase=canonical_phase(properties.get("provisioningState")),
        properties=properties,
        location=resource.location,
        tags=dict(resource.tags or {}),
    )


class AzureResourceClient:
    """RemoteResourceClient backed by the Azure SDK.

    The credential is passed in; acquiring it is the caller's business.
    """

    def __init__(
        self,
        credential: TokenCredential,
        config: Config,
        *,
        resource_client: ResourceManagementClient | None = None,
        pipeline: ARMPipelineClient | None = None,
        transport: HttpTransport | None = None,
    ) -> None:
        if not config.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for the Azure client")

        # Only passed when set so the SDK keeps its default transport
        transport_kwargs: dict[str, Any] = {}
        if transport is not None:
            transport_kwargs["transport"] = transport
        self._client = resource_client or ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
            base_url=config.arm_endpoint,
            **transport_kwargs,
        )
        self._pipeline = pipeline or ARMPipelineClient(
            base_url=config.arm_endpoint,
            policies=[
                RetryPolicy(),
                ARMChallengeAuthenticationPolicy(credential, f"{config.arm_endpoint}/.default"),
            ],
            **transport_kwargs,
        )

    def get(self, identity: ResourceIdentity, *, api_version: str) -> RemoteState | None:
        try:
            resource = self._client.resources.get_by_id(identity.id_string, api_version)
        except ResourceNotFoundError:
            return None
        return _state_from_resource(identity, resource)

    def submit(
        self,
        kind: MutationKind,
        identity: ResourceIdentity,
        payload: Mapping[str, Any],
        *,
        api_version: str,
    ) -> SubmitResult:
        poller: LROPoller[Any]
        match kind:
            case MutationKind.CREATE | MutationKind.UPDATE:
                body = GenericResource(
                    location=payload.get("location"),
                    tags=payload.get("tags"),
                    properties=payload.get("properties"),
                )
                poller = self._client.resources.begin_create_or_update_by_id(
                    identity.id_string, api_version, body
                )
            case MutationKind.DELETE:
                try:
                    poller = self._client.resources.begin_delete_by_id(
                        identity.id_string, api_version
                    )
                except ResourceNotFoundError as e:
                    raise NotFoundError(f"{identity} does not exist") from e
            case _:
                raise ValueError(f"Unsupported mutation kind: {kind}")

        logger.debug(
            "Submitted mutation",
            extra={"resource_id": identity.id_string, "mutation": kind.value},
        )
        return OperationHandle(
            identity=identity,
            kind=kind,
            status_endpoint=poller.continuation_token(),
            phase=canonical_phase(poller.status()) or OperationPhase.ACCEPTED.value,
            native=poller,
        )

    def cancel(self, identity: ResourceIdentity, *, api_version: str) -> OperationHandle:
        # send_request does not resolve relative URLs against the endpoint
        url = self._pipeline.format_url("{resourceId}/cancel", resourceId=identity.id_string)
        request = HttpRequest("POST", url, params={"api-version": api_version})
        response = self._pipeline.send_request(request)
        if response.status_code == 404:
            raise NotFoundError(f"{identity} does not exist")
        response.raise_for_status()

        logger.info("Cancel requested", extra={"resource_id": identity.id_string})
        return OperationHandle(
            identity=identity,
            kind=MutationKind.CANCEL,
            status_endpoint=f"{identity.id_string}?api-version={api_version}",
            phase=OperationPhase.CANCELLING.value,
        )

    def operation_status(self, handle: OperationHandle) -> str:
        if handle.native is None:
            raise ValueError(f"Operation handle for {handle.identity} has no poller")
        poller: LROPoller[Any] = handle.native
        return canonical_phase(poller.status()) or OperationPhase.IN_PROGRESS.value
