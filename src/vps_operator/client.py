"""Compute API client.

ComputeAPI is the remote contract the orchestrator depends on. VpsClient
implements it over HTTP with azure-core's pipeline; tests substitute an
in-memory double.

Errors follow the azure-core taxonomy:
- ResourceNotFoundError for 404 responses
- ResourceExistsError for 409 responses
- HttpResponseError for any other failed response
- ServiceRequestError / ServiceResponseError for transport failures
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from azure.core import PipelineClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    map_error,
)
from azure.core.pipeline.policies import (
    AzureKeyCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .models import NetworkAttachment, ServerState

logger = logging.getLogger(__name__)

USER_AGENT = "vps-operator/0.1"

ERROR_MAP = {
    404: ResourceNotFoundError,
    409: ResourceExistsError,
}


class ComputeAPI(Protocol):
    """Remote operations on servers, their NICs and floating IPs.

    Attachments are addressed by topology key (network ID). Every method
    raises an azure-core exception on failure.
    """

    def create(self, fields: dict[str, Any], attachments: list[NetworkAttachment]) -> ServerState:
        ...

    def read(self, server_id: str) -> ServerState:
        ...

    def update(self, server_id: str, changed: dict[str, Any]) -> ServerState:
        ...

    def delete(self, server_id: str) -> None:
        ...

    def list(self) -> list[ServerState]:
        ...

    def attach(self, server_id: str, attachment: NetworkAttachment) -> NetworkAttachment:
        ...

    def detach(self, server_id: str, network_id: str) -> None:
        ...

    def update_attachment(self, server_id: str, network_id: str, changed: dict[str, Any]) -> None:
        ...

    def associate(self, floating_ip_id: str, server_id: str, network_id: str) -> None:
        ...

    def disassociate(self, floating_ip_id: str) -> None:
        ...


# =============================================================================
# Representation mapping
# =============================================================================


def attachment_from_api(nic: dict[str, Any]) -> NetworkAttachment:
    """Map a NIC payload to an attachment."""
    addresses = nic.get("addresses") or []
    floating = nic.get("floating_ip") or {}
    return NetworkAttachment(
        network_id=nic["network_id"],
        ip_address=addresses[0] if addresses else None,
        primary=nic.get("primary"),
        security_group_ids=list(nic.get("sg_ids") or []),
        floating_ip_id=floating.get("id"),
        floating_ip=floating.get("address"),
    )


def server_from_api(server: dict[str, Any], nics: list[dict[str, Any]]) -> ServerState:
    """Map a server payload and its NICs to an observed state.

    ip_addresses is the sorted union of private and public addresses.
    """
    addresses = set(server.get("private_ips") or []) | set(server.get("public_ips") or [])
    return ServerState(
        id=server["id"],
        name=server["name"],
        flavor_id=server.get("flavor_id", ""),
        image_id=server.get("image_id", ""),
        description=server.get("description") or None,
        keypair=server.get("keypair") or None,
        status=server.get("status"),
        created_at=server.get("created_at"),
        ip_addresses=sorted(addresses),
        network_attachments=[attachment_from_api(nic) for nic in nics],
    )


def attachment_to_api(attachment: NetworkAttachment) -> dict[str, Any]:
    """Map an attachment to a NIC create payload.

    A fixed address is only requested when the caller set one.
    """
    return {
        "network_id": attachment.network_id,
        "sg_ids": list(attachment.security_group_ids),
        "fixed_ip": attachment.ip_address if attachment.is_explicit("ip_address") else "",
    }


# =============================================================================
# HTTP implementation
# =============================================================================


class VpsClient:
    """Compute API client over HTTP.

    Retries of transient transport errors are left to azure-core's
    RetryPolicy; the client itself never retries.
    """

    def __init__(self, endpoint: str, project_id: str, token: str) -> None:
        self._project_id = project_id
        self._client = PipelineClient(
            base_url=endpoint.rstrip("/"),
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(),
                AzureKeyCredentialPolicy(
                    AzureKeyCredential(token), "Authorization", prefix="Bearer"
                ),
                NetworkTraceLoggingPolicy(),
            ],
        )

    def close(self) -> None:
        self._client.close()

    def _path(self, *parts: str) -> str:
        return "/".join(["", "api", "v1", "project", self._project_id, *parts])

    def _send(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> Any:
        request = HttpRequest(method, path, json=body)
        response = self._client.send_request(request)

        if response.status_code >= 400:
            map_error(status_code=response.status_code, response=response, error_map=ERROR_MAP)
            raise HttpResponseError(response=response)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _nics(self, server_id: str) -> list[dict[str, Any]]:
        return self._send("GET", self._path("servers", server_id, "nics")) or []

    def _nic_id(self, server_id: str, network_id: str) -> str:
        for nic in self._nics(server_id):
            if nic.get("network_id") == network_id:
                return nic["id"]
        raise ResourceNotFoundError(
            f"Server {server_id} has no interface on network {network_id}"
        )

    def create(self, fields: dict[str, Any], attachments: list[NetworkAttachment]) -> ServerState:
        body = {
            **fields,
            "nics": [attachment_to_api(att) for att in attachments],
        }
        server = self._send("POST", self._path("servers"), body)
        logger.info("Server create requested", extra={"server_id": server["id"]})
        return server_from_api(server, self._nics(server["id"]))

    def read(self, server_id: str) -> ServerState:
        server = self._send("GET", self._path("servers", server_id))
        return server_from_api(server, self._nics(server_id))

    def update(self, server_id: str, changed: dict[str, Any]) -> ServerState:
        server = self._send("PUT", self._path("servers", server_id), changed)
        return server_from_api(server, self._nics(server_id))

    def delete(self, server_id: str) -> None:
        self._send("DELETE", self._path("servers", server_id))

    def list(self) -> list[ServerState]:
        servers = self._send("GET", self._path("servers")) or []
        return [server_from_api(server, self._nics(server["id"])) for server in servers]

    def attach(self, server_id: str, attachment: NetworkAttachment) -> NetworkAttachment:
        nic = self._send(
            "POST", self._path("servers", server_id, "nics"), attachment_to_api(attachment)
        )
        return attachment_from_api(nic)

    def detach(self, server_id: str, network_id: str) -> None:
        nic_id = self._nic_id(server_id, network_id)
        self._send("DELETE", self._path("servers", server_id, "nics", nic_id))

    def update_attachment(self, server_id: str, network_id: str, changed: dict[str, Any]) -> None:
        nic_id = self._nic_id(server_id, network_id)
        body: dict[str, Any] = {}
        if "security_group_ids" in changed:
            body["sg_ids"] = list(changed["security_group_ids"])
        if "ip_address" in changed:
            body["fixed_ip"] = changed["ip_address"] or ""
        self._send("PUT", self._path("servers", server_id, "nics", nic_id), body)

    def associate(self, floating_ip_id: str, server_id: str, network_id: str) -> None:
        nic_id = self._nic_id(server_id, network_id)
        self._send(
            "POST",
            self._path("floatingips", floating_ip_id, "associate"),
            {"server_id": server_id, "nic_id": nic_id},
        )

    def disassociate(self, floating_ip_id: str) -> None:
        self._send("POST", self._path("floatingips", floating_ip_id, "disassociate"))
