"""Async REST client implementing ProviderDirectory for OpenStack clouds.

Talks to Nova, Glance and Neutron directly with the shared HttpClient, one
authenticated session per clouds.yaml profile.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Callable
from typing import Any

from loguru import logger

from bastionctl.exceptions import BastionCtlError
from bastionctl.infra.http import HttpClient, HttpError
from bastionctl.protocols import Page, ResourceKind, ServerRequest
from bastionctl.providers.openstack.auth import KeystoneAuth, ssl_context
from bastionctl.providers.openstack.clouds import CloudProfile, load_cloud
from bastionctl.providers.openstack.types import Link, PortResponse, ServerCreated

PAGE_SIZE = 100

_VERSION_SUFFIX = re.compile(r"/v\d+(\.\d+)?$")


class OpenStackError(BastionCtlError):
    """Error from an OpenStack API."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        super().__init__(message)


# service type, path, response key, cursor field
_LISTINGS: dict[ResourceKind, tuple[str, str, str, str]] = {
    "servers": ("compute", "/servers/detail", "servers", "id"),
    "flavors": ("compute", "/flavors/detail", "flavors", "id"),
    "keypairs": ("compute", "/os-keypairs", "keypairs", "name"),
    "images": ("image", "/v2/images", "images", "id"),
    "networks": ("network", "/v2.0/networks", "networks", "id"),
}


def _unversioned(url: str) -> str:
    return _VERSION_SUFFIX.sub("", url)


def _has_next(data: dict[str, Any], key: str) -> bool:
    if data.get("next"):
        return True
    links: list[Link] = data.get(f"{key}_links") or []
    return any(link.get("rel") == "next" for link in links)


def _cursor(item: dict[str, Any], field: str) -> str:
    inner = item.get("keypair", item)
    return str(inner[field])


class _CloudSession:
    def __init__(self, profile: CloudProfile) -> None:
        self.profile = profile
        self.auth = KeystoneAuth(profile)
        self._clients: dict[str, HttpClient] = {}

    async def client(self, service_type: str) -> HttpClient:
        if service_type not in self._clients:
            url = await self.auth.endpoint(service_type)
            if service_type in ("image", "network"):
                url = _unversioned(url)
            self._clients[service_type] = HttpClient(
                url,
                self.auth,
                default_headers={"Content-Type": "application/json"},
                ssl=ssl_context(self.profile),
            )
        return self._clients[service_type]

    async def close(self) -> None:
        for http in self._clients.values():
            await http.close()
        self._clients.clear()


class OpenStackDirectory:
    """ProviderDirectory backed by the OpenStack REST APIs.

    Example:
        async with OpenStackDirectory() as directory:
            page = await directory.list_page("powervc", "servers", None)
    """

    def __init__(
        self,
        profile_loader: Callable[[str], CloudProfile] = load_cloud,
    ) -> None:
        self._load_profile = profile_loader
        self._sessions: dict[str, _CloudSession] = {}

    async def __aenter__(self) -> OpenStackDirectory:
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    async def close(self) -> None:
        for session in self._sessions.values():
            await session.close()
        self._sessions.clear()

    def _session(self, cloud: str) -> _CloudSession:
        if cloud not in self._sessions:
            self._sessions[cloud] = _CloudSession(self._load_profile(cloud))
        return self._sessions[cloud]

    async def _request(
        self,
        cloud: str,
        service_type: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        http = await self._session(cloud).client(service_type)
        try:
            response = await http.request(method, path, json=json, params=params)
        except HttpError as e:
            logger.bind(component="openstack", cloud=cloud).warning(
                "API error {method} {path}: {status}", method=method, path=path, status=e.status,
            )
            raise
        return response.data

    async def list_page(self, cloud: str, kind: ResourceKind, marker: str | None) -> Page:
        service_type, path, key, cursor_field = _LISTINGS[kind]
        params: dict[str, Any] = {"limit": PAGE_SIZE}
        if marker is not None:
            params["marker"] = marker

        data = await self._request(cloud, service_type, "GET", path, params=params) or {}
        items = tuple(data.get(key) or ())
        next_marker = (
            _cursor(items[-1], cursor_field) if items and _has_next(data, key) else None
        )
        return Page(items=items, marker=next_marker)

    async def _create_port(self, cloud: str, name: str, network_id: str) -> str:
        data = await self._request(
            cloud, "network", "POST", "/v2.0/ports",
            json={"port": {"name": f"{name}-port", "network_id": network_id}},
        )
        port: PortResponse = data["port"]
        return port["id"]

    async def create_server(self, cloud: str, request: ServerRequest) -> str:
        """Create a port on the requested network and boot a server on it."""
        port_id = await self._create_port(cloud, request.name, request.network_id)
        server: dict[str, Any] = {
            "name": request.name,
            "flavorRef": request.flavor_id,
            "imageRef": request.image_id,
            "networks": [{"port": port_id}],
        }
        if request.key_name:
            server["key_name"] = request.key_name
        if request.availability_zone:
            server["availability_zone"] = request.availability_zone
        if request.user_data:
            server["user_data"] = base64.b64encode(request.user_data.encode()).decode()

        data = await self._request(cloud, "compute", "POST", "/servers", json={"server": server})
        created: ServerCreated | None = (data or {}).get("server")
        if not created:
            raise OpenStackError(0, f"Server create for {request.name} returned no server")
        return created["id"]
