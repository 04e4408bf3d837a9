"""Keystone v3 password authentication."""

from __future__ import annotations

import asyncio
import ssl
from typing import Any

import aiohttp
from loguru import logger

from bastionctl.exceptions import NotFoundError
from bastionctl.infra.http import HttpError
from bastionctl.providers.openstack.clouds import CloudProfile
from bastionctl.providers.openstack.types import CatalogEntry, TokenResponse


def ssl_context(profile: CloudProfile) -> ssl.SSLContext | bool:
    if not profile.verify:
        return False
    if profile.cacert:
        return ssl.create_default_context(cafile=profile.cacert)
    return True


def _tokens_url(auth_url: str) -> str:
    base = auth_url.rstrip("/")
    if not base.endswith("/v3"):
        base = f"{base}/v3"
    return f"{base}/auth/tokens"


def _auth_body(profile: CloudProfile) -> dict[str, Any]:
    project: dict[str, Any] = (
        {"id": profile.project_id}
        if profile.project_id
        else {"name": profile.project_name, "domain": {"name": profile.project_domain_name}}
    )
    return {
        "auth": {
            "identity": {
                "methods": ["password"],
                "password": {
                    "user": {
                        "name": profile.username,
                        "domain": {"name": profile.user_domain_name},
                        "password": profile.password,
                    },
                },
            },
            "scope": {"project": project},
        },
    }


class KeystoneAuth:
    """Scoped Keystone token plus the service catalog that came with it."""

    def __init__(self, profile: CloudProfile) -> None:
        self._profile = profile
        self._token: str | None = None
        self._catalog: list[CatalogEntry] = []
        self._lock = asyncio.Lock()
        self._log = logger.bind(component="keystone", cloud=profile.name)

    async def _authenticate(self) -> None:
        self._log.debug("Requesting Keystone token")
        timeout = aiohttp.ClientTimeout(total=30)
        async with aiohttp.ClientSession(timeout=timeout) as session, session.post(
            _tokens_url(self._profile.auth_url),
            json=_auth_body(self._profile),
            ssl=ssl_context(self._profile),
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                self._log.error(
                    "Keystone auth failed: status={status} body={body}",
                    status=resp.status, body=body[:200],
                )
                raise HttpError(status=resp.status, body=body)
            data: TokenResponse = await resp.json()
            self._token = resp.headers["X-Subject-Token"]
            self._catalog = data["token"].get("catalog", [])

    async def _ensure(self) -> str:
        async with self._lock:
            if self._token is None:
                await self._authenticate()
            assert self._token is not None
            return self._token

    async def headers(self) -> dict[str, str]:
        token = await self._ensure()
        return {"X-Auth-Token": token, "Accept": "application/json"}

    async def on_401(self) -> None:
        async with self._lock:
            self._token = None

    async def endpoint(self, service_type: str) -> str:
        """URL of ``service_type`` for the profile's interface and region."""
        await self._ensure()
        for entry in self._catalog:
            if entry.get("type") != service_type:
                continue
            for ep in entry.get("endpoints", []):
                if ep.get("interface") != self._profile.interface:
                    continue
                region = ep.get("region_id") or ep.get("region") or ""
                if self._profile.region_name and region != self._profile.region_name:
                    continue
                return ep["url"].rstrip("/")
        raise NotFoundError("endpoint", service_type)
