"""IBM Cloud Internet Services DNS client.

Implements the DnsProvider protocol for one public domain. The CIS instance
and zone serving the domain are discovered on first use: the global catalog
yields the ``internet-svcs`` service id, the resource controller lists its
instances, and each instance's zones are searched for the domain.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict
from urllib.parse import parse_qs, quote, urlparse

from loguru import logger

from bastionctl.exceptions import NotFoundError
from bastionctl.infra.http import Auth, HttpClient, IamAuth
from bastionctl.protocols import DnsRecord, RecordType

GLOBAL_CATALOG_URL = "https://globalcatalog.cloud.ibm.com/api/v1"
RESOURCE_CONTROLLER_URL = "https://resource-controller.cloud.ibm.com"
CIS_URL = "https://api.cis.cloud.ibm.com"

CIS_SERVICE_NAME = "internet-svcs"
INSTANCES_PAGE_SIZE = 64


class CisRecord(TypedDict):
    id: str
    type: str
    name: str
    content: str
    ttl: NotRequired[int]


class CisEnvelope(TypedDict):
    success: bool
    result: Any
    errors: NotRequired[list[dict[str, Any]]]


@dataclass(frozen=True, slots=True)
class Endpoints:
    catalog: str = GLOBAL_CATALOG_URL
    resource_controller: str = RESOURCE_CONTROLLER_URL
    cis: str = CIS_URL


@dataclass(frozen=True, slots=True)
class Zone:
    crn: str
    zone_id: str

    @property
    def records_path(self) -> str:
        return f"/v1/{quote(self.crn, safe='')}/zones/{self.zone_id}/dns_records"


def _next_start(next_url: str | None) -> str | None:
    if not next_url:
        return None
    values = parse_qs(urlparse(next_url).query).get("start")
    return values[0] if values else None


def _to_record(raw: CisRecord) -> DnsRecord:
    return DnsRecord(id=raw["id"], type=raw["type"], name=raw["name"], content=raw["content"])


class CisDnsProvider:
    """DNS records of ``domain_name`` in IBM Cloud Internet Services.

    Example:
        async with CisDnsProvider(api_key, "example.com") as dns:
            records = await dns.list_records("api.mycluster.example.com")
    """

    def __init__(
        self,
        api_key: str,
        domain_name: str,
        *,
        endpoints: Endpoints | None = None,
        auth: Auth | None = None,
    ) -> None:
        self._domain = domain_name
        urls = endpoints or Endpoints()
        auth = auth or IamAuth(api_key)
        headers = {"Content-Type": "application/json"}
        self._catalog = HttpClient(urls.catalog, auth, default_headers=headers)
        self._controller = HttpClient(urls.resource_controller, auth, default_headers=headers)
        self._cis = HttpClient(urls.cis, auth, default_headers=headers)
        self._zone: Zone | None = None
        self._lock = asyncio.Lock()
        self._log = logger.bind(component="cis")

    async def __aenter__(self) -> CisDnsProvider:
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    async def close(self) -> None:
        for http in (self._catalog, self._controller, self._cis):
            await http.close()

    # ─── Zone discovery ──────────────────────────────────────────────

    async def _service_id(self) -> str:
        response = await self._catalog.get(
            "/", params={"q": CIS_SERVICE_NAME, "include": "*"}, response_type=dict,
        )
        for entry in (response.data or {}).get("resources", []):
            if entry.get("name") == CIS_SERVICE_NAME:
                return entry["id"]
        raise NotFoundError("catalog service", CIS_SERVICE_NAME)

    async def _zones(self, crn: str) -> list[dict[str, Any]]:
        response = await self._cis.get(
            f"/v1/{quote(crn, safe='')}/zones", response_type=dict,
        )
        return list((response.data or {}).get("result") or [])

    async def _discover(self) -> Zone:
        service_id = await self._service_id()
        params: dict[str, Any] = {"resource_id": service_id, "limit": INSTANCES_PAGE_SIZE}
        while True:
            response = await self._controller.get(
                "/v2/resource_instances", params=params, response_type=dict,
            )
            page = response.data or {}
            for instance in page.get("resources", []):
                crn = instance["crn"]
                for zone in await self._zones(crn):
                    if zone.get("name") == self._domain:
                        self._log.info(
                            "Domain {domain} served by zone {zone}",
                            domain=self._domain, zone=zone["id"],
                        )
                        return Zone(crn=crn, zone_id=zone["id"])
            start = _next_start(page.get("next_url"))
            if start is None:
                raise NotFoundError("CIS zone", self._domain)
            params = {**params, "start": start}

    async def zone(self) -> Zone:
        async with self._lock:
            if self._zone is None:
                self._zone = await self._discover()
            return self._zone

    # ─── DnsProvider ─────────────────────────────────────────────────

    async def list_records(self, name: str) -> Sequence[DnsRecord]:
        zone = await self.zone()
        response = await self._cis.get(
            zone.records_path, params={"name": name}, response_type=dict,
        )
        envelope: CisEnvelope = response.data or {"success": True, "result": []}
        return [_to_record(r) for r in envelope.get("result") or []]

    async def create_record(
        self, type: RecordType, name: str, content: str, ttl: int,
    ) -> DnsRecord:
        zone = await self.zone()
        response = await self._cis.post(
            zone.records_path,
            json={"type": type, "name": name, "content": content, "ttl": ttl},
            response_type=dict,
        )
        envelope: CisEnvelope = response.data
        return _to_record(envelope["result"])

    async def delete_record(self, record_id: str) -> bool:
        zone = await self.zone()
        response = await self._cis.delete(
            f"{zone.records_path}/{record_id}", response_type=dict,
        )
        envelope: CisEnvelope = response.data or {"success": False, "result": None}
        if not envelope.get("success"):
            self._log.warning(
                "Delete of {id} unsuccessful: {errors}",
                id=record_id, errors=envelope.get("errors"),
            )
        return bool(envelope.get("success"))
