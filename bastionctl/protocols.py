"""Protocols for the external collaborators.

The reconciliation core only sees these seams; concrete implementations
live in ``bastionctl.providers.openstack``, ``bastionctl.dns.cis`` and
``bastionctl.infra.ssh``, and tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

type ResourceKind = Literal["servers", "flavors", "images", "networks", "keypairs"]
type RecordType = Literal["A", "CNAME"]


@dataclass(frozen=True, slots=True)
class Page:
    """One page of a provider listing.

    ``marker`` is the cursor for the next page, ``None`` once exhausted.
    """

    items: tuple[dict[str, Any], ...]
    marker: str | None = None


@dataclass(frozen=True, slots=True)
class ServerRequest:
    name: str
    flavor_id: str
    image_id: str
    network_id: str
    key_name: str | None = None
    availability_zone: str | None = None
    user_data: str | None = None


@dataclass(frozen=True, slots=True)
class DnsRecord:
    id: str
    type: str
    name: str
    content: str


@dataclass(frozen=True, slots=True)
class RemoteResult:
    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class ProviderDirectory(Protocol):
    async def list_page(
        self, cloud: str, kind: ResourceKind, marker: str | None
    ) -> Page: ...

    async def create_server(self, cloud: str, request: ServerRequest) -> str: ...


@runtime_checkable
class DnsProvider(Protocol):
    async def list_records(self, name: str) -> Sequence[DnsRecord]: ...

    async def create_record(
        self, type: RecordType, name: str, content: str, ttl: int
    ) -> DnsRecord: ...

    async def delete_record(self, record_id: str) -> bool: ...


@runtime_checkable
class RemoteExecutor(Protocol):
    async def run(self, host: str, key_path: str, argv: Sequence[str]) -> RemoteResult: ...

    async def copy(self, host: str, key_path: str, local: str, remote: str) -> None: ...
