"""OpenStack API response types.

TypedDicts for API responses - no conversion needed.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict


class Endpoint(TypedDict):
    interface: str
    url: str
    region: NotRequired[str]
    region_id: NotRequired[str]


class CatalogEntry(TypedDict):
    type: str
    endpoints: list[Endpoint]
    name: NotRequired[str]


class Token(TypedDict):
    catalog: NotRequired[list[CatalogEntry]]
    expires_at: NotRequired[str]


class TokenResponse(TypedDict):
    token: Token


class Link(TypedDict):
    rel: str
    href: str


class PortResponse(TypedDict):
    id: str
    name: NotRequired[str]
    network_id: NotRequired[str]


class ServerCreated(TypedDict):
    id: str
    adminPass: NotRequired[str]
