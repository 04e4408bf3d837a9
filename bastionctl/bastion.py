"""Bastion records derived from installer ``metadata.json`` files.

Each cluster being installed drops ``<root>/<infraID>/metadata.json``; the
record built from it tells the synthesizers which bastion fronts which
cluster, and is refreshed against the provider every changed cycle.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from bastionctl.exceptions import TypeMismatchError
from bastionctl.providers.types import Machine

METADATA_FILENAME = "metadata.json"

log = logger.bind(component="bastion")


@dataclass(frozen=True, slots=True)
class ClusterMetadata:
    """The subset of installer metadata this tool relies on.

    ``raw`` keeps the document as received so it is written back unchanged.
    """

    cluster_name: str
    cluster_id: str
    infra_id: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, raw: Any) -> ClusterMetadata:
        if not isinstance(raw, dict):
            raise TypeMismatchError("Metadata", "object", raw)
        values: dict[str, str] = {}
        for key in ("clusterName", "clusterID", "infraID"):
            value = raw.get(key, "")
            if not isinstance(value, str):
                raise TypeMismatchError(f"Metadata.{key}", "string", value)
            values[key] = value
        if not values["infraID"]:
            raise TypeMismatchError("Metadata.infraID", "non-empty string", values["infraID"])
        return cls(
            cluster_name=values["clusterName"],
            cluster_id=values["clusterID"],
            infra_id=values["infraID"],
            raw=dict(raw),
        )

    @classmethod
    def read(cls, path: Path) -> ClusterMetadata:
        return cls.from_dict(json.loads(path.read_text()))

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.raw,
            "clusterName": self.cluster_name,
            "clusterID": self.cluster_id,
            "infraID": self.infra_id,
        }


@dataclass(slots=True)
class BastionRecord:
    metadata_path: Path
    username: str
    installer_key_path: str
    valid: bool = False
    cluster_name: str = ""
    infra_id: str = ""
    ip_address: str = ""
    member_count: int = 0


def scan_metadata(
    root: Path,
    username: str,
    installer_key_path: str,
    known: Iterable[BastionRecord] = (),
) -> list[BastionRecord]:
    """Return ``known`` plus a fresh record for every newly found metadata file."""
    records = list(known)
    seen = {r.metadata_path for r in records}
    if not root.is_dir():
        log.warning("Metadata root {root} does not exist", root=root)
        return records

    for path in sorted(root.rglob(METADATA_FILENAME)):
        if path in seen:
            continue
        log.info("Discovered cluster metadata {path}", path=path)
        records.append(BastionRecord(path, username, installer_key_path))
    return records


def refresh_record(record: BastionRecord, machines: list[Machine]) -> bool:
    """Re-derive ``record`` from its metadata file and the current machines.

    The record is invalid until every step succeeds; on failure the old
    field values stay in place but are not used.
    """
    record.valid = False

    if not record.metadata_path.is_file():
        log.debug("Metadata {path} vanished", path=record.metadata_path)
        return False
    try:
        metadata = ClusterMetadata.read(record.metadata_path)
    except (OSError, ValueError, TypeMismatchError) as e:
        log.warning("Unreadable metadata {path}: {error}", path=record.metadata_path, error=e)
        return False

    bastion = next((m for m in machines if m.name == metadata.cluster_name), None)
    if bastion is None:
        log.debug("No server named {name} yet", name=metadata.cluster_name)
        return False
    if not bastion.ip_address:
        log.debug("Server {name} has no IP address yet", name=bastion.name)
        return False

    prefix = metadata.infra_id.lower()
    record.cluster_name = bastion.name
    record.infra_id = metadata.infra_id
    record.ip_address = bastion.ip_address
    record.member_count = sum(1 for m in machines if m.name.lower().startswith(prefix))
    record.valid = True
    return True


def refresh_records(records: Iterable[BastionRecord], machines: list[Machine]) -> int:
    return sum(refresh_record(r, machines) for r in records)
