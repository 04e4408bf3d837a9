"""Cluster membership and its change between two polls."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from bastionctl.providers.types import Machine

ROLE_SUBSTRINGS = ("bootstrap", "master", "worker")

type MemberSet = frozenset[str]


def has_role(name: str) -> bool:
    return any(role in name for role in ROLE_SUBSTRINGS)


def member_set(machines: Iterable[Machine]) -> MemberSet:
    """Names of role machines that already have an IP address."""
    return frozenset(m.name for m in machines if has_role(m.name) and m.ip_address)


@dataclass(frozen=True, slots=True)
class MembershipDiff:
    added: MemberSet = frozenset()
    removed: MemberSet = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


def diff(previous: MemberSet, current: MemberSet) -> MembershipDiff:
    return MembershipDiff(added=current - previous, removed=previous - current)
