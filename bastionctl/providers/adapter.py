"""Query adapter over a ProviderDirectory.

Every enumeration pages through the directory until the cursor runs out and
is retried as a whole with the listing backoff. Lookups by name are a linear
scan of the full listing.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger

from bastionctl.exceptions import BastionCtlError, NotFoundError, TransientError
from bastionctl.protocols import ProviderDirectory, ResourceKind, ServerRequest
from bastionctl.providers.types import (
    Flavor,
    Image,
    Keypair,
    Machine,
    Network,
    decode_flavor,
    decode_image,
    decode_keypair,
    decode_machine,
    decode_network,
)
from bastionctl.retry import API, LISTING, Deadline, retry_until


class MachineNotReady(TransientError):  # noqa: N818
    """Machine exists but is not ACTIVE and running yet."""


class ProviderQueryAdapter:
    """Typed, deadline-bounded queries against one provider directory.

    Example:
        adapter = ProviderQueryAdapter(OpenStackDirectory())
        machines = await adapter.list_machines("powervc", Deadline.after(86400))
    """

    def __init__(self, directory: ProviderDirectory) -> None:
        self._directory = directory
        self._log = logger.bind(component="provider")

    async def _list_raw(self, cloud: str, kind: ResourceKind) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        marker: str | None = None
        while True:
            page = await self._directory.list_page(cloud, kind, marker)
            items.extend(page.items)
            if page.marker is None or not page.items:
                return items
            marker = page.marker

    async def _list[R](
        self,
        cloud: str,
        kind: ResourceKind,
        decode: Callable[[dict[str, Any]], R],
        deadline: Deadline,
    ) -> list[R]:
        raw = await retry_until(deadline, lambda: self._list_raw(cloud, kind), policy=LISTING)
        decoded: list[R] = []
        for item in raw:
            try:
                decoded.append(decode(item))
            except BastionCtlError as e:
                self._log.warning("Skipping malformed {kind} entry: {error}", kind=kind, error=e)
        self._log.debug("Listed {n} {kind} in {cloud}", n=len(decoded), kind=kind, cloud=cloud)
        return decoded

    async def list_machines(self, cloud: str, deadline: Deadline) -> list[Machine]:
        return await self._list(cloud, "servers", decode_machine, deadline)

    async def list_flavors(self, cloud: str, deadline: Deadline) -> list[Flavor]:
        return await self._list(cloud, "flavors", decode_flavor, deadline)

    async def list_images(self, cloud: str, deadline: Deadline) -> list[Image]:
        return await self._list(cloud, "images", decode_image, deadline)

    async def list_networks(self, cloud: str, deadline: Deadline) -> list[Network]:
        return await self._list(cloud, "networks", decode_network, deadline)

    async def list_keypairs(self, cloud: str, deadline: Deadline) -> list[Keypair]:
        return await self._list(cloud, "keypairs", decode_keypair, deadline)

    # ─── Lookups ─────────────────────────────────────────────────────

    async def find_machine(self, cloud: str, name: str, deadline: Deadline) -> Machine:
        return _by_name(await self.list_machines(cloud, deadline), "server", name)

    async def find_flavor(self, cloud: str, name: str, deadline: Deadline) -> Flavor:
        return _by_name(await self.list_flavors(cloud, deadline), "flavor", name)

    async def find_image(self, cloud: str, name: str, deadline: Deadline) -> Image:
        return _by_name(await self.list_images(cloud, deadline), "image", name)

    async def find_network(self, cloud: str, name: str, deadline: Deadline) -> Network:
        return _by_name(await self.list_networks(cloud, deadline), "network", name)

    async def find_keypair(self, cloud: str, name: str, deadline: Deadline) -> Keypair:
        return _by_name(await self.list_keypairs(cloud, deadline), "keypair", name)

    # ─── Creation ────────────────────────────────────────────────────

    async def wait_for_machine(self, cloud: str, name: str, deadline: Deadline) -> Machine:
        """Poll until ``name`` is ACTIVE with power state RUNNING."""

        async def poll() -> Machine:
            try:
                machine = await self.find_machine(cloud, name, deadline)
            except NotFoundError as e:
                raise MachineNotReady(f"{name} is not listed yet") from e
            if not machine.is_running:
                raise MachineNotReady(
                    f"{name}: status={machine.status} power_state={machine.power_state}"
                )
            return machine

        machine = await retry_until(deadline, poll, policy=API)
        self._log.info("Machine {name} is running at {ip}", name=name, ip=machine.ip_address)
        return machine

    async def create_machine(
        self,
        cloud: str,
        *,
        name: str,
        flavor: str,
        image: str,
        network: str,
        keypair: str | None,
        availability_zone: str | None,
        deadline: Deadline,
    ) -> Machine:
        """Resolve the named resources, create the server and wait for it."""
        found_flavor = await self.find_flavor(cloud, flavor, deadline)
        found_image = await self.find_image(cloud, image, deadline)
        found_network = await self.find_network(cloud, network, deadline)
        key_name = None
        if keypair:
            key_name = (await self.find_keypair(cloud, keypair, deadline)).name

        request = ServerRequest(
            name=name,
            flavor_id=found_flavor.id,
            image_id=found_image.id,
            network_id=found_network.id,
            key_name=key_name,
            availability_zone=availability_zone,
        )
        server_id = await self._directory.create_server(cloud, request)
        self._log.info("Created server {name} ({id})", name=name, id=server_id)
        return await self.wait_for_machine(cloud, name, deadline)


def _by_name[R: (Machine, Flavor, Image, Network, Keypair)](
    items: list[R], kind: str, name: str,
) -> R:
    for item in items:
        if item.name == name:
            return item
    raise NotFoundError(kind, name)
