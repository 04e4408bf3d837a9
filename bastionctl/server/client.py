"""Sending side of the command channel."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any

from loguru import logger

from bastionctl.bastion import ClusterMetadata
from bastionctl.exceptions import BastionSetupError, ProtocolViolation
from bastionctl.server.protocol import (
    ALIVE,
    BASTION_CREATED,
    DEFAULT_PORT,
    MAX_LINE_BYTES,
    check_alive_frame,
    create_bastion_frame,
    decode_frame,
    metadata_frame,
)


class CommandClient:
    """One short-lived connection per request.

    Example:
        client = CommandClient("10.0.0.2")
        await client.send_metadata(Path("metadata.json"), create=True)
        ip = await client.request_bastion("powervc", "mycluster", "example.com")
    """

    def __init__(
        self, host: str, port: int = DEFAULT_PORT, *, connect_timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self._connect_timeout = connect_timeout
        self._log = logger.bind(component="client", host=host)

    async def _exchange(
        self, frame: bytes, *, expect_reply: bool, timeout: float | None = None,
    ) -> dict[str, Any] | None:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port, limit=MAX_LINE_BYTES),
            self._connect_timeout,
        )
        try:
            writer.write(frame)
            await writer.drain()
            if not expect_reply:
                return None
            line = await asyncio.wait_for(reader.readline(), timeout)
            if not line:
                raise ProtocolViolation("Server closed the connection without replying")
            return decode_frame(line)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def send_metadata(self, path: Path, *, create: bool) -> None:
        metadata = ClusterMetadata.read(path)
        self._log.info(
            "Sending {action} for {infra_id}",
            action="create-metadata" if create else "delete-metadata",
            infra_id=metadata.infra_id,
        )
        await self._exchange(metadata_frame(metadata.to_dict(), create=create), expect_reply=False)

    async def request_bastion(
        self, cloud_name: str, server_name: str, domain_name: str, *, timeout: float | None = None,
    ) -> None:
        """Ask the server to set up ``server_name``; raise if it reports a failure."""
        reply = await self._exchange(
            create_bastion_frame(cloud_name, server_name, domain_name),
            expect_reply=True,
            timeout=timeout,
        )
        assert reply is not None
        if reply.get("Command") != BASTION_CREATED:
            raise ProtocolViolation(f"Unexpected reply {reply.get('Command')!r}")
        if reply.get("Result") is not None:
            raise BastionSetupError(str(reply["Result"]))
        self._log.info("Bastion {name} set up remotely", name=server_name)

    async def check_alive(self, *, timeout: float = 10.0) -> bool:
        try:
            reply = await self._exchange(check_alive_frame(), expect_reply=True, timeout=timeout)
        except (OSError, TimeoutError, ProtocolViolation) as e:
            self._log.debug("Liveness check failed: {error}", error=e)
            return False
        return reply is not None and reply.get("Command") == ALIVE
