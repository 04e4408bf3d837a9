"""Concurrent line-JSON command server.

Each accepted connection runs in its own task and reads frames one at a
time. Every command body is submitted as a separate task that the
connection awaits, optionally with a timeout, before reading the next frame.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import Counter
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from bastionctl.bastion import METADATA_FILENAME, ClusterMetadata
from bastionctl.exceptions import (
    BastionSetupError,
    DeadlineExceeded,
    ProtocolViolation,
    TypeMismatchError,
)
from bastionctl.retry import Deadline
from bastionctl.server.protocol import (
    ALIVE,
    BASTION_CREATED,
    CREATE_BASTION,
    DEFAULT_PORT,
    MAX_LINE_BYTES,
    CheckAliveCommand,
    Command,
    CreateBastionCommand,
    MetadataCommand,
    Reply,
    decode_frame,
    parse_command,
)

BASTION_SETUP_TIMEOUT = 10 * 60
ERROR_BACKLOG = 256


class BastionSetup(Protocol):
    async def setup(
        self, cloud: str, server_name: str, domain_name: str, deadline: Deadline,
    ) -> str: ...


class MetadataStore:
    """``<root>/<infraID>/metadata.json`` with per-InfraID serialization."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    def _directory(self, infra_id: str) -> Path:
        if infra_id in (".", "..") or Path(infra_id).name != infra_id:
            raise TypeMismatchError("Metadata.infraID", "plain directory name", infra_id)
        return self.root / infra_id

    def _create(self, metadata: ClusterMetadata) -> Path:
        directory = self._directory(metadata.infra_id)
        directory.mkdir(parents=True)
        path = directory / METADATA_FILENAME
        path.write_text(json.dumps(metadata.to_dict()))
        return path

    def _delete(self, metadata: ClusterMetadata) -> Path:
        directory = self._directory(metadata.infra_id)
        path = directory / METADATA_FILENAME
        path.unlink()
        directory.rmdir()
        return path

    async def apply(self, raw: Any, *, create: bool) -> Path:
        metadata = ClusterMetadata.from_dict(raw)
        infra_id = metadata.infra_id
        lock = self._locks.setdefault(infra_id, asyncio.Lock())
        self._users[infra_id] += 1
        try:
            async with lock:
                operation = self._create if create else self._delete
                path = await asyncio.to_thread(operation, metadata)
        finally:
            # Last user out drops the lock.
            self._users[infra_id] -= 1
            if not self._users[infra_id]:
                del self._users[infra_id]
                del self._locks[infra_id]
        logger.bind(component="server", infra_id=metadata.infra_id).info(
            "{action} {path}", action="Created" if create else "Deleted", path=path,
        )
        return path


class CommandServer:
    """Accepts command connections until closed.

    Failures that do not reach a peer (metadata errors, protocol violations)
    are logged and put on ``errors``, which keeps only the most recent
    ``error_backlog`` of them.

    Example:
        async with CommandServer(Path("/srv/clusters"), provisioner) as server:
            await server.serve_forever()
    """

    def __init__(
        self,
        metadata_root: Path,
        provisioner: BastionSetup | None = None,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        bastion_timeout: float = BASTION_SETUP_TIMEOUT,
        error_backlog: int = ERROR_BACKLOG,
    ) -> None:
        self._store = MetadataStore(metadata_root)
        self._provisioner = provisioner
        self._host = host
        self._port = port
        self._bastion_timeout = bastion_timeout
        self._server: asyncio.Server | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.errors: asyncio.Queue[Exception] = asyncio.Queue(maxsize=error_backlog)
        self._log = logger.bind(component="server")

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port, limit=MAX_LINE_BYTES,
        )
        self._log.info("Listening for commands on {host}:{port}", host=self._host, port=self.port)

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def close(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if server is not None:
            await server.wait_closed()

    async def __aenter__(self) -> CommandServer:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # ─── Connections ─────────────────────────────────────────────────

    def _record(self, error: Exception) -> None:
        if self.errors.full():
            self.errors.get_nowait()
        self.errors.put_nowait(error)

    async def _submit(
        self, work: Coroutine[Any, Any, Any], timeout: float | None = None,
    ) -> Exception | None:
        """Run ``work`` as its own task and wait for it; return its error, if any."""
        task = asyncio.create_task(work)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        try:
            await asyncio.wait_for(task, timeout)
        except TimeoutError as e:
            if task.cancelled():
                return DeadlineExceeded(f"Command did not finish within {timeout:.0f}s")
            return e
        except Exception as e:  # noqa: BLE001
            return e
        return None

    async def _reply(self, writer: asyncio.StreamWriter, reply: Reply) -> None:
        writer.write(reply.encode())
        await writer.drain()

    async def _create_bastion(self, command: CreateBastionCommand) -> str:
        if self._provisioner is None:
            raise BastionSetupError("Bastion provisioning is not configured on this server")
        return await self._provisioner.setup(
            command.cloud_name,
            command.server_name,
            command.domain_name,
            Deadline.after(self._bastion_timeout),
        )

    async def _dispatch(self, command: Command, writer: asyncio.StreamWriter) -> None:
        match command:
            case MetadataCommand(create=create, metadata=raw):
                error = await self._submit(self._store.apply(raw, create=create))
                if error is not None:
                    self._log.error("Metadata command failed: {error}", error=error)
                    self._record(error)
            case CreateBastionCommand(server_name=name):
                self._log.info("Setting up bastion {name}", name=name)
                error = await self._submit(self._create_bastion(command), self._bastion_timeout)
                if error is not None:
                    self._log.error("Bastion {name} setup failed: {error}", name=name, error=error)
                await self._reply(writer, Reply(BASTION_CREATED, None if error is None else str(error)))
            case CheckAliveCommand():
                await self._reply(writer, Reply(ALIVE))

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            try:
                line = await reader.readline()
            except ValueError as e:
                raise ProtocolViolation(f"Frame exceeds {MAX_LINE_BYTES} bytes") from e
            if not line:
                return
            if not line.strip():
                continue

            frame = decode_frame(line)
            try:
                command = parse_command(frame)
            except TypeMismatchError as e:
                self._log.error("Malformed {command} frame: {error}", command=frame["Command"], error=e)
                self._record(e)
                if frame["Command"] == CREATE_BASTION:
                    await self._reply(writer, Reply(BASTION_CREATED, str(e)))
                continue

            await self._dispatch(command, writer)

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        peer = writer.get_extra_info("peername")
        log = self._log.bind(peer=peer)
        log.debug("Connection opened")
        try:
            await self._serve(reader, writer)
        except ProtocolViolation as e:
            log.error("Closing connection: {error}", error=e)
            self._record(e)
        except ConnectionError as e:
            log.warning("Connection lost: {error}", error=e)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            if task is not None:
                self._tasks.discard(task)
            log.debug("Connection closed")
