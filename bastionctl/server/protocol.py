"""Wire format of the command channel: one JSON object per line."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from bastionctl.exceptions import ProtocolViolation, TypeMismatchError

DEFAULT_PORT = 8080
MAX_LINE_BYTES = 1 << 20

CREATE_METADATA = "create-metadata"
DELETE_METADATA = "delete-metadata"
CREATE_BASTION = "create-bastion"
CHECK_ALIVE = "check-alive"
BASTION_CREATED = "bastion-created"
ALIVE = "alive"


@dataclass(frozen=True, slots=True)
class MetadataCommand:
    create: bool
    metadata: Any


@dataclass(frozen=True, slots=True)
class CreateBastionCommand:
    cloud_name: str
    server_name: str
    domain_name: str


@dataclass(frozen=True, slots=True)
class CheckAliveCommand:
    pass


type Command = MetadataCommand | CreateBastionCommand | CheckAliveCommand


@dataclass(frozen=True, slots=True)
class Reply:
    command: str
    result: str | None = None

    def encode(self) -> bytes:
        return encode_frame({"Command": self.command, "Result": self.result})


def encode_frame(frame: dict[str, Any]) -> bytes:
    return json.dumps(frame, separators=(",", ":")).encode() + b"\n"


def _string_field(frame: dict[str, Any], key: str) -> str:
    value = frame.get(key, "")
    if not isinstance(value, str):
        raise TypeMismatchError(key, "string", value)
    return value


def decode_frame(line: bytes) -> dict[str, Any]:
    """Parse the header of one frame.

    Raises:
        ProtocolViolation: Not JSON, not an object, or no string ``Command``.
    """
    try:
        frame = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolViolation(f"Unparsable frame: {e}") from e
    if not isinstance(frame, dict):
        raise ProtocolViolation(f"Frame must be an object, got {type(frame).__name__}")
    if not isinstance(frame.get("Command"), str):
        raise ProtocolViolation("Frame has no Command")
    return frame


def parse_command(frame: dict[str, Any]) -> Command:
    """Map a decoded frame to its command.

    Raises:
        ProtocolViolation: Unknown command name.
        TypeMismatchError: Known command whose fields have the wrong type.
    """
    match frame["Command"]:
        case "create-metadata" | "delete-metadata" as name:
            return MetadataCommand(create=name == CREATE_METADATA, metadata=frame.get("Metadata"))
        case "create-bastion":
            return CreateBastionCommand(
                cloud_name=_string_field(frame, "cloudName"),
                server_name=_string_field(frame, "serverName"),
                domain_name=_string_field(frame, "domainName"),
            )
        case "check-alive":
            return CheckAliveCommand()
        case other:
            raise ProtocolViolation(f"Unknown command {other!r}")


def metadata_frame(metadata: dict[str, Any], *, create: bool) -> bytes:
    command = CREATE_METADATA if create else DELETE_METADATA
    return encode_frame({"Command": command, "Metadata": metadata})


def create_bastion_frame(cloud_name: str, server_name: str, domain_name: str) -> bytes:
    return encode_frame({
        "Command": CREATE_BASTION,
        "cloudName": cloud_name,
        "serverName": server_name,
        "domainName": domain_name,
    })


def check_alive_frame() -> bytes:
    return encode_frame({"Command": CHECK_ALIVE})
