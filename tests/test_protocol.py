from __future__ import annotations

import json

import pytest

from bastionctl.exceptions import ProtocolViolation, TypeMismatchError
from bastionctl.server.protocol import (
    CheckAliveCommand,
    CreateBastionCommand,
    MetadataCommand,
    Reply,
    create_bastion_frame,
    decode_frame,
    metadata_frame,
    parse_command,
)

pytestmark = [pytest.mark.unit]


class TestDecodeFrame:
    def test_valid_frame(self):
        assert decode_frame(b'{"Command": "check-alive"}\n') == {"Command": "check-alive"}

    @pytest.mark.parametrize(
        "line",
        [b"not json\n", b"[1, 2]\n", b'{"Metadata": {}}\n', b'{"Command": 3}\n', b"\xff\xfe\n"],
    )
    def test_violations(self, line: bytes):
        with pytest.raises(ProtocolViolation):
            decode_frame(line)


class TestParseCommand:
    def test_create_metadata(self):
        command = parse_command({"Command": "create-metadata", "Metadata": {"infraID": "x"}})
        assert command == MetadataCommand(create=True, metadata={"infraID": "x"})

    def test_delete_metadata(self):
        command = parse_command({"Command": "delete-metadata", "Metadata": {"infraID": "x"}})
        assert isinstance(command, MetadataCommand)
        assert not command.create

    def test_create_bastion(self):
        frame = decode_frame(create_bastion_frame("powervc", "mycluster", "example.com"))
        assert parse_command(frame) == CreateBastionCommand("powervc", "mycluster", "example.com")

    def test_check_alive(self):
        assert parse_command({"Command": "check-alive"}) == CheckAliveCommand()

    def test_unknown_command(self):
        with pytest.raises(ProtocolViolation):
            parse_command({"Command": "reboot"})

    def test_bastion_field_of_wrong_type(self):
        with pytest.raises(TypeMismatchError):
            parse_command({"Command": "create-bastion", "cloudName": 1})


class TestEncoding:
    def test_frames_are_single_lines(self):
        frame = metadata_frame({"infraID": "infra1", "nested": {"a": [1, 2]}}, create=False)
        assert frame.endswith(b"\n")
        assert frame.count(b"\n") == 1
        assert json.loads(frame)["Command"] == "delete-metadata"

    def test_reply(self):
        assert json.loads(Reply("bastion-created").encode()) == {
            "Command": "bastion-created", "Result": None,
        }
        assert json.loads(Reply("bastion-created", "boom").encode())["Result"] == "boom"
