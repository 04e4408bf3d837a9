import socket
from pathlib import Path

import pytest

from bastionctl.cli import EXIT_CONFIG, EXIT_ERROR, build_parser, main, watch_overrides
from bastionctl.provisioning import DEFAULT_AVAILABILITY_ZONE

pytestmark = [pytest.mark.unit]


class TestParser:
    def test_watch_flags_become_overrides(self):
        args = build_parser().parse_args([
            "watch", "--cloud", "powervc", "--enable-dhcpd", "--dhcp-interface", "env2",
            "--port", "9000",
        ])
        overrides = watch_overrides(args)
        assert overrides["watch"]["cloud"] == "powervc"
        assert overrides["watch"]["domain_name"] is None
        assert overrides["dhcp"]["enabled"] is True
        assert overrides["dhcp"]["interface"] == "env2"
        assert overrides["server"] == {"port": 9000}

    def test_unset_dhcpd_flag_does_not_override(self):
        args = build_parser().parse_args(["watch"])
        assert watch_overrides(args)["dhcp"]["enabled"] is None

    def test_create_bastion_defaults(self):
        args = build_parser().parse_args([
            "create-bastion", "--cloud", "powervc", "--bastion-name", "mycluster",
            "--flavor-name", "medium", "--image-name", "rhel9", "--network-name", "vlan1",
        ])
        assert args.availability_zone == DEFAULT_AVAILABILITY_ZONE
        assert args.enable_haproxy
        assert args.server_ip is None

    def test_create_bastion_without_haproxy(self):
        args = build_parser().parse_args([
            "create-bastion", "--cloud", "c", "--bastion-name", "b", "--flavor-name", "f",
            "--image-name", "i", "--network-name", "n", "--no-enable-haproxy",
        ])
        assert not args.enable_haproxy

    def test_send_metadata_needs_one_action(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["send-metadata", "--server-ip", "10.0.0.2"])
        with pytest.raises(SystemExit):
            build_parser().parse_args([
                "send-metadata", "--server-ip", "10.0.0.2",
                "--create", "a.json", "--delete", "b.json",
            ])


class TestMain:
    def test_missing_config_file(self, tmp_path: Path):
        code = main(["--config", str(tmp_path / "missing.toml"), "check-alive", "--server-ip", "x"])
        assert code == EXIT_CONFIG

    def test_bad_log_level(self, tmp_path: Path):
        config = tmp_path / "bastionctl.toml"
        config.write_text('[logging]\nlevel = "chatty"\n')
        assert main(["--config", str(config), "check-alive", "--server-ip", "x"]) == EXIT_CONFIG

    def test_check_alive_without_server(self, tmp_path: Path, capsys: pytest.CaptureFixture):
        config = tmp_path / "bastionctl.toml"
        config.write_text("[logging]\nconsole = false\n")
        code = main(["--config", str(config), "check-alive", "--server-ip", "127.0.0.1",
                     "--port", "1"])
        assert code == EXIT_ERROR
        assert capsys.readouterr().out.strip() == "not responding"

    def test_watch_without_required_settings(self, tmp_path: Path):
        config = tmp_path / "bastionctl.toml"
        config.write_text("[logging]\nconsole = false\n")
        assert main(["--config", str(config), "watch"]) == EXIT_CONFIG


class TestWatchFailures:
    @pytest.fixture
    def watch_args(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("IBMCLOUD_API_KEY", raising=False)
        (tmp_path / "metadata").mkdir()
        config = tmp_path / "bastionctl.toml"
        config.write_text('[logging]\nconsole = false\n[server]\nhost = "127.0.0.1"\n')

        def build(cloud: str, port: int) -> list[str]:
            return [
                "--config", str(config), "watch",
                "--cloud", cloud, "--domain-name", "example.com",
                "--metadata-root", str(tmp_path / "metadata"),
                "--bastion-username", "cloud-user", "--installer-key", "/keys/installer",
                "--port", str(port),
            ]

        return build

    def test_unknown_cloud_exits_with_config_status(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, watch_args,
    ):
        clouds = tmp_path / "clouds.yaml"
        clouds.write_text("clouds: {}\n")
        monkeypatch.setenv("OS_CLIENT_CONFIG_FILE", str(clouds))
        assert main(watch_args("nosuch", 0)) == EXIT_CONFIG

    def test_port_in_use_exits_with_error_status(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, watch_args,
    ):
        clouds = tmp_path / "clouds.yaml"
        clouds.write_text(
            "clouds:\n"
            "  powervc:\n"
            "    auth:\n"
            "      auth_url: http://127.0.0.1:1/v3\n"
            "      username: admin\n"
            "      password: secret\n"
            "      project_name: ibm-default\n"
        )
        monkeypatch.setenv("OS_CLIENT_CONFIG_FILE", str(clouds))
        with socket.socket() as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen()
            port = taken.getsockname()[1]
            assert main(watch_args("powervc", port)) == EXIT_ERROR
