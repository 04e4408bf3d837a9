from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from bastionctl.config import WatchConfig
from bastionctl.controller import Controller
from bastionctl.dns.reconciler import DnsPolicy, DnsReconciler
from bastionctl.exceptions import DnsProviderError, RemoteCommandError
from bastionctl.infra.http import HttpError
from bastionctl.providers.adapter import ProviderQueryAdapter
from bastionctl.synth.push import HAPROXY_CFG_PATH, ConfigPusher

from .fakes import FakeDirectory, FakeDns, FakeExecutor, server

pytestmark = [pytest.mark.unit]

HAPROXY_TARGET = f"10.0.0.2:{HAPROXY_CFG_PATH}"


@pytest.fixture
def config(tmp_path: Path) -> WatchConfig:
    root = tmp_path / "metadata"
    (root / "infra1").mkdir(parents=True)
    (root / "infra1" / "metadata.json").write_text(
        json.dumps({"clusterName": "mycluster", "clusterID": "1234", "infraID": "infra1"})
    )
    return WatchConfig(
        cloud="powervc",
        domain_name="example.com",
        metadata_root=root,
        bastion_username="cloud-user",
        installer_key="/keys/installer",
        api_key="key",
        poll_interval=0.01,
        cycle_timeout=10,
        scratch_dir=tmp_path / "scratch",
    )


@pytest.fixture
def cluster(directory: FakeDirectory) -> FakeDirectory:
    directory.resources["servers"] = [
        server("mycluster", "10.0.0.2"),
        server("infra1-master-0", "10.0.0.5"),
        server("infra1-worker-0", "10.0.0.6"),
    ]
    return directory


@pytest.fixture
def controller(
    config: WatchConfig, cluster: FakeDirectory, executor: FakeExecutor, dns: FakeDns,
) -> Controller:
    return Controller(
        config,
        ProviderQueryAdapter(cluster),
        ConfigPusher(executor, config.scratch_dir),
        DnsPolicy(DnsReconciler(dns), config.domain_name),
    )


def dns_names(dns: FakeDns) -> set[str]:
    return {r.name for r in dns.records.values()}


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_first_cycle_configures_everything(
        self, controller: Controller, executor: FakeExecutor, dns: FakeDns,
    ):
        report = await controller.run_cycle()

        assert report.committed
        assert report.valid_bastions == 1
        assert report.delta.added == {"infra1-master-0", "infra1-worker-0"}
        haproxy = executor.copied_text[HAPROXY_TARGET]
        assert "server infra1-worker-0 10.0.0.6:443 check" in haproxy
        assert "server infra1-master-0 10.0.0.5:6443 check" in haproxy
        assert dns_names(dns) == {
            "api.mycluster.example.com",
            "api-int.mycluster.example.com",
            "*.apps.mycluster.example.com",
            "infra1-master-0.example.com",
            "infra1-worker-0.example.com",
        }
        assert controller.state.known_members == report.members
        assert controller.state.dns.initialized

    @pytest.mark.asyncio
    async def test_unchanged_membership_is_idle(
        self, controller: Controller, executor: FakeExecutor, dns: FakeDns,
    ):
        await controller.run_cycle()
        copies, ops = len(executor.copies), len(dns.log)

        report = await controller.run_cycle()

        assert report.idle
        assert len(executor.copies) == copies
        assert len(dns.log) == ops

    @pytest.mark.asyncio
    async def test_removed_worker_is_dropped(
        self, controller: Controller, cluster: FakeDirectory, executor: FakeExecutor, dns: FakeDns,
    ):
        await controller.run_cycle()
        cluster.resources["servers"] = cluster.resources["servers"][:2]

        report = await controller.run_cycle()

        assert report.delta.removed == {"infra1-worker-0"}
        assert "infra1-worker-0" not in executor.copied_text[HAPROXY_TARGET]
        assert "infra1-worker-0.example.com" not in dns_names(dns)

    @pytest.mark.asyncio
    async def test_failed_push_keeps_diff_for_next_cycle(
        self, controller: Controller, executor: FakeExecutor, dns: FakeDns,
    ):
        executor.fail_copy = RemoteCommandError(("scp",), 1, "no route to host")

        report = await controller.run_cycle()

        assert isinstance(report.config_error, RemoteCommandError)
        assert report.dns_error is None
        assert not report.committed
        assert controller.state.known_members == frozenset()
        assert "infra1-worker-0.example.com" in dns_names(dns)

        executor.fail_copy = None
        dns_ops = len(dns.log)
        retry = await controller.run_cycle()
        assert retry.delta.added == {"infra1-master-0", "infra1-worker-0"}
        assert retry.committed
        assert HAPROXY_TARGET in executor.copied_text
        assert len(dns.log) == dns_ops

    @pytest.mark.asyncio
    async def test_failed_dns_keeps_diff_for_next_cycle(
        self, controller: Controller, executor: FakeExecutor, dns: FakeDns,
    ):
        dns.fail_next = [HttpError(status=400, body="bad request")]

        report = await controller.run_cycle()

        assert isinstance(report.dns_error, HttpError)
        assert report.config_error is None
        assert HAPROXY_TARGET in executor.copied_text
        assert not report.committed

        copies = len(executor.copies)
        retry = await controller.run_cycle()
        assert retry.committed
        assert "api.mycluster.example.com" in dns_names(dns)
        assert len(executor.copies) == copies
        assert controller.state.known_members == retry.members

    @pytest.mark.asyncio
    async def test_persistent_dns_failure_pushes_config_once(
        self, controller: Controller, executor: FakeExecutor, dns: FakeDns,
    ):
        dns.fail_next = [DnsProviderError("zone not found") for _ in range(5)]

        reports = [await controller.run_cycle() for _ in range(5)]

        assert all(isinstance(r.dns_error, DnsProviderError) for r in reports)
        assert [r.config_error for r in reports] == [None] * 5
        haproxy_pushes = [c for c in executor.copies if c[2] == HAPROXY_CFG_PATH]
        assert len(haproxy_pushes) == 1
        assert controller.state.config_members == reports[0].members
        assert controller.state.dns_members == frozenset()

    @pytest.mark.asyncio
    async def test_listing_failure_propagates(
        self, controller: Controller, cluster: FakeDirectory,
    ):
        cluster.failures = [HttpError(status=403, body="forbidden")]
        with pytest.raises(HttpError):
            await controller.run_cycle()

    @pytest.mark.asyncio
    async def test_without_dns_only_pushes_config(
        self, config: WatchConfig, cluster: FakeDirectory, executor: FakeExecutor,
    ):
        controller = Controller(
            config, ProviderQueryAdapter(cluster), ConfigPusher(executor, config.scratch_dir),
        )
        report = await controller.run_cycle()
        assert report.committed
        assert HAPROXY_TARGET in executor.copied_text

    @pytest.mark.asyncio
    async def test_metadata_added_later_is_picked_up(
        self, config: WatchConfig, controller: Controller, cluster: FakeDirectory,
        executor: FakeExecutor,
    ):
        await controller.run_cycle()
        (config.metadata_root / "infra2").mkdir()
        (config.metadata_root / "infra2" / "metadata.json").write_text(
            json.dumps({"clusterName": "second", "clusterID": "5", "infraID": "infra2"})
        )
        cluster.resources["servers"] += [
            server("second", "10.0.1.2"),
            server("infra2-master-0", "10.0.1.5"),
        ]

        report = await controller.run_cycle()

        assert report.valid_bastions == 2
        assert f"10.0.1.2:{HAPROXY_CFG_PATH}" in executor.copied_text


class TestRun:
    @pytest.mark.asyncio
    async def test_stops_when_event_set(self, controller: Controller, executor: FakeExecutor):
        stop = asyncio.Event()
        task = asyncio.create_task(controller.run(stop))
        async with asyncio.timeout(5):
            while not executor.copies:
                await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, 5)

    @pytest.mark.asyncio
    async def test_cycle_errors_do_not_end_the_loop(
        self, controller: Controller, cluster: FakeDirectory, executor: FakeExecutor,
    ):
        cluster.failures = [HttpError(status=403, body="forbidden")]
        stop = asyncio.Event()
        task = asyncio.create_task(controller.run(stop))
        async with asyncio.timeout(5):
            while not executor.copies:
                await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, 5)
        assert controller.state.known_members
