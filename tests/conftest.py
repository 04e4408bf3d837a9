from __future__ import annotations

import pytest

from .fakes import FakeDirectory, FakeDns, FakeExecutor


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def dns() -> FakeDns:
    return FakeDns()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fast_retry(monkeypatch: pytest.MonkeyPatch):
    """Shrink every backoff policy so retry tests finish quickly."""
    from bastionctl import retry
    from bastionctl.dns import reconciler
    from bastionctl.infra import ssh
    from bastionctl.providers import adapter

    quick = retry.BackoffPolicy(base_delay=0.01)
    for module in (retry, adapter, reconciler, ssh):
        for name in ("PROBE", "API", "LISTING"):
            if hasattr(module, name):
                monkeypatch.setattr(module, name, quick)
    return quick
