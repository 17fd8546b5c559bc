from __future__ import annotations

import asyncio

import pytest

from conftest import FakeFactory, settle
from wagate.cron.janitor import GroupJanitor
from wagate.cron.periodic import PeriodicTask
from wagate.main import Wagate
from wagate.session.registry import SessionRegistry


@pytest.mark.asyncio
async def test_periodic_task_runs_until_stopped() -> None:
    runs = []

    async def tick():
        runs.append(1)
        if len(runs) == 2:
            raise RuntimeError("errors do not stop the loop")

    task = PeriodicTask("tick", 0.01, tick)
    task.start()
    await asyncio.sleep(0.08)
    task.stop()
    count = len(runs)
    await asyncio.sleep(0.03)

    assert count >= 3
    assert len(runs) == count
    assert task.running is False


@pytest.mark.asyncio
async def test_janitor_clears_groups_and_counts_failures(config) -> None:
    factory = FakeFactory()
    config.maintenance.clear_groups = ["1@g.us", "not-a-group@c.us", "2@g.us"]
    config.maintenance.clear_groups_pause_seconds = 0
    registry = SessionRegistry(config, factory)
    registry.create("main")
    await settle()

    succeeded, failed = await GroupJanitor(config, registry).run_once()

    assert (succeeded, failed) == (2, 1)
    assert factory.last.cleared == ["1@g.us", "2@g.us"]
    await registry.destroy_all()


@pytest.mark.asyncio
async def test_janitor_without_session_reports_failures(config, factory) -> None:
    config.maintenance.clear_groups = ["1@g.us"]
    registry = SessionRegistry(config, factory)

    assert await GroupJanitor(config, registry).run_once() == (0, 1)


def test_janitor_disabled_without_interval(config, factory) -> None:
    config.maintenance.clear_groups = ["1@g.us"]
    janitor = GroupJanitor(config, SessionRegistry(config, factory))
    assert janitor.enabled is False
    config.maintenance.clear_groups_interval_minutes = 60
    assert janitor.enabled is True


@pytest.mark.asyncio
async def test_bootstrap_restores_and_creates_default_session(config, factory) -> None:
    config.sessions.restore_on_startup = True
    (config.auth_root() / "session-alpha").mkdir(parents=True)

    app = Wagate(config, backend_factory=factory)
    await app.bootstrap()
    await settle()

    assert sorted(app.registry.ids()) == ["alpha", "main"]
    assert app.registry.status("main")["ready"] is True

    await app.stop()
    assert len(app.registry) == 0
    assert all(b.destroyed for b in factory.created)
    assert not any(b.logged_out for b in factory.created)
