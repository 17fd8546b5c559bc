from __future__ import annotations

import pytest

from conftest import FakeFactory, settle
from wagate.backend import base as ev
from wagate.errors import BackendFault, NotFound, NotReady, OperationFailed, TimedOut
from wagate.session.models import Session, SessionState
from wagate.session.supervisor import ConnectionSupervisor


def make_supervisor(config, factory, on_message=None) -> ConnectionSupervisor:
    session = Session(id="main")
    sup = ConnectionSupervisor(session, config, factory, on_message=on_message)
    session.supervisor = sup
    return sup


@pytest.mark.asyncio
async def test_start_reaches_ready(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    assert sup.session.state is SessionState.INITIALIZING

    await settle()

    assert sup.session.state is SessionState.READY
    assert sup.session.info["pushname"] == "Test Bot"
    assert sup.backend is factory.last
    assert factory.last.options.auth_path == config.auth_root() / "session-main"
    await sup.stop()


@pytest.mark.asyncio
async def test_burst_of_disconnects_restarts_exactly_once(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()
    first = factory.last

    for _ in range(3):
        first.emit(ev.DISCONNECTED, "NAVIGATION")

    assert sup.health.restart_scheduled is True
    assert sup.session.state is SessionState.DISCONNECTED

    await settle(0.1)

    assert len(factory.created) == 2
    assert first.calls.count("destroy") == 1
    assert sup.health.restart_count == 1
    assert sup.health.restart_scheduled is False
    assert sup.session.state is SessionState.READY
    await sup.stop()


@pytest.mark.asyncio
async def test_events_from_a_replaced_backend_are_ignored(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()
    old = factory.last

    assert sup.schedule_restart("test") is True
    await settle(0.1)
    assert sup.backend is not old

    # Listeners were removed before teardown, and a direct call is a no-op too.
    old.emit(ev.DISCONNECTED, "late event")
    assert sup.health.restart_scheduled is False
    sup._on_disconnected(old, "late event")
    assert sup.health.restart_scheduled is False
    assert sup.session.state is SessionState.READY
    await sup.stop()


@pytest.mark.asyncio
async def test_construction_failure_enters_restart_path(config, factory) -> None:
    factory.construct_errors.append(RuntimeError("chromium missing"))
    sup = make_supervisor(config, factory)
    sup.start()
    await settle(0.1)

    assert "chromium missing" in sup.health.last_failure_reason
    assert sup.health.restart_count == 1
    assert sup.session.state is SessionState.READY
    await sup.stop()


@pytest.mark.asyncio
async def test_fault_state_change_is_treated_as_disconnect(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    factory.last.emit(ev.CHANGE_STATE, "OPENING")
    assert sup.health.restart_scheduled is False

    factory.last.emit(ev.CHANGE_STATE, "CONFLICT")
    assert sup.health.restart_scheduled is True
    await sup.stop()


@pytest.mark.asyncio
async def test_auth_failure_does_not_restart(config) -> None:
    factory = FakeFactory(auto_ready=False)
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    factory.last.emit(ev.AUTH_FAILURE, "bad credentials")

    assert sup.session.state is SessionState.DISCONNECTED
    assert sup.health.restart_scheduled is False
    assert "bad credentials" in sup.health.last_failure_reason
    await sup.stop()


@pytest.mark.asyncio
async def test_qr_challenge_is_exposed_until_ready(config) -> None:
    factory = FakeFactory(auto_ready=False)
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    factory.last.emit(ev.QR, "2@pairing-code")
    challenge = sup.session.pending_auth_challenge
    assert sup.session.state is SessionState.AWAITING_AUTH
    assert challenge.code == "2@pairing-code"
    assert challenge.image.startswith("data:image/png;base64,")

    factory.last.emit(ev.AUTHENTICATED)
    assert sup.session.pending_auth_challenge is None
    factory.last.emit(ev.READY)
    assert sup.session.state is SessionState.READY
    await sup.stop()


@pytest.mark.asyncio
async def test_watchdog_probe_failure_degrades_and_restarts(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()
    first = factory.last
    first.state = "UNPAIRED_IDLE"

    assert await sup.probe() is False
    assert sup.session.state is SessionState.DEGRADED
    assert sup.health.consecutive_failures == 1
    assert sup.health.restart_scheduled is True

    await settle(0.1)
    assert factory.last is not first
    assert sup.session.state is SessionState.READY
    assert sup.health.consecutive_failures == 0
    await sup.stop()


@pytest.mark.asyncio
async def test_watchdog_probe_timeout_counts_as_failure(config) -> None:
    factory = FakeFactory(hang={"get_state"})
    config.timeouts.status_probe = 0.01
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    assert await sup.probe() is False
    assert sup.session.state is SessionState.DEGRADED
    assert "timed out" in sup.health.last_failure_reason
    await sup.stop()


@pytest.mark.asyncio
async def test_healthy_probe_records_heartbeat(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()
    sup.health.last_heartbeat_ok_at = None

    assert await sup.probe() is True
    assert sup.health.last_heartbeat_ok_at is not None
    await sup.stop()


def test_restart_delay_backs_off_up_to_cap(config, factory) -> None:
    sup = make_supervisor(config, factory)
    assert sup.restart_delay() == pytest.approx(0.01)
    sup.health.restarts_since_ready = 2
    assert sup.restart_delay() == pytest.approx(0.04)
    sup.health.restarts_since_ready = 10
    assert sup.restart_delay() == pytest.approx(0.08)


@pytest.mark.asyncio
async def test_commands_require_ready(config) -> None:
    factory = FakeFactory(auto_ready=False)
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    with pytest.raises(NotReady) as exc_info:
        await sup.send_text("123@c.us", "hello")
    assert exc_info.value.details == {"status": "initializing"}
    await sup.stop()


@pytest.mark.asyncio
async def test_send_text_returns_message_id(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    message_id = await sup.send_text("123@c.us", "hello", quoted_message_id="q1")

    assert message_id == "true_123@c.us_MSG1"
    assert factory.last.sent[0]["quoted"] == "q1"
    await sup.stop()


@pytest.mark.asyncio
async def test_hung_command_times_out_and_session_stays_ready(config) -> None:
    factory = FakeFactory(hang={"send_text"})
    config.timeouts.send_text = 0.01
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    with pytest.raises(TimedOut):
        await sup.send_text("123@c.us", "hello")
    assert sup.session.state is SessionState.READY
    assert sup.health.restart_scheduled is False
    await sup.stop()


@pytest.mark.asyncio
async def test_backend_fault_during_command_schedules_restart(config) -> None:
    factory = FakeFactory(fail={"send_text": BackendFault("Target closed")})
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    with pytest.raises(OperationFailed):
        await sup.send_text("123@c.us", "hello")
    assert sup.health.restart_scheduled is True
    assert "Target closed" in sup.health.last_failure_reason
    await sup.stop()


@pytest.mark.asyncio
async def test_forward_unknown_message_is_not_found(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    with pytest.raises(NotFound):
        await sup.forward_message("missing", "456@c.us")
    assert factory.last.forwarded == []
    await sup.stop()


@pytest.mark.asyncio
async def test_stop_cancels_pending_restart(config, factory) -> None:
    config.watchdog.restart_delay_seconds = 0.05
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    factory.last.emit(ev.DISCONNECTED, "gone")
    await sup.stop()
    await settle(0.1)

    assert len(factory.created) == 1
    assert sup.session.state is SessionState.DESTROYED
    assert sup.schedule_restart("after stop") is False


@pytest.mark.asyncio
async def test_ready_backend_gets_navigation_restricted_to_web_origin(config, factory) -> None:
    config.backend.restrict_navigation = True
    config.backend.web_url = "https://web.whatsapp.com/"
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    assert sup.session.state is SessionState.READY
    assert factory.last.restricted == ["https://web.whatsapp.com"]
    await sup.stop()


@pytest.mark.asyncio
async def test_navigation_restriction_is_off_when_disabled(config, factory) -> None:
    sup = make_supervisor(config, factory)
    sup.start()
    await settle()

    assert factory.last.restricted == []
    await sup.stop()
