import pytest

from anti_cheat import FULLSCREEN_WARNING, HIDDEN_WARNING, LEAVE_PROMPT, AntiCheatMonitor
from api_client import ApiError
from exam_attempt import AttemptController


@pytest.fixture
def running(fake_api, timers, clock):
    ctl = AttemptController(fake_api, timer_factory=timers, clock=clock)
    ctl.start("e1")
    return ctl, AntiCheatMonitor(fake_api, ctl)


def test_hidden_tab_sends_heartbeat_and_warns(running, fake_api):
    ctl, mon = running
    reaction = mon.on_visibility_change(visible=False, fullscreen=True)

    assert reaction.warning == HIDDEN_WARNING
    assert reaction.heartbeat_sent
    assert ("heartbeat_exam", "e1", False, True) in fake_api.calls
    assert mon.hidden_count == 1


def test_visible_again_sends_heartbeat_without_warning(running, fake_api):
    _, mon = running
    reaction = mon.on_visibility_change(visible=True, fullscreen=False)
    assert reaction.warning is None
    assert reaction.heartbeat_sent
    assert mon.hidden_count == 0


def test_fullscreen_exit_warns_and_requests_reentry(running, fake_api):
    _, mon = running
    reaction = mon.handle({"type": "fullscreenchange", "fullscreen": False})
    assert reaction.warning == FULLSCREEN_WARNING
    assert reaction.request_fullscreen
    assert mon.fullscreen_exits == 1
    assert "heartbeat_exam" not in fake_api.names()

    assert mon.handle({"type": "fullscreenchange", "fullscreen": True}).warning is None


def test_leave_prompt_only_while_active(running):
    ctl, mon = running
    assert mon.on_before_unload().confirm_leave == LEAVE_PROMPT
    ctl.submit()
    assert mon.on_before_unload().confirm_leave is None


def test_heartbeat_failure_is_swallowed(running, fake_api):
    _, mon = running
    fake_api.fail["heartbeat_exam"] = ApiError("Backend unreachable", code="network")
    reaction = mon.handle({"type": "visibilitychange", "visible": False, "fullscreen": False})
    assert reaction.warning == HIDDEN_WARNING
    assert not reaction.heartbeat_sent


def test_no_signals_without_attempt(fake_api, timers, clock):
    mon = AntiCheatMonitor(fake_api, AttemptController(fake_api, timer_factory=timers, clock=clock))
    assert mon.on_visibility_change(False, False).to_dict() == {
        "warning": None, "request_fullscreen": False, "confirm_leave": None, "heartbeat_sent": False,
    }
    assert not mon.pulse(True, True).heartbeat_sent
    assert fake_api.calls == []


def test_pulse_and_unknown_event(running, fake_api):
    _, mon = running
    assert mon.handle({"type": "pulse", "visible": True, "fullscreen": True}).heartbeat_sent
    with pytest.raises(ValueError):
        mon.handle({"type": "copy"})
