"""Tests for ModeCoordinator against a recording panel."""

from unittest.mock import patch

import pytest
import requests

import wingman_core
from wingman_core import (
    AppMode,
    ConnectivityChecker,
    ConnectivityStatus,
    ModeCoordinator,
    PanelState,
    SettingsStore,
)

from conftest import ScriptedChecker

PASS = ConnectivityStatus.PASS
FAIL = ConnectivityStatus.FAIL


def make(defaults, panel, *statuses):
    checker = ScriptedChecker(*statuses)
    return ModeCoordinator(SettingsStore(defaults), panel, checker), checker


class TestStartup:
    def test_pass_goes_online(self, defaults, panel):
        coordinator, checker = make(defaults, panel, PASS)
        assert coordinator.start() is AppMode.ONLINE
        assert coordinator.mode is AppMode.ONLINE
        assert panel.mode is AppMode.ONLINE
        assert checker.calls == 1

    def test_fail_goes_degraded(self, defaults, panel):
        coordinator, _ = make(defaults, panel, FAIL)
        assert coordinator.start() is AppMode.DEGRADED
        assert panel.mode is AppMode.DEGRADED

    def test_degraded_closes_panel(self, defaults, panel):
        coordinator, _ = make(defaults, panel, FAIL)
        panel.visible = True
        coordinator.start()
        assert panel.visible is False

    def test_online_leaves_panel_alone(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        coordinator.start()
        assert "hide" not in panel.calls

    def test_wake_handler_registered_after_initial_mode(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        coordinator.start()
        assert panel.wake_handler == coordinator.on_wake
        assert panel.calls.index(("set_app_mode", AppMode.ONLINE)) < \
            panel.calls.index("set_on_wake_up_handler")

    def test_menu_installed_before_check(self, defaults, panel):
        order = []

        class RecordingChecker(ScriptedChecker):
            def check(self):
                order.append("check")
                return super().check()

        coordinator = ModeCoordinator(SettingsStore(defaults), panel, RecordingChecker(PASS))

        coordinator.start(install_menu=lambda c: order.append("menu"))
        assert order == ["menu", "check"]

    def test_menu_failure_does_not_abort(self, defaults, panel, caplog):
        coordinator, _ = make(defaults, panel, PASS)

        def broken_menu(_coordinator):
            raise RuntimeError("no status bar")

        with caplog.at_level("ERROR", logger="wingman_core"):
            mode = coordinator.start(install_menu=broken_menu)

        assert mode is AppMode.ONLINE
        assert panel.wake_handler is not None
        assert "Error creating menu bar item" in caplog.text

    def test_listeners_hear_mode(self, defaults, panel):
        coordinator, _ = make(defaults, panel, FAIL)
        heard = []
        coordinator.add_listener(heard.append)
        coordinator.start()
        assert heard == [AppMode.DEGRADED]


class TestWake:
    def test_wake_checks_again_and_reshows(self, defaults, panel):
        coordinator, checker = make(defaults, panel, FAIL, PASS)
        coordinator.start()
        panel.calls.clear()

        panel.wake_handler()

        assert checker.calls == 2
        assert coordinator.mode is AppMode.ONLINE
        assert panel.calls == [("set_app_mode", AppMode.ONLINE), "create_window", "show"]

    def test_wake_into_degraded(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS, FAIL)
        coordinator.start()
        panel.calls.clear()

        panel.wake_handler()

        assert coordinator.mode is AppMode.DEGRADED
        assert panel.calls == ["hide", ("set_app_mode", AppMode.DEGRADED),
                               "create_window", "show"]
        assert panel.visible is True

    def test_wake_with_dispatch_checks_in_background_then_rebuilds(self, defaults, panel):
        queued = []
        checker = ScriptedChecker(FAIL, PASS)
        coordinator = ModeCoordinator(SettingsStore(defaults), panel, checker,
                                      dispatch=lambda fn, *args: queued.append((fn, args)))
        coordinator.start()
        panel.calls.clear()

        panel.wake_handler()

        assert checker.calls == 2
        assert panel.calls == []
        assert coordinator.mode is AppMode.DEGRADED

        fn, args = queued.pop()
        fn(*args)

        assert coordinator.mode is AppMode.ONLINE
        assert panel.calls == [("set_app_mode", AppMode.ONLINE), "create_window", "show"]
        assert panel.visible is True

    def test_startup_check_stays_blocking_with_dispatch(self, defaults, panel):
        queued = []
        coordinator = ModeCoordinator(SettingsStore(defaults), panel, ScriptedChecker(PASS),
                                      dispatch=lambda fn, *args: queued.append(fn))
        assert coordinator.start() is AppMode.ONLINE
        assert queued == []

    def test_wake_with_status_skips_the_check(self, defaults, panel):
        coordinator, checker = make(defaults, panel, PASS)
        coordinator.wake_with(FAIL)
        assert checker.calls == 0
        assert panel.calls == ["hide", ("set_app_mode", AppMode.DEGRADED),
                               "create_window", "show"]

    def test_apply_status_without_check(self, defaults, panel):
        coordinator, checker = make(defaults, panel, FAIL)
        coordinator.start()
        coordinator.apply_status(PASS)
        assert coordinator.mode is AppMode.ONLINE
        assert checker.calls == 1


class TestPanelDelegation:
    def test_open(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        coordinator.open()
        assert panel.calls == ["create_window", "show"]
        assert panel.visible

    def test_close(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        panel.visible = True
        coordinator.close()
        assert not panel.visible

    @pytest.mark.parametrize("visible,pinned", [
        (False, False), (True, False), (False, True), (True, True),
    ])
    def test_query_state(self, defaults, panel, visible, pinned):
        coordinator, _ = make(defaults, panel, PASS)
        panel.visible, panel.pinned = visible, pinned
        assert coordinator.query_state() == PanelState(is_open=visible, is_pinned=pinned)

    def test_toggle_closes_open_unpinned_panel(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        panel.visible = True
        coordinator.toggle()
        assert panel.calls == ["hide"]

    def test_toggle_keeps_pinned_panel_up(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        panel.visible, panel.pinned = True, True
        coordinator.toggle()
        assert panel.calls == ["create_window", "show"]

    def test_toggle_opens_hidden_panel(self, defaults, panel):
        coordinator, _ = make(defaults, panel, PASS)
        coordinator.toggle()
        assert panel.visible


def test_cold_start_without_config_or_network(defaults, panel, tmp_path, monkeypatch):
    """No config file and an unreachable web app: Degraded, defaults in place, no error."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(wingman_core, "resource_dir", lambda: tmp_path / "missing")

    settings = SettingsStore(defaults)
    coordinator = ModeCoordinator(settings, panel, ConnectivityChecker())

    with patch("wingman_core.requests.get",
               side_effect=requests.exceptions.ConnectionError("refused")) as get:
        mode = coordinator.start()

    get.assert_called_once_with("http://localhost:3000", timeout=5, stream=True)
    assert mode is AppMode.DEGRADED
    assert panel.mode is AppMode.DEGRADED
    assert settings.start_at_login is False
    assert defaults.values == {"startAtLogin": False}
