"""
Wingman Core
════════════
The platform-neutral half of the Wingman menu bar app: where the web
frontend lives, whether it answers, which preferences are set, and
which mode the panel should be in.

  WingmanWebURL.json  →  AppConfig  →  connectivity check  →  Mode

Nothing in here touches AppKit, so it imports (and tests) anywhere.
The menu bar shell in wingman_menubar.py wires it to rumps and the
WebKit panel.

CONFIG FILE
───────────
  {"wingmanWeb": {"url": "http://localhost:3000"}}

  Looked up in the current directory first, then next to the app's
  bundled resources. Missing or broken → http://localhost:3000.
"""

import enum
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

import requests

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────

CONFIG_FILENAME  = "WingmanWebURL.json"
DEFAULT_WEB_URL  = "http://localhost:3000"
CHECK_TIMEOUT    = 5     # seconds, wall-clock ceiling for the blocking check

START_AT_LOGIN   = "startAtLogin"
DEFAULT_SETTINGS = {
    START_AT_LOGIN: False,
}


# ── Config Loader ────────────────────────────────────────────────

@dataclass(frozen=True)
class AppConfig:
    web_base_url: str


def resource_dir():
    """
    Directory holding bundled resources. Inside a frozen .app that is
    Contents/Resources; when running from source it's this file's folder.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent.parent / "Resources"
    return Path(__file__).resolve().parent


def config_candidates():
    return [
        Path(os.getcwd()) / CONFIG_FILENAME,
        resource_dir() / CONFIG_FILENAME,
    ]


def _read_config_file(path):
    with open(path) as f:
        data = json.load(f)
    url = data["wingmanWeb"]["url"]
    if not isinstance(url, str) or not url.strip():
        raise ValueError(f"wingmanWeb.url must be a non-empty string, got {url!r}")
    return AppConfig(web_base_url=url.strip())


def load_config():
    """
    Resolve the web frontend URL. Never raises: the first existing
    candidate wins, and any read/parse problem falls back to the default.
    Re-reads from disk on every call.
    """
    path = next((p for p in config_candidates() if p.is_file()), None)

    if path is None:
        logger.info("Config file %s not found", CONFIG_FILENAME)
    else:
        try:
            cfg = _read_config_file(path)
            logger.info("Loaded config from %s (url=%s)", path, cfg.web_base_url)
            return cfg
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Error loading config from %s: %s", path, e)

    logger.info("Using default config with %s", DEFAULT_WEB_URL)
    return AppConfig(web_base_url=DEFAULT_WEB_URL)


# ── Connectivity Checker ─────────────────────────────────────────

class ConnectivityStatus(enum.Enum):
    PASS = "pass"
    FAIL = "fail"


class ConnectivityChecker:
    """
    One GET against the web base URL. 200 → PASS, anything else
    (other status, transport error, timeout) → FAIL. No retries.

    The status line decides; the body is never read. The GET runs on
    a worker thread and check() stops waiting for it after self.timeout
    seconds of wall-clock time, however slowly the server answers.
    """

    def __init__(self, config_loader=load_config, timeout=CHECK_TIMEOUT):
        self.config_loader = config_loader
        self.timeout = timeout

    def _fetch_status(self, url, result, done):
        try:
            resp = requests.get(url, timeout=self.timeout, stream=True)
            try:
                result["status_code"] = resp.status_code
            finally:
                resp.close()
        except requests.exceptions.RequestException as e:
            result["error"] = e
        finally:
            done.set()

    def check(self):
        """Blocking check, returns within self.timeout seconds."""
        url = self.config_loader().web_base_url
        result = {}
        done = threading.Event()
        threading.Thread(
            target=self._fetch_status, args=(url, result, done),
            name="wingman-connectivity-get", daemon=True,
        ).start()

        if not done.wait(self.timeout):
            logger.warning("Connectivity test failed: no answer from %s within %ss",
                           url, self.timeout)
            return ConnectivityStatus.FAIL

        error = result.get("error")
        if isinstance(error, requests.exceptions.Timeout):
            logger.warning("Connectivity test failed: %s timed out after %ss",
                           url, self.timeout)
            return ConnectivityStatus.FAIL
        if error is not None:
            logger.warning("Connectivity test failed: %s", error)
            return ConnectivityStatus.FAIL

        status_code = result.get("status_code")
        if status_code == 200:
            logger.info("Connectivity test passed (%s)", url)
            return ConnectivityStatus.PASS

        logger.warning("Connectivity test failed: HTTP %s from %s", status_code, url)
        return ConnectivityStatus.FAIL

    def check_async(self, callback):
        """
        Run check() on a background thread and hand the status to
        callback there. Overlapping calls are independent.
        """
        def run():
            callback(self.check())

        t = threading.Thread(target=run, name="wingman-connectivity", daemon=True)
        t.start()
        return t


# ── Settings Store ───────────────────────────────────────────────

class SettingsStore:
    """
    Named boolean preferences over a key-value backing store with the
    NSUserDefaults interface (objectForKey_, setBool_forKey_,
    synchronize). Recognized keys missing from the store get their
    default on construction.
    """

    def __init__(self, defaults, known=None):
        self.defaults = defaults
        self.known = dict(DEFAULT_SETTINGS if known is None else known)
        for key, value in self.known.items():
            if self.defaults.objectForKey_(key) is None:
                self.defaults.setBool_forKey_(value, key)

    def _check_key(self, key):
        if key not in self.known:
            raise KeyError(f"Unknown setting: {key}")

    def get(self, key):
        self._check_key(key)
        return bool(self.defaults.boolForKey_(key))

    def set(self, key, value):
        self._check_key(key)
        if not isinstance(value, bool):
            raise TypeError(f"Setting {key} takes a bool, got {type(value).__name__}")
        self.defaults.setBool_forKey_(value, key)

    def persist(self):
        self.defaults.synchronize()

    def reset_to_defaults(self):
        for key, value in self.known.items():
            self.defaults.setBool_forKey_(value, key)
        self.persist()
        logger.info("Settings reset to defaults")

    def as_dict(self):
        return {key: self.get(key) for key in self.known}

    @property
    def start_at_login(self):
        return self.get(START_AT_LOGIN)

    @start_at_login.setter
    def start_at_login(self, value):
        self.set(START_AT_LOGIN, value)


# ── Mode Coordinator ─────────────────────────────────────────────

class AppMode(enum.Enum):
    ONLINE   = "online"
    DEGRADED = "degraded"

    @classmethod
    def from_status(cls, status):
        return cls.ONLINE if status is ConnectivityStatus.PASS else cls.DEGRADED


@dataclass(frozen=True)
class PanelState:
    is_open: bool
    is_pinned: bool


class ModeCoordinator:
    """
    Ties the connectivity result to the panel. Holds the current mode
    and references to its collaborators, nothing else: open/close/state
    are straight delegations to the panel.

    The panel is anything with create_window(), show(), hide(),
    is_visible(), is_pinned(), set_app_mode(mode) and
    set_on_wake_up_handler(fn). Call everything here from the UI thread.

    dispatch(fn, *args), when given, schedules fn on the UI thread. With
    it, a wake checks on a background thread and hops back through
    dispatch to rebuild the panel. Without it, a wake blocks.
    """

    def __init__(self, settings, panel, checker=None, dispatch=None):
        self.settings = settings
        self.panel    = panel
        self.checker  = checker or ConnectivityChecker()
        self.dispatch = dispatch
        self.mode     = AppMode.DEGRADED
        self.listeners = []

    def start(self, install_menu=None):
        """
        Startup: build the menu affordance (failures are logged, not
        fatal), check once, push the mode to the panel, then hook the
        wake handler so it exists before the panel can ever fire it.
        """
        if install_menu is not None:
            try:
                install_menu(self)
            except Exception:
                logger.exception("Error creating menu bar item, continuing without it")

        logger.info("Settings: %s", self.settings.as_dict())
        self.refresh_mode()
        self.panel.set_on_wake_up_handler(self.on_wake)
        return self.mode

    def add_listener(self, fn):
        """fn(mode) runs after every mode update."""
        self.listeners.append(fn)

    def refresh_mode(self):
        status = self.checker.check()
        return self.apply_status(status)

    def apply_status(self, status):
        self.mode = AppMode.from_status(status)
        logger.info("App mode: %s", self.mode.value)
        if self.mode is AppMode.DEGRADED:
            self.panel.hide()
        self.panel.set_app_mode(self.mode)
        for fn in self.listeners:
            fn(self.mode)
        return self.mode

    def on_wake(self):
        """Wake event: check again, then rebuild and show the panel for the new mode."""
        if self.dispatch is None:
            self.wake_with(self.checker.check())
            return
        self.checker.check_async(lambda status: self.dispatch(self.wake_with, status))

    def wake_with(self, status):
        self.apply_status(status)
        self.panel.create_window()
        self.panel.show()

    # ── Delegations for the menu ─────────────────────────────

    def open(self):
        self.panel.create_window()
        self.panel.show()

    def close(self):
        self.panel.hide()

    def query_state(self):
        return PanelState(is_open=self.panel.is_visible(),
                          is_pinned=self.panel.is_pinned())

    def toggle(self):
        state = self.query_state()
        if state.is_open and not state.is_pinned:
            self.close()
        else:
            self.open()
