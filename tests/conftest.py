"""Shared fixtures for the Wingman test suite.

Nothing here needs macOS, a network, or a running web server: user
defaults are an in-memory dict, the panel records what was asked of it,
and the database is a throwaway SQLite file.
"""

import pytest

import wingman_web
from wingman_core import ConnectivityStatus
from wingman_db import WingmanDB
from wingman_web import WebSettings, hash_password


TEST_SECRET = "test-secret"
TEST_PASSWORD = "CorrectHorse9"


# ---------------------------------------------------------------------------
# Native side fakes
# ---------------------------------------------------------------------------

class MemoryDefaults:
    """Dict-backed object with the slice of NSUserDefaults the store uses."""

    def __init__(self, initial=None):
        self.values = dict(initial or {})
        self.synchronized = 0

    def objectForKey_(self, key):
        return self.values.get(key)

    def boolForKey_(self, key):
        return bool(self.values.get(key, False))

    def setBool_forKey_(self, value, key):
        self.values[key] = bool(value)

    def synchronize(self):
        self.synchronized += 1
        return True


class FakePanel:
    """Records calls in order; visibility and pin state are plain flags."""

    def __init__(self):
        self.calls = []
        self.visible = False
        self.pinned = False
        self.mode = None
        self.wake_handler = None

    def create_window(self):
        self.calls.append("create_window")

    def show(self):
        self.calls.append("show")
        self.visible = True

    def hide(self):
        self.calls.append("hide")
        self.visible = False

    def is_visible(self):
        return self.visible

    def is_pinned(self):
        return self.pinned

    def set_app_mode(self, mode):
        self.calls.append(("set_app_mode", mode))
        self.mode = mode

    def set_on_wake_up_handler(self, fn):
        self.calls.append("set_on_wake_up_handler")
        self.wake_handler = fn


class ScriptedChecker:
    """Hands out the given statuses in order, repeating the last one."""

    def __init__(self, *statuses):
        self.statuses = list(statuses) or [ConnectivityStatus.FAIL]
        self.calls = 0

    def check(self):
        self.calls += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def check_async(self, callback):
        """Calls back inline; no thread."""
        callback(self.check())


@pytest.fixture
def defaults():
    return MemoryDefaults()


@pytest.fixture
def panel():
    return FakePanel()


# ---------------------------------------------------------------------------
# Web side
# ---------------------------------------------------------------------------

@pytest.fixture
def web_settings():
    return WebSettings(jwt_secret=TEST_SECRET, environment="development")


@pytest.fixture
def db(tmp_path):
    return WingmanDB(tmp_path / "wingman.db")


@pytest.fixture
def user_id(db):
    return db.create_user("Test User", "test@example.com", hash_password(TEST_PASSWORD))


@pytest.fixture
def client(db, web_settings):
    """TestClient with the test settings and database swapped in."""
    from fastapi.testclient import TestClient

    wingman_web._settings = web_settings
    wingman_web._db = db

    yield TestClient(wingman_web.create_app())

    wingman_web._settings = None
    wingman_web._db = None
