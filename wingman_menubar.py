#!/usr/bin/env python3
"""
Wingman Menu Bar
════════════════
A menu bar icon that opens the Wingman web app in a floating panel.

  🟢  web app reachable, panel loads it
  🔴  web app unreachable, panel shows an offline page

SETUP
─────
  pip3 install -e .

  # start the web side (or point WingmanWebURL.json somewhere else):
  wingman-web

  # then the menu bar app:
  wingman

CONFIG
──────
  WingmanWebURL.json in the current directory (or bundled with the
  app) picks the web URL:

    {"wingmanWeb": {"url": "http://localhost:3000"}}

  Without it Wingman uses http://localhost:3000.

  Preferences (Start at Login) live in macOS user defaults.

HOW IT WORKS
────────────
  On launch Wingman does one GET against the web URL (5 s ceiling).
  A 200 puts it Online, anything else Degraded. "I'm Offline, Wake Me
  Up" wakes the panel: the check runs again in the background, then
  the panel is rebuilt for the new mode and brought to the front.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path

import rumps
from AppKit import (
    NSApplication,
    NSBackingStoreBuffered,
    NSFloatingWindowLevel,
    NSMakeRect,
    NSNormalWindowLevel,
    NSPanel,
    NSWindowStyleMaskClosable,
    NSWindowStyleMaskResizable,
    NSWindowStyleMaskTitled,
)
from Foundation import NSBundle, NSURL, NSURLRequest, NSUserDefaults
from PyObjCTools import AppHelper
from WebKit import WKWebView, WKWebViewConfiguration

from wingman_core import (
    DEFAULT_WEB_URL,
    AppMode,
    ConnectivityChecker,
    ModeCoordinator,
    SettingsStore,
    config_candidates,
    load_config,
)

logger = logging.getLogger(__name__)


# ── Config ───────────────────────────────────────────────────────

APP_NAME       = "Wingman"
PANEL_WIDTH    = 420
PANEL_HEIGHT   = 640

LAUNCH_AGENT_LABEL = "com.wingman.menubar"
LAUNCH_AGENT_PATH  = Path.home() / "Library/LaunchAgents" / f"{LAUNCH_AGENT_LABEL}.plist"

TITLE_ONLINE   = "🟢 W"
TITLE_DEGRADED = "🔴 W"

OFFLINE_HTML = """<!doctype html>
<html><body style="font-family:-apple-system;text-align:center;padding-top:30%;color:#555">
<h2>Wingman is offline</h2>
<p>The Wingman web app isn't reachable right now.<br>
Use <b>I'm Offline, Wake Me Up</b> from the menu bar to retry.</p>
</body></html>"""


# ── Panel ────────────────────────────────────────────────────────

class WingmanPanel:
    """
    The floating WebKit panel. Online it loads the configured URL,
    Degraded it shows OFFLINE_HTML. Pinned panels float above other
    windows.
    """

    def __init__(self, config_loader=load_config):
        self.config_loader = config_loader
        self.mode     = AppMode.DEGRADED
        self.pinned   = False
        self.window   = None
        self.webview  = None
        self._wake_handler = None

    def create_window(self):
        if self.window is not None:
            self.window.orderOut_(None)

        rect  = NSMakeRect(0, 0, PANEL_WIDTH, PANEL_HEIGHT)
        style = (NSWindowStyleMaskTitled | NSWindowStyleMaskClosable
                 | NSWindowStyleMaskResizable)
        panel = NSPanel.alloc().initWithContentRect_styleMask_backing_defer_(
            rect, style, NSBackingStoreBuffered, False,
        )
        panel.setTitle_(APP_NAME)
        panel.setReleasedWhenClosed_(False)
        panel.setHidesOnDeactivate_(False)

        webview = WKWebView.alloc().initWithFrame_configuration_(
            rect, WKWebViewConfiguration.alloc().init(),
        )
        panel.setContentView_(webview)
        panel.center()

        self.window, self.webview = panel, webview
        self._load()
        self._apply_pin()

    def _load(self):
        if self.webview is None:
            return
        if self.mode is AppMode.ONLINE:
            url = self.config_loader().web_base_url
            logger.debug("Panel loading %s", url)
            self.webview.loadRequest_(
                NSURLRequest.requestWithURL_(NSURL.URLWithString_(url))
            )
        else:
            self.webview.loadHTMLString_baseURL_(OFFLINE_HTML, None)

    def _apply_pin(self):
        if self.window is not None:
            self.window.setLevel_(NSFloatingWindowLevel if self.pinned else NSNormalWindowLevel)

    def show(self):
        if self.window is None:
            self.create_window()
        NSApplication.sharedApplication().activateIgnoringOtherApps_(True)
        self.window.makeKeyAndOrderFront_(None)

    def hide(self):
        if self.window is not None:
            self.window.orderOut_(None)

    def is_visible(self):
        return bool(self.window is not None and self.window.isVisible())

    def is_pinned(self):
        return self.pinned

    def set_pinned(self, pinned):
        self.pinned = pinned
        self._apply_pin()

    def set_app_mode(self, mode):
        self.mode = mode
        self._load()

    def set_on_wake_up_handler(self, fn):
        self._wake_handler = fn

    def wake_up(self):
        """User asked the panel to come back: hand over to the wake handler."""
        if self._wake_handler is None:
            logger.warning("Wake requested before a wake handler was set")
            return
        self._wake_handler()


# ── Start at Login ───────────────────────────────────────────────

def launch_agent_plist():
    script = os.path.abspath(__file__)
    python = sys.executable
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN"
  "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{LAUNCH_AGENT_LABEL}</string>
    <key>ProgramArguments</key>
    <array>
        <string>{python}</string>
        <string>{script}</string>
    </array>
    <key>RunAtLoad</key>
    <true/>
    <key>StandardOutPath</key>
    <string>/tmp/wingman.log</string>
    <key>StandardErrorPath</key>
    <string>/tmp/wingman.err</string>
</dict>
</plist>"""


def apply_start_at_login(enabled, path=LAUNCH_AGENT_PATH):
    """Write or remove the launchd agent so macOS starts Wingman at login."""
    if enabled:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(launch_agent_plist())
        logger.info("Installed launch agent %s", path)
    elif path.exists():
        path.unlink()
        logger.info("Removed launch agent %s", path)


# ── Menu Bar App ─────────────────────────────────────────────────

class WingmanMenuBar(rumps.App):

    def __init__(self, settings, panel, checker=None):
        super().__init__(TITLE_DEGRADED, quit_button=None)
        self.settings = settings
        self.panel    = panel

        # ── Menu skeleton ────────────────────────────────────────

        self.toggle_item = rumps.MenuItem("Open Wingman", callback=self._toggle)
        self.pin_item    = rumps.MenuItem("Pin Panel", callback=self._toggle_pin)
        self.mode_line   = rumps.MenuItem("  …")
        self.url_line    = rumps.MenuItem("  …")
        self.login_item  = rumps.MenuItem("Start at Login", callback=self._toggle_login)
        self.login_item.state = int(settings.start_at_login)

        self.coordinator = ModeCoordinator(settings, panel, checker,
                                           dispatch=self._call_on_ui)
        self.coordinator.add_listener(self._on_mode)
        self.coordinator.start(install_menu=self._install_menu)

        # Force macOS to render the menu bar icon immediately.
        self._kickstart = rumps.Timer(self._force_redraw, 0.5)
        self._kickstart.count = 0
        self._kickstart.start()

    def _install_menu(self, _coordinator):
        self.menu = [
            self.toggle_item,
            self.pin_item,
            None,
            self.mode_line,
            self.url_line,
            rumps.MenuItem("🔄  I'm Offline, Wake Me Up", callback=self._wake_up),
            None,
            self.login_item,
            rumps.MenuItem("↩️   Reset Settings", callback=self._reset_settings),
            rumps.MenuItem("⚙️   Edit Config…", callback=self._open_config),
            None,
            rumps.MenuItem("Quit", callback=rumps.quit_application),
        ]

    def _force_redraw(self, sender):
        """Nudge the menu bar by toggling the title so macOS renders the icon."""
        sender.count += 1
        if sender.count >= 3:
            sender.stop()
            return
        if self.title and not self.title.endswith("\u200b"):
            self.title = self.title + "\u200b"
        else:
            self.title = self.title.rstrip("\u200b")

    # ── Mode ─────────────────────────────────────────────────────

    def _on_mode(self, mode):
        online = mode is AppMode.ONLINE
        self.title = TITLE_ONLINE if online else TITLE_DEGRADED
        self.mode_line.title = "  ●  Online" if online else "  ○  Offline"
        self.url_line.title = f"  {load_config().web_base_url}"
        self._sync_toggle()

    def _wake_up(self, _sender):
        self.mode_line.title = "  …  Checking"
        self.panel.wake_up()

    def _call_on_ui(self, fn, *args):
        def run():
            fn(*args)
            self._sync_toggle()
        AppHelper.callAfter(run)

    # ── Panel ────────────────────────────────────────────────────

    def _sync_toggle(self):
        state = self.coordinator.query_state()
        closes = state.is_open and not state.is_pinned
        self.toggle_item.title = "Close Wingman" if closes else "Open Wingman"
        self.pin_item.state = int(state.is_pinned)

    def _toggle(self, _sender):
        self.coordinator.toggle()
        self._sync_toggle()

    def _toggle_pin(self, _sender):
        self.panel.set_pinned(not self.panel.is_pinned())
        self._sync_toggle()

    # ── Settings ─────────────────────────────────────────────────

    def _toggle_login(self, sender):
        enabled = not self.settings.start_at_login
        self.settings.start_at_login = enabled
        self.settings.persist()
        sender.state = int(enabled)
        try:
            apply_start_at_login(enabled)
        except OSError as e:
            logger.error("Could not update launch agent: %s", e)
            rumps.alert(APP_NAME, f"Couldn't update Start at Login:\n{e}")

    def _reset_settings(self, _sender):
        self.settings.reset_to_defaults()
        self.login_item.state = int(self.settings.start_at_login)
        try:
            apply_start_at_login(self.settings.start_at_login)
        except OSError as e:
            logger.error("Could not update launch agent: %s", e)

    def _open_config(self, _sender):
        path = next((p for p in config_candidates() if p.is_file()), None)
        if path is None:
            path = config_candidates()[0]
            path.write_text('{\n  "wingmanWeb": {"url": "%s"}\n}\n' % DEFAULT_WEB_URL)
        subprocess.run(["open", str(path)], check=False)


# ── CLI ──────────────────────────────────────────────────────────

USAGE_TEXT = """
Wingman Menu Bar
════════════════

Usage:
  wingman                     Launch the menu bar app
  wingman --test              Show the resolved config and run one connectivity check
  wingman --install           Print the launchd plist for auto-start
  wingman --reset-settings    Put all preferences back to their defaults
  wingman --verbose           Debug logging

Config: WingmanWebURL.json (current directory, then app resources)
"""


def cmd_test():
    cfg = load_config()
    print(f"Web URL:  {cfg.web_base_url}")
    print("Looked in:")
    for p in config_candidates():
        print(f"   {'✅' if p.is_file() else '  '} {p}")
    print(f"\nChecking {cfg.web_base_url} …")

    status = ConnectivityChecker(config_loader=lambda: cfg).check()
    mode = AppMode.from_status(status)
    print(f"{'✅' if mode is AppMode.ONLINE else '❌'} {status.value}  →  {mode.value}")
    return mode


def cmd_install():
    print(f"\n📄 Save this to:\n   {LAUNCH_AGENT_PATH}\n")
    print(launch_agent_plist())
    print(f"\nThen run:\n   launchctl load {LAUNCH_AGENT_PATH}\n")
    print("Or just tick \"Start at Login\" in the menu.\n")


def cmd_reset_settings():
    settings = SettingsStore(NSUserDefaults.standardUserDefaults())
    settings.reset_to_defaults()
    apply_start_at_login(settings.start_at_login)
    for key, value in settings.as_dict().items():
        print(f"  {key} = {value}")


def main():
    args = sys.argv[1:]

    logging.basicConfig(
        level=logging.DEBUG if "--verbose" in args else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if "--help" in args or "-h" in args:
        print(USAGE_TEXT)
        sys.exit(0)

    if "--test" in args:
        mode = cmd_test()
        sys.exit(0 if mode is AppMode.ONLINE else 1)

    if "--install" in args:
        cmd_install()
        sys.exit(0)

    if "--reset-settings" in args:
        cmd_reset_settings()
        sys.exit(0)

    print("Wingman Menu Bar")
    print(f"  Web URL:  {load_config().web_base_url}")
    print(f"  Test:     {sys.argv[0]} --test")
    print(f"\nLook for the icon in your menu bar.\n")

    # ── macOS GUI bootstrap ─────────────────────────────────────
    # A venv 'python' is a thin wrapper that macOS doesn't treat as
    # a real GUI process. Re-exec with the framework Python if needed.
    if os.environ.get("_WINGMAN_LAUNCHED") != "1":
        fw_python = _find_framework_python()
        if fw_python and os.path.realpath(sys.executable) != os.path.realpath(fw_python):
            print(f"  Re-launching with framework Python:\n  {fw_python}\n")
            env = os.environ.copy()
            env["_WINGMAN_LAUNCHED"] = "1"
            venv_site = [p for p in sys.path if "site-packages" in p]
            if venv_site:
                env["PYTHONPATH"] = ":".join(venv_site) + ":" + env.get("PYTHONPATH", "")
            os.execve(fw_python, [fw_python, os.path.abspath(__file__)] + args, env)

    # Menu bar accessory, no dock icon
    info = NSBundle.mainBundle().infoDictionary()
    info["LSUIElement"] = "1"
    NSApplication.sharedApplication().setActivationPolicy_(1)

    settings = SettingsStore(NSUserDefaults.standardUserDefaults())
    WingmanMenuBar(settings, WingmanPanel()).run()


def _find_framework_python():
    """
    Locate the macOS framework Python binary that can render GUI.
    Works with Homebrew, pyenv --enable-framework, and system Python.
    """
    import sysconfig

    candidates = [
        os.path.join(sys.base_prefix, "Resources", "Python.app",
                     "Contents", "MacOS", "Python"),
    ]

    prefix = sysconfig.get_config_var("prefix") or ""
    if "Python.framework" in prefix:
        candidates.append(os.path.join(prefix, "Resources", "Python.app",
                                       "Contents", "MacOS", "Python"))

    ver = f"{sys.version_info.major}.{sys.version_info.minor}"
    full = f"{ver}.{sys.version_info.micro}"
    for brew in ("/opt/homebrew", "/usr/local"):
        candidates.append(
            f"{brew}/Cellar/python@{ver}/{full}/Frameworks/Python.framework"
            f"/Versions/{ver}/Resources/Python.app/Contents/MacOS/Python"
        )

    for c in candidates:
        if os.path.isfile(c) and os.access(c, os.X_OK):
            return c
    return None


if __name__ == "__main__":
    main()
