from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from playwright.async_api import Browser, Playwright, async_playwright

from browser_sandbox.errors import LaunchError


LOGGER = logging.getLogger("script-runner.session")

BROWSER_MODES = ("cold", "warm")

_CHROME_CANDIDATES = (
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
)


def find_chrome_executable(override: str | None = None) -> str | None:
    """
    Resolve the browser binary: explicit override first, then well-known system paths.

    Returns None when nothing is found; Playwright then falls back to its bundled Chromium.
    """
    if override and Path(override).exists():
        return override
    for path in _CHROME_CANDIDATES:
        if Path(path).exists():
            return path
    return None


_INFRA_EXCEPTION_NAMES = frozenset({"TargetClosedError"})

# Lowercased fragments of Playwright messages raised when Chromium or its driver
# went away underneath a script (renderer crash, OOM, tiny /dev/shm).
_INFRA_MESSAGE_MARKERS = (
    "has been closed",
    "page crashed",
    "target crashed",
    "connection closed while reading from the driver",
    "connection closed while writing to the driver",
    "pipe closed by peer",
)


def is_browser_infra_error(exc: BaseException) -> bool:
    """True when a script failed because the browser died, not because of the script."""
    if type(exc).__name__ in _INFRA_EXCEPTION_NAMES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _INFRA_MESSAGE_MARKERS)


@dataclass(frozen=True)
class LaunchOptions:
    headless: bool = True
    executable_path: str | None = None
    window_width: int = 1920
    window_height: int = 1080
    extra_args: tuple[str, ...] = ()

    def chromium_args(self) -> list[str]:
        return [
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-gpu",
            # Avoid renderer crashes when /dev/shm is tiny.
            "--disable-dev-shm-usage",
            "--disable-blink-features=AutomationControlled",
            f"--window-size={int(self.window_width)},{int(self.window_height)}",
            *self.extra_args,
        ]


class BrowserSession:
    """One Playwright driver plus the browser process it launched."""

    def __init__(self, playwright: Playwright, browser: Browser) -> None:
        self.playwright = playwright
        self.browser = browser
        self.launched_at = time.time()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def is_alive(self) -> bool:
        if self._closed:
            return False
        try:
            return bool(self.browser.is_connected())
        except Exception:
            return False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.browser.close()
        except Exception:
            LOGGER.debug("Browser close failed", exc_info=True)
        try:
            await self.playwright.stop()
        except Exception:
            LOGGER.debug("Playwright driver stop failed", exc_info=True)


async def launch_session(options: LaunchOptions) -> BrowserSession:
    executable = find_chrome_executable(options.executable_path)
    pw: Playwright | None = None
    try:
        pw = await async_playwright().start()
        kwargs: dict[str, Any] = {"headless": bool(options.headless), "args": options.chromium_args()}
        if executable:
            kwargs["executable_path"] = executable
        browser = await pw.chromium.launch(**kwargs)
    except Exception as exc:
        if pw is not None:
            try:
                await pw.stop()
            except Exception:
                LOGGER.debug("Playwright driver stop failed after launch error", exc_info=True)
        raise LaunchError(f"browser_launch_failed: {type(exc).__name__}: {exc}") from exc

    LOGGER.info("Browser launched executable=%s version=%s", executable or "bundled", browser.version)
    return BrowserSession(pw, browser)


class SessionProvider:
    """
    Hands out browser sessions.

    - cold: every `acquire()` launches a new browser; `release()` closes it.
    - warm: one cached browser shared by all requests, relaunched under a lock
      once it stops being connected.
    """

    def __init__(self, options: LaunchOptions | None = None, *, mode: str = "cold") -> None:
        mode2 = str(mode or "").strip().lower()
        if mode2 not in BROWSER_MODES:
            raise ValueError(f"invalid_browser_mode: {mode!r}")
        self.options = options or LaunchOptions()
        self.mode = mode2
        self._session: BrowserSession | None = None
        self._lock = asyncio.Lock()
        self._closing: set[asyncio.Future] = set()

    @property
    def warm(self) -> bool:
        return self.mode == "warm"

    @property
    def cached_session(self) -> BrowserSession | None:
        return self._session

    async def acquire(self) -> BrowserSession:
        if not self.warm:
            LOGGER.info("Launching browser (cold)")
            return await launch_session(self.options)

        session = self._session
        if session is not None and session.is_alive():
            return session

        async with self._lock:
            # Another request may have relaunched while we waited.
            session = self._session
            if session is not None and session.is_alive():
                return session
            if session is not None:
                LOGGER.warning("Cached browser is no longer connected; relaunching")
                self._session = None
                await session.close()

            LOGGER.info("Launching browser (warm)")
            session = await launch_session(self.options)
            self._watch_disconnect(session)
            self._session = session
            return session

    def _watch_disconnect(self, session: BrowserSession) -> None:
        def _on_disconnected(*_args: Any) -> None:
            if self._session is not session:
                return
            LOGGER.warning("Browser process disconnected; dropping cached session")
            self._session = None
            # The Playwright driver outlives its browser and must be stopped here.
            closing = asyncio.ensure_future(session.close())
            self._closing.add(closing)
            closing.add_done_callback(self._forget_closing)

        try:
            session.browser.on("disconnected", _on_disconnected)
        except Exception:
            LOGGER.debug("Could not subscribe to browser disconnect events", exc_info=True)

    def _forget_closing(self, fut: asyncio.Future) -> None:
        self._closing.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            LOGGER.warning("Closing disconnected browser failed: %s", fut.exception())

    async def release(self, session: BrowserSession) -> None:
        if not self.warm:
            await session.close()
            return
        if session.is_alive():
            return
        async with self._lock:
            if self._session is session:
                self._session = None
        await session.close()

    async def close(self) -> None:
        async with self._lock:
            session, self._session = self._session, None
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        if session is None:
            return
        LOGGER.info("Closing cached browser session")
        try:
            await session.close()
        except Exception:
            LOGGER.warning("Cached browser close failed", exc_info=True)

    async def check_health(self) -> dict[str, Any]:
        if not self.warm:
            return {"browser_mode": self.mode}
        session = await self.acquire()
        return {
            "browser_mode": self.mode,
            "browser_connected": session.is_alive(),
            "browser_version": session.browser.version,
        }
