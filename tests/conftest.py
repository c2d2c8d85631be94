from __future__ import annotations

from typing import Any, Callable

import pytest

import browser_sandbox.session as session_mod
from browser_sandbox.errors import LaunchError
from browser_sandbox.session import BrowserSession, LaunchOptions


class FakePage:
    def __init__(self, context: "FakeContext") -> None:
        self.context = context
        self.url = "about:blank"
        self.closed = False

    async def goto(self, url: str, **_kwargs: Any) -> None:
        self.url = url

    async def title(self) -> str:
        return "Fake Page"

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", kwargs: dict[str, Any]) -> None:
        self.browser = browser
        self.kwargs = kwargs
        self.init_scripts: list[str] = []
        self.routes: list[tuple[str, Callable[..., Any]]] = []
        self.pages: list[FakePage] = []
        self.closed = False

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def route(self, pattern: str, handler: Callable[..., Any]) -> None:
        self.routes.append((pattern, handler))

    async def new_page(self) -> FakePage:
        if self.browser.fail_new_page:
            raise RuntimeError("new_page exploded")
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    version = "120.0.0.0-fake"

    def __init__(self) -> None:
        self.connected = True
        self.closed = False
        self.contexts: list[FakeContext] = []
        self.fail_new_page = False
        self._listeners: dict[str, list[Callable[..., Any]]] = {}

    def is_connected(self) -> bool:
        return self.connected

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def crash(self) -> None:
        self.connected = False
        for cb in self._listeners.get("disconnected", []):
            cb(self)

    async def new_context(self, **kwargs: Any) -> FakeContext:
        ctx = FakeContext(self, kwargs)
        self.contexts.append(ctx)
        return ctx

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    @property
    def open_contexts(self) -> list[FakeContext]:
        return [c for c in self.contexts if not c.closed]


class FakePlaywright:
    def __init__(self) -> None:
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakeLauncher:
    """Stands in for `launch_session` and records every browser it starts."""

    def __init__(self) -> None:
        self.sessions: list[BrowserSession] = []
        self.fail_with: str | None = None
        self.fail_new_page = False

    async def __call__(self, options: LaunchOptions) -> BrowserSession:
        if self.fail_with:
            raise LaunchError(self.fail_with)
        browser = FakeBrowser()
        browser.fail_new_page = self.fail_new_page
        session = BrowserSession(FakePlaywright(), browser)  # type: ignore[arg-type]
        self.sessions.append(session)
        return session

    @property
    def browsers(self) -> list[FakeBrowser]:
        return [s.browser for s in self.sessions]  # type: ignore[misc]

    @property
    def open_sessions(self) -> list[BrowserSession]:
        return [s for s in self.sessions if not s.closed]


@pytest.fixture()
def fake_launcher(monkeypatch: pytest.MonkeyPatch) -> FakeLauncher:
    launcher = FakeLauncher()
    monkeypatch.setattr(session_mod, "launch_session", launcher)
    return launcher
