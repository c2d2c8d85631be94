from __future__ import annotations

import asyncio

import pytest

from browser_sandbox.errors import LaunchError
from browser_sandbox.session import LaunchOptions, SessionProvider


def test_invalid_browser_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        SessionProvider(mode="lukewarm")


def test_launch_options_carry_automation_masking_and_window_size() -> None:
    args = LaunchOptions(window_width=1280, window_height=720, extra_args=("--lang=fr",)).chromium_args()
    assert "--disable-blink-features=AutomationControlled" in args
    assert "--no-sandbox" in args
    assert "--window-size=1280,720" in args
    assert args[-1] == "--lang=fr"


@pytest.mark.asyncio
async def test_cold_provider_launches_per_acquire_and_closes_on_release(fake_launcher) -> None:
    provider = SessionProvider(mode="cold")

    first = await provider.acquire()
    second = await provider.acquire()
    assert first is not second
    assert len(fake_launcher.sessions) == 2

    await provider.release(first)
    await provider.release(second)
    assert fake_launcher.open_sessions == []
    assert all(s.playwright.stopped for s in fake_launcher.sessions)
    assert provider.cached_session is None


@pytest.mark.asyncio
async def test_warm_provider_reuses_live_session(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")

    first = await provider.acquire()
    await provider.release(first)
    second = await provider.acquire()

    assert first is second
    assert len(fake_launcher.sessions) == 1
    assert first.is_alive()


@pytest.mark.asyncio
async def test_warm_provider_relaunches_after_external_browser_death(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")

    first = await provider.acquire()
    fake_launcher.browsers[0].crash()
    assert provider.cached_session is None

    second = await provider.acquire()
    assert second is not first
    assert second.is_alive()
    assert len(fake_launcher.sessions) == 2
    await asyncio.sleep(0)
    assert first.closed is True
    assert first.playwright.stopped is True


@pytest.mark.asyncio
async def test_idle_warm_browser_death_stops_its_driver(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")

    first = await provider.acquire()
    await provider.release(first)
    fake_launcher.browsers[0].crash()
    await provider.close()

    assert first.closed is True
    assert first.playwright.stopped is True
    assert fake_launcher.open_sessions == []


@pytest.mark.asyncio
async def test_warm_provider_rechecks_liveness_without_disconnect_event(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")

    first = await provider.acquire()
    # Process died but the event never arrived.
    fake_launcher.browsers[0].connected = False

    second = await provider.acquire()
    assert second is not first
    assert first.closed is True


@pytest.mark.asyncio
async def test_warm_provider_concurrent_acquire_launches_once(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")

    sessions = await asyncio.gather(*(provider.acquire() for _ in range(8)))

    assert len(fake_launcher.sessions) == 1
    assert all(s is sessions[0] for s in sessions)


@pytest.mark.asyncio
async def test_warm_release_of_dead_session_drops_cache(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")

    session = await provider.acquire()
    fake_launcher.browsers[0].connected = False
    await provider.release(session)

    assert provider.cached_session is None
    assert session.closed is True


@pytest.mark.asyncio
async def test_close_shuts_down_cached_session(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")
    session = await provider.acquire()

    await provider.close()
    await provider.close()

    assert session.closed is True
    assert provider.cached_session is None


@pytest.mark.asyncio
async def test_close_swallows_browser_close_errors(fake_launcher) -> None:
    provider = SessionProvider(mode="warm")
    session = await provider.acquire()

    async def _boom() -> None:
        raise RuntimeError("browser already gone")

    session.browser.close = _boom  # type: ignore[method-assign]
    await provider.close()

    assert session.closed is True
    assert session.playwright.stopped is True


@pytest.mark.asyncio
async def test_acquire_propagates_launch_error(fake_launcher) -> None:
    fake_launcher.fail_with = "browser_launch_failed: no chromium"
    provider = SessionProvider(mode="warm")

    with pytest.raises(LaunchError):
        await provider.acquire()
    assert provider.cached_session is None


@pytest.mark.asyncio
async def test_check_health_only_launches_in_warm_mode(fake_launcher) -> None:
    cold = SessionProvider(mode="cold")
    assert await cold.check_health() == {"browser_mode": "cold"}
    assert fake_launcher.sessions == []

    warm = SessionProvider(mode="warm")
    info = await warm.check_health()
    assert info["browser_mode"] == "warm"
    assert info["browser_connected"] is True
    assert info["browser_version"] == "120.0.0.0-fake"
    assert len(fake_launcher.sessions) == 1
