from __future__ import annotations

import pytest

from agentjobs.browser import BrowserSessionManager, SessionState, _normalize_channel

from tests.fakes import FakeClock, FakeLauncher, make_settings


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def manager(tmp_path, launcher: FakeLauncher, clock: FakeClock) -> BrowserSessionManager:
    return BrowserSessionManager(make_settings(tmp_path).browser, launcher=launcher, clock=clock)


@pytest.mark.asyncio
async def test_session_is_created_lazily_and_reused(manager: BrowserSessionManager, launcher: FakeLauncher, clock):
    assert manager.state is SessionState.EMPTY
    assert launcher.launches == 0

    first = await manager.get_page()
    clock.advance(60)
    second = await manager.get_page()

    assert first is second
    assert launcher.launches == 1
    assert manager.state is SessionState.READY


@pytest.mark.asyncio
async def test_idle_session_is_recycled(manager: BrowserSessionManager, launcher: FakeLauncher, clock):
    first = await manager.get_session()
    clock.advance(901)
    assert manager.state is SessionState.STALE

    second = await manager.get_session()

    assert second is not first
    assert launcher.launches == 2
    assert first.page.closed
    assert first.context.closed and first.browser.closed


@pytest.mark.asyncio
async def test_touch_keeps_session_alive(manager: BrowserSessionManager, launcher: FakeLauncher, clock):
    await manager.get_session()
    for _ in range(3):
        clock.advance(600)
        manager.touch()

    await manager.get_session()

    assert launcher.launches == 1


@pytest.mark.asyncio
async def test_closed_page_triggers_relaunch(manager: BrowserSessionManager, launcher: FakeLauncher):
    page = await manager.get_page()
    page.closed = True

    fresh = await manager.get_page()

    assert fresh is not page
    assert launcher.launches == 2


@pytest.mark.asyncio
async def test_cleanup_logs_close_errors_and_empties(manager: BrowserSessionManager, caplog):
    session = await manager.get_session()
    session.page.close_error = RuntimeError("target closed")

    await manager.cleanup()

    assert manager.session is None
    assert manager.state is SessionState.EMPTY
    assert session.context.closed and session.browser.closed
    assert "Failed to close browser page" in caplog.text


@pytest.mark.asyncio
async def test_job_scope_cleans_up_on_failure(manager: BrowserSessionManager, launcher: FakeLauncher):
    with pytest.raises(ValueError):
        async with manager.job_scope() as sessions:
            await sessions.get_page()
            raise ValueError("tool blew up")

    assert manager.session is None
    assert launcher.sessions[0].browser.closed


@pytest.mark.asyncio
async def test_launch_failure_resets_state(manager: BrowserSessionManager, launcher: FakeLauncher):
    launcher.fail_with = RuntimeError("chromium missing")

    with pytest.raises(RuntimeError, match="chromium missing"):
        await manager.get_session()
    assert manager.state is SessionState.EMPTY

    launcher.fail_with = None
    await manager.get_session()
    assert manager.state is SessionState.READY


def test_unknown_channel_falls_back_to_chromium():
    assert _normalize_channel("Chrome") == "chrome"
    assert _normalize_channel("firefox") == "chromium"
