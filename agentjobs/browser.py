"""Lazily created, idle-recycled Playwright session owned by one worker."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from agentjobs import metrics
from agentjobs.settings import BrowserSettings

LOGGER = logging.getLogger(__name__)

_SUPPORTED_CHANNELS = {"chromium", "chrome", "chrome-beta", "msedge"}


class SessionState(str, Enum):
    EMPTY = "empty"
    INITIALIZING = "initializing"
    READY = "ready"
    STALE = "stale"
    CLOSING = "closing"


@dataclass(slots=True)
class BrowserSession:
    """Handles for one running browser plus bookkeeping timestamps."""

    browser: Any
    context: Any
    page: Any
    playwright: Any = None
    created_at: float = 0.0
    last_activity_at: float = 0.0


Launcher = Callable[[BrowserSettings], Awaitable[BrowserSession]]


async def launch_chromium(settings: BrowserSettings) -> BrowserSession:
    """Start Playwright, launch Chromium and open a single page."""

    playwright = await async_playwright().start()
    try:
        browser = await _launch_browser(playwright, settings)
        context = await _build_context(browser, settings)
        page = await context.new_page()
    except Exception:
        await playwright.stop()
        raise
    page.on("pageerror", lambda exc: LOGGER.warning("Page error: %s", exc))
    return BrowserSession(browser=browser, context=context, page=page, playwright=playwright)


async def _launch_browser(playwright, settings: BrowserSettings) -> Browser:
    channel = _normalize_channel(settings.channel)
    if channel != settings.channel:
        LOGGER.warning(
            "Playwright channel '%s' is not supported; falling back to '%s'",
            settings.channel,
            channel,
        )
    LOGGER.debug("launching chromium", extra={"channel": channel, "headless": settings.headless})
    return await playwright.chromium.launch(
        channel=channel,
        headless=settings.headless,
        args=list(settings.launch_args),
    )


async def _build_context(browser: Browser, settings: BrowserSettings) -> BrowserContext:
    options: dict[str, Any] = {
        "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
        "user_agent": settings.user_agent,
        "locale": "en-US",
    }
    return await browser.new_context(**options)


def _normalize_channel(channel: str) -> str:
    normalized = (channel or "").strip().lower()
    if normalized in _SUPPORTED_CHANNELS:
        return normalized
    return "chromium"


class BrowserSessionManager:
    """Owns at most one live :class:`BrowserSession`.

    The session is created on first use, reused while it has been touched within
    ``idle_timeout_seconds``, and torn down and rebuilt once it goes stale.
    Callers hold a page only for the duration of one tool call.
    """

    def __init__(
        self,
        settings: BrowserSettings,
        *,
        launcher: Optional[Launcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._launcher = launcher or launch_chromium
        self._clock = clock
        self._session: Optional[BrowserSession] = None
        self._state = SessionState.EMPTY
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        if self._state is SessionState.READY and self._is_stale():
            return SessionState.STALE
        return self._state

    @property
    def session(self) -> Optional[BrowserSession]:
        return self._session

    def _is_stale(self) -> bool:
        session = self._session
        if session is None:
            return False
        idle = self._clock() - session.last_activity_at
        return idle > self.settings.idle_timeout_seconds

    def _page_closed(self) -> bool:
        page = self._session.page if self._session else None
        is_closed = getattr(page, "is_closed", None)
        return bool(is_closed()) if callable(is_closed) else False

    async def get_session(self) -> BrowserSession:
        async with self._lock:
            if self._session is not None and (self._is_stale() or self._page_closed()):
                LOGGER.info("Browser session idle or closed; recycling")
                metrics.BROWSER_SESSIONS.labels(event="recycled").inc()
                await self._close_locked()
            if self._session is None:
                self._state = SessionState.INITIALIZING
                LOGGER.info("Launching browser session")
                try:
                    session = await self._launcher(self.settings)
                except Exception:
                    self._state = SessionState.EMPTY
                    metrics.BROWSER_SESSIONS.labels(event="launch_failed").inc()
                    raise
                session.created_at = self._clock()
                self._session = session
                self._state = SessionState.READY
                metrics.BROWSER_SESSIONS.labels(event="launched").inc()
            self._session.last_activity_at = self._clock()
            return self._session

    async def get_page(self) -> Page:
        session = await self.get_session()
        return session.page

    def touch(self) -> None:
        if self._session is not None:
            self._session.last_activity_at = self._clock()

    async def cleanup(self) -> None:
        """Close everything; errors are logged, never raised."""

        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        session = self._session
        if session is None:
            self._state = SessionState.EMPTY
            return
        self._state = SessionState.CLOSING
        for label, closer in (
            ("page", getattr(session.page, "close", None)),
            ("context", getattr(session.context, "close", None)),
            ("browser", getattr(session.browser, "close", None)),
            ("playwright", getattr(session.playwright, "stop", None)),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                LOGGER.warning("Failed to close browser %s: %s", label, exc)
        self._session = None
        self._state = SessionState.EMPTY
        metrics.BROWSER_SESSIONS.labels(event="closed").inc()
        LOGGER.info("Browser session closed")

    @asynccontextmanager
    async def job_scope(self) -> AsyncIterator["BrowserSessionManager"]:
        """Guarantee cleanup when one job finishes, however it finishes."""

        try:
            yield self
        finally:
            await self.cleanup()
