"""Shared fakes: settings builder, clocks and a Playwright-shaped page."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from agentjobs.browser import BrowserSession
from agentjobs.settings import (
    AgentSettings,
    AnthropicSettings,
    BrowserSettings,
    DispatchSettings,
    QueueSettings,
    Settings,
    StorageSettings,
    TelemetrySettings,
)


def make_settings(
    tmp_path: Path,
    *,
    visibility_timeout: float = 600.0,
    invocation_timeout: float = 360.0,
    max_receive_count: int = 3,
    endpoints: Optional[dict[str, str]] = None,
    local_containers: tuple[str, ...] = ("qa",),
) -> Settings:
    return Settings(
        env_path=str(tmp_path / ".env"),
        queue=QueueSettings(
            backend="memory",
            redis_host="localhost",
            redis_port=6379,
            redis_database=0,
            redis_password=None,
            prefix="test",
            dedup_window_seconds=300.0,
            visibility_timeout_seconds=visibility_timeout,
            max_receive_count=max_receive_count,
        ),
        dispatch=DispatchSettings(
            max_concurrency=2,
            poll_interval_seconds=0.01,
            invocation_timeout_seconds=invocation_timeout,
            container_endpoints=dict(endpoints or {}),
            local_containers=local_containers,
            embedded=False,
        ),
        browser=BrowserSettings(
            headless=True,
            channel="chromium",
            idle_timeout_seconds=900.0,
            viewport_width=1280,
            viewport_height=1024,
            user_agent="test-agent",
            launch_args=("--no-sandbox",),
        ),
        anthropic=AnthropicSettings(
            api_key="test-key",
            base_url="https://api.anthropic.com",
            model="claude-test",
            api_version="2023-06-01",
            beta="token-efficient-tools-2025-02-19",
            request_timeout_seconds=30.0,
            min_input_tokens=6000,
            low_input_tokens=8000,
            min_requests=1,
            reset_buffer_seconds=1.0,
            rate_limit_penalty_seconds=60.0,
            overload_retry_delays=(30.0, 60.0),
        ),
        agent=AgentSettings(
            max_steps=10,
            max_tokens=64000,
            max_response_tokens=1024,
            max_consecutive_errors=2,
            memory_last_messages=1,
        ),
        storage=StorageSettings(
            results_root=tmp_path / "results",
            db_path=tmp_path / "jobs.db",
            region="test-region",
            version="1.0.0",
        ),
        telemetry=TelemetrySettings(prometheus_port=0),
    )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str, index: Optional[int] = None) -> None:
        self.page = page
        self.selector = selector
        self.index = index

    def _texts(self) -> list[str]:
        return self.page.elements.get(self.selector, [])

    async def count(self) -> int:
        return len(self._texts())

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, index)

    @property
    def first(self) -> "FakeLocator":
        return self.nth(0)

    async def text_content(self) -> str:
        return self._texts()[self.index or 0]

    async def click(self, **kwargs: Any) -> None:
        self.page.actions.append(("click", self.selector, self.index or 0))

    async def wait_for(self, **kwargs: Any) -> None:
        if not self._texts():
            raise TimeoutError(f"Timeout waiting for {self.selector}")

    async def fill(self, value: str) -> None:
        self.page.actions.append(("fill", self.selector, value))

    async def clear(self) -> None:
        self.page.actions.append(("clear", self.selector, None))

    async def press_sequentially(self, value: str) -> None:
        self.page.actions.append(("type", self.selector, value))

    async def press(self, key: str) -> None:
        self.page.actions.append(("press", self.selector, key))


class FakePage:
    def __init__(self, *, elements: Optional[dict[str, list[str]]] = None, title: str = "Example Domain") -> None:
        self.url = "about:blank"
        self.elements = elements or {}
        self._title = title
        self.actions: list[tuple[str, str, Any]] = []
        self.evaluations: list[tuple[str, tuple[Any, ...]]] = []
        self.closed = False
        self.close_error: Optional[Exception] = None
        self.evaluate_result: Any = {"login": False, "search": True, "forms": 1, "buttons": 2, "inputs": 3}

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.actions.append(("goto", url, kwargs))

    async def wait_for_timeout(self, ms: int) -> None:
        self.actions.append(("sleep", "", ms))

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> None:
        if selector not in self.elements:
            raise TimeoutError(f"Timeout waiting for {selector}")

    async def evaluate(self, script: str, *args: Any) -> Any:
        self.evaluations.append((script, args))
        return self.evaluate_result

    async def title(self) -> str:
        return self._title

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def screenshot(self, **kwargs: Any) -> bytes:
        return b"\x89PNG fake"

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        if self.close_error is not None:
            raise self.close_error
        self.closed = True


class FakeCloseable:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.closed = False
        self.error = error

    async def close(self) -> None:
        if self.error is not None:
            raise self.error
        self.closed = True


class FakeLauncher:
    """Stands in for Playwright: hands out fake sessions and counts launches."""

    def __init__(self, page_factory=FakePage) -> None:
        self.page_factory = page_factory
        self.sessions: list[BrowserSession] = []
        self.fail_with: Optional[Exception] = None

    async def __call__(self, settings: BrowserSettings) -> BrowserSession:
        if self.fail_with is not None:
            raise self.fail_with
        session = BrowserSession(
            browser=FakeCloseable(),
            context=FakeCloseable(),
            page=self.page_factory(),
        )
        self.sessions.append(session)
        return session

    @property
    def launches(self) -> int:
        return len(self.sessions)


class ScriptedClient:
    """Replays canned Messages API responses and records every request."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    async def create_message(self, **kwargs: Any) -> dict[str, Any]:
        self.requests.append(json.loads(json.dumps(kwargs)))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        return None


def tool_use_response(name: str, arguments: dict[str, Any], *, output_tokens: int = 50) -> dict[str, Any]:
    return {
        "stop_reason": "tool_use",
        "content": [{"type": "tool_use", "id": f"toolu_{name}", "name": name, "input": arguments}],
        "usage": {"input_tokens": 400, "output_tokens": output_tokens},
    }


def final_response(text: str) -> dict[str, Any]:
    return {
        "stop_reason": "end_turn",
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": 500, "output_tokens": 20},
    }
