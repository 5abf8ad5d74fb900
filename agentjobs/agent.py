"""Bounded tool-calling loop over the Anthropic Messages API."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Protocol

import httpx

from agentjobs.ratelimit import AnthropicClient, UpstreamAPIError
from agentjobs.settings import AgentSettings
from agentjobs.tools import ToolContext, ToolRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a browser automation agent. Use the provided tools to complete every step of "
    "the user's request on real web pages. Prefer the workflow tools: smart_login for any "
    "login form, smart_search for search boxes and smart_table_click for table rows. Use "
    "navigate to open pages and screenshot to check the result of a step. Fall back to "
    "find_elements, click, type, fill_form and wait for one-off interactions with standard "
    "CSS selectors, and use execute_js only as a last resort. "
    "When the task is done, reply with a concise summary of what you found or did."
)


class AgentBudgetExceeded(RuntimeError):
    """The loop ran out of steps or tokens before the model finished."""


class ThreadMemory(Protocol):
    """Keeps the most recent messages of a conversation thread across jobs."""

    async def recall(self, thread_id: str) -> list[dict[str, Any]]:
        ...

    async def remember(self, thread_id: str, messages: list[dict[str, Any]], *, job_id: Optional[str] = None) -> None:
        ...


def thread_tail(messages: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    """Last ``limit`` messages, widened back so the slice opens on a user turn."""

    if limit <= 0 or not messages:
        return []
    start = max(0, len(messages) - limit)
    while start > 0 and messages[start].get("role") != "user":
        start -= 1
    return messages[start:]


@dataclass(slots=True)
class AgentStep:
    index: int
    stop_reason: Optional[str] = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(slots=True)
class AgentOutcome:
    text: str
    steps: list[AgentStep]
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tool_call_count(self) -> int:
        return sum(len(step.tool_calls) for step in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "steps": [asdict(step) for step in self.steps],
            "usage": {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens},
            "toolCalls": self.tool_call_count,
        }


def normalize_input(raw: Any) -> tuple[list[dict[str, Any]], list[str]]:
    """Split agent input into conversation messages and extra system text."""

    if isinstance(raw, str):
        if not raw.strip():
            raise ValueError("input must not be empty")
        return [{"role": "user", "content": raw}], []
    if not isinstance(raw, list) or not raw:
        raise ValueError("input must be a prompt string or a non-empty list of messages")
    messages: list[dict[str, Any]] = []
    system: list[str] = []
    for item in raw:
        if not isinstance(item, dict) or "content" not in item:
            raise ValueError("each input message needs 'role' and 'content'")
        role = item.get("role", "user")
        if role == "system":
            system.append(str(item["content"]))
        elif role in {"user", "assistant"}:
            messages.append({"role": role, "content": item["content"]})
        else:
            raise ValueError(f"unsupported message role '{role}'")
    if not messages:
        raise ValueError("input must contain at least one user message")
    return messages, system


class AgentLoop:
    """Runs model turns until the model stops calling tools or a budget runs out.

    ``max_tokens`` bounds the output tokens generated across the whole run.
    An upstream failure on one turn is recorded as a failed step and the turn is
    retried; more than ``max_consecutive_errors`` failures in a row abort the run.

    With a ``memory``, the last ``memory_last_messages`` messages of the thread
    are sent ahead of the new input, and the run's own request and outcome
    (the final reply, or the error that stopped it) are stored for the next job.
    """

    def __init__(
        self,
        client: AnthropicClient,
        registry: ToolRegistry,
        settings: AgentSettings,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        memory: Optional[ThreadMemory] = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.settings = settings
        self.system_prompt = system_prompt
        self.memory = memory

    async def run(
        self,
        input: Any,
        *,
        ctx: ToolContext,
        thread_id: Optional[str] = None,
        max_steps: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> AgentOutcome:
        request, extra_system = normalize_input(input)
        system = "\n\n".join([self.system_prompt, *extra_system])
        history = await self._recall(thread_id)
        try:
            outcome = await self._loop(
                [*history, *request],
                system=system,
                thread_id=thread_id,
                max_steps=max_steps or self.settings.max_steps,
                max_tokens=max_tokens or self.settings.max_tokens,
                ctx=ctx,
            )
        except Exception as exc:
            await self._remember(thread_id, request, f"The previous run failed: {exc}", ctx.job_id)
            raise
        await self._remember(thread_id, request, outcome.text, ctx.job_id)
        return outcome

    async def _recall(self, thread_id: Optional[str]) -> list[dict[str, Any]]:
        if self.memory is None or not thread_id:
            return []
        try:
            history = thread_tail(await self.memory.recall(thread_id), self.settings.memory_last_messages)
        except Exception:
            LOGGER.exception("Could not load memory for thread %s; starting without it", thread_id)
            return []
        if history:
            LOGGER.info("Recalled %s message(s) for thread %s", len(history), thread_id)
        return history

    async def _remember(
        self,
        thread_id: Optional[str],
        request: list[dict[str, Any]],
        reply: str,
        job_id: Optional[str],
    ) -> None:
        if self.memory is None or not thread_id:
            return
        messages = thread_tail(
            [*request, {"role": "assistant", "content": reply or "(no reply)"}],
            self.settings.memory_last_messages,
        )
        try:
            await self.memory.remember(thread_id, messages, job_id=job_id)
        except Exception:
            # Memory is advisory; the job outcome stands without it.
            LOGGER.exception("Could not store memory for thread %s (job %s)", thread_id, job_id)

    async def _loop(
        self,
        messages: list[dict[str, Any]],
        *,
        system: str,
        thread_id: Optional[str],
        max_steps: int,
        max_tokens: int,
        ctx: ToolContext,
    ) -> AgentOutcome:
        tools = self.registry.definitions()

        steps: list[AgentStep] = []
        input_tokens = 0
        output_tokens = 0
        consecutive_errors = 0

        for index in range(1, max_steps + 1):
            remaining = max_tokens - output_tokens
            if remaining <= 0:
                raise AgentBudgetExceeded(f"Token budget of {max_tokens} exhausted after {index - 1} steps")
            step = AgentStep(index=index)
            steps.append(step)
            try:
                response = await self.client.create_message(
                    messages=messages,
                    max_tokens=min(self.settings.max_response_tokens, remaining),
                    system=system,
                    tools=tools,
                )
            except (UpstreamAPIError, httpx.HTTPError) as exc:
                consecutive_errors += 1
                step.error = str(exc)
                LOGGER.warning(
                    "Agent step %s failed for thread %s (%s/%s consecutive): %s",
                    index,
                    thread_id,
                    consecutive_errors,
                    self.settings.max_consecutive_errors,
                    exc,
                )
                if consecutive_errors > self.settings.max_consecutive_errors:
                    raise
                continue
            consecutive_errors = 0

            usage = response.get("usage") or {}
            input_tokens += int(usage.get("input_tokens") or 0)
            output_tokens += int(usage.get("output_tokens") or 0)
            step.stop_reason = response.get("stop_reason")
            content = response.get("content") or []
            messages.append({"role": "assistant", "content": content})

            tool_uses = [block for block in content if block.get("type") == "tool_use"]
            if not tool_uses:
                text = "\n".join(block.get("text", "") for block in content if block.get("type") == "text")
                LOGGER.info(
                    "Agent finished thread %s after %s steps (%s output tokens)",
                    thread_id,
                    index,
                    output_tokens,
                )
                return AgentOutcome(
                    text=text.strip(),
                    steps=steps,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )

            results = []
            for block in tool_uses:
                result = await self.registry.execute(block.get("name", ""), block.get("input"), ctx)
                step.tool_calls.append({"name": block.get("name"), "success": bool(result.get("success"))})
                results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": block.get("id"),
                        "content": json.dumps(result, default=str),
                        "is_error": not result.get("success", False),
                    }
                )
            messages.append({"role": "user", "content": results})

        raise AgentBudgetExceeded(f"Step budget of {max_steps} exhausted")
