"""Browser tools exposed to the agent loop.

Every tool is a :class:`ToolSpec`: a name, a description, a pydantic input model
and an async executor taking the validated input plus the per-job
:class:`ToolContext`. :class:`ToolRegistry` is the only place tools are looked
up and executed; it converts validation errors and executor exceptions into
``{"success": False, "error": ...}`` payloads so a failing tool never aborts
the surrounding job.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from agentjobs import adaptive, metrics
from agentjobs.browser import BrowserSessionManager

LOGGER = logging.getLogger(__name__)

ERROR_LIMIT = 100
URL_LIMIT = 100
TITLE_LIMIT = 100
ROW_TEXT_LIMIT = 100
TEXT_LIMIT = 50
RESULT_LIMIT = 2000

ArtifactSaver = Callable[[str, bytes], Awaitable[str]]

_PAGE_OVERVIEW_JS = """
() => {
  const forms = Array.from(document.querySelectorAll('form'));
  const inputs = Array.from(document.querySelectorAll('input'));
  const login = forms.some((form) => {
    const html = form.innerHTML.toLowerCase();
    return html.includes('password') || html.includes('login') || html.includes('sign in');
  });
  const search = inputs.some((input) =>
    (input.placeholder || '').toLowerCase().includes('search') ||
    (input.name || '').toLowerCase().includes('search'));
  return {
    login,
    search,
    forms: forms.length,
    buttons: document.querySelectorAll('button').length,
    inputs: inputs.length,
  };
}
"""

_CONTENT_PRESENT_JS = "(text) => !!document.body && document.body.innerText.includes(text)"

_RUN_SCRIPT_JS = "({ script, args }) => new Function('...args', script)(...args)"


def truncate(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


@dataclass(slots=True)
class ToolContext:
    """Per-job handles a tool may touch."""

    sessions: BrowserSessionManager
    job_id: Optional[str] = None
    container_name: Optional[str] = None
    save_artifact: Optional[ArtifactSaver] = None
    screenshots: list[str] = field(default_factory=list)

    def artifact_key(self, name: str, suffix: str) -> str:
        stamp = int(time.time() * 1000)
        container = self.container_name or "adhoc"
        job = self.job_id or "unassigned"
        return f"{container}/{job}/screenshots/{name}-{stamp}.{suffix}"


Executor = Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    execute: Executor

    def definition(self) -> dict[str, Any]:
        schema = self.input_model.model_json_schema()
        schema.pop("title", None)
        return {"name": self.name, "description": self.description, "input_schema": schema}


class ToolRegistry:
    """Name → :class:`ToolSpec` lookup with a failure-containing ``execute``."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any] | None, ctx: ToolContext) -> dict[str, Any]:
        spec = self._tools.get(name)
        if spec is None:
            metrics.record_tool_call(name, success=False)
            return {"success": False, "error": truncate(f"Unknown tool: {name}", ERROR_LIMIT)}
        try:
            params = spec.input_model.model_validate(arguments or {})
        except ValidationError as exc:
            metrics.record_tool_call(name, success=False)
            LOGGER.info("Rejected %s call with invalid input: %s", name, exc.errors()[:1])
            return {"success": False, "error": truncate(f"Invalid input: {exc}", ERROR_LIMIT)}

        LOGGER.debug("Executing tool %s (job=%s)", name, ctx.job_id)
        try:
            result = await spec.execute(params, ctx)
        except Exception as exc:
            LOGGER.warning("Tool %s failed (job=%s): %s", name, ctx.job_id, exc)
            result = {"success": False, "error": truncate(exc, ERROR_LIMIT)}
        finally:
            ctx.sessions.touch()
        metrics.record_tool_call(name, success=bool(result.get("success")))
        return result


class NavigateInput(BaseModel):
    url: str = Field(description="URL to open")
    wait_until: Literal["load", "domcontentloaded", "networkidle"] = "load"
    timeout: int = Field(default=30000, ge=0, description="Navigation timeout in ms")
    settle_ms: int = Field(default=2000, ge=0, description="Pause after load before analysing")


async def navigate(params: NavigateInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    await page.goto(params.url, wait_until=params.wait_until, timeout=params.timeout)
    if params.settle_ms:
        await page.wait_for_timeout(params.settle_ms)
    overview = await page.evaluate(_PAGE_OVERVIEW_JS)
    title = await page.title()
    LOGGER.info(
        "Navigated to %s - %sf %si %sb",
        page.url,
        overview.get("forms", 0),
        overview.get("inputs", 0),
        overview.get("buttons", 0),
    )
    return {
        "success": True,
        "url": truncate(page.url, URL_LIMIT),
        "title": truncate(title, TITLE_LIMIT),
        **overview,
    }


class FindElementsInput(BaseModel):
    selector: str = Field(description="CSS selector to match")
    wait_for: bool = Field(default=False, description="Wait for the selector before counting")
    timeout: int = Field(default=5000, ge=0)
    limit: int = Field(default=10, ge=0, le=50, description="How many element previews to return")


async def find_elements(params: FindElementsInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    if params.wait_for:
        try:
            await page.wait_for_selector(params.selector, timeout=params.timeout)
        except Exception as exc:
            LOGGER.info("Wait for %s timed out: %s", params.selector, exc)
    locator = page.locator(params.selector)
    count = await locator.count()
    elements = []
    for index in range(min(count, params.limit)):
        text = await locator.nth(index).text_content()
        elements.append({"index": index, "text": truncate((text or "").strip(), TEXT_LIMIT)})
    return {"success": True, "count": count, "elements": elements}


class ClickInput(BaseModel):
    selector: str = Field(description="CSS selector of the element to click")
    element_index: int = Field(default=0, ge=0, description="Which match to click")
    wait_timeout: int = Field(default=5000, ge=0)
    force: bool = False
    wait_after_click: int = Field(default=1000, ge=0, description="Pause after clicking in ms")


async def click(params: ClickInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    await page.wait_for_selector(params.selector, timeout=params.wait_timeout)
    locator = page.locator(params.selector)
    found = await locator.count()
    if found == 0:
        return {"success": False, "found": 0, "clicked": False, "error": f"No elements: {params.selector}"}
    if params.element_index >= found:
        return {
            "success": False,
            "found": found,
            "clicked": False,
            "error": f"Index {params.element_index} > {found - 1}",
        }
    element = locator.nth(params.element_index)
    text = (await element.text_content()) or ""
    await element.click(force=params.force)
    if params.wait_after_click:
        await page.wait_for_timeout(params.wait_after_click)
    return {"success": True, "found": found, "clicked": True, "text": truncate(text.strip(), TEXT_LIMIT)}


class TypeInput(BaseModel):
    selector: str
    text: str
    element_index: int = Field(default=0, ge=0)
    clear: bool = True
    press_enter: bool = False
    wait_timeout: int = Field(default=5000, ge=0)


async def type_text(params: TypeInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    element = page.locator(params.selector).nth(params.element_index)
    await element.wait_for(state="visible", timeout=params.wait_timeout)
    if params.clear:
        await element.fill(params.text)
    else:
        await element.press_sequentially(params.text)
    if params.press_enter:
        await element.press("Enter")
    return {"success": True, "typed": len(params.text), "submitted": params.press_enter}


class FormField(BaseModel):
    selector: str
    value: str
    clear: bool = True


class FillFormInput(BaseModel):
    fields: list[FormField] = Field(min_length=1)
    submit_selector: str | None = None
    wait_between_fields: int = Field(default=500, ge=0)


async def fill_form(params: FillFormInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    errors: list[str] = []
    filled = 0
    for item in params.fields:
        try:
            element = page.locator(item.selector).first
            await element.wait_for(state="visible", timeout=5000)
            if item.clear:
                await element.clear()
            await element.fill(item.value)
            filled += 1
        except Exception as exc:
            errors.append(truncate(f"Failed {item.selector}: {exc}", ERROR_LIMIT))
            continue
        if params.wait_between_fields:
            await page.wait_for_timeout(params.wait_between_fields)

    submitted = False
    if params.submit_selector:
        try:
            await page.locator(params.submit_selector).first.click()
            submitted = True
        except Exception as exc:
            errors.append(truncate(f"Submit failed: {exc}", ERROR_LIMIT))

    result: dict[str, Any] = {
        "success": filled > 0 and not errors,
        "filled": filled,
        "submitted": submitted,
        "errors": len(errors),
    }
    if errors:
        result["error"] = errors[0]
    return result


class WaitInput(BaseModel):
    condition: Literal["element", "url-change", "content", "time"]
    value: str | None = Field(default=None, description="Selector, text, or milliseconds depending on condition")
    timeout: int = Field(default=10000, ge=0)


async def wait(params: WaitInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    started = time.perf_counter()
    if params.condition == "time":
        delay = int(params.value) if params.value else params.timeout
        await page.wait_for_timeout(min(delay, params.timeout))
    elif not params.value and params.condition != "url-change":
        return {"success": False, "error": f"'{params.condition}' wait needs a value"}
    elif params.condition == "element":
        await page.wait_for_selector(params.value, timeout=params.timeout)
    elif params.condition == "content":
        await page.wait_for_function(_CONTENT_PRESENT_JS, arg=params.value, timeout=params.timeout)
    else:
        current = page.url
        await page.wait_for_url(lambda url: url != current, timeout=params.timeout)
    waited_ms = int((time.perf_counter() - started) * 1000)
    return {"success": True, "condition": params.condition, "waited": waited_ms, "url": truncate(page.url, URL_LIMIT)}


class ScreenshotInput(BaseModel):
    name: str = Field(default="screenshot", pattern=r"^[A-Za-z0-9_.-]+$")
    full_page: bool = False


async def _capture(ctx: ToolContext, page: Any, name: str, full_page: bool) -> tuple[str, int]:
    image = await page.screenshot(full_page=full_page, type="png")
    key = ctx.artifact_key(name, "png")
    await ctx.save_artifact(key, image)
    ctx.screenshots.append(key)
    LOGGER.info("Stored screenshot %s (%s bytes)", key, len(image))
    return key, len(image)


async def screenshot(params: ScreenshotInput, ctx: ToolContext) -> dict[str, Any]:
    if ctx.save_artifact is None:
        return {"success": False, "error": "No artifact storage configured"}
    page = await ctx.sessions.get_page()
    key, size = await _capture(ctx, page, params.name, params.full_page)
    return {"success": True, "key": key, "bytes": size}


class ExecuteJsInput(BaseModel):
    script: str = Field(description="Function body run in the page; `return` a value to send it back")
    args: list[Any] = Field(default_factory=list, description="Values available to the body as args[0], args[1], ...")


async def execute_js(params: ExecuteJsInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    value = await page.evaluate(_RUN_SCRIPT_JS, {"script": params.script, "args": params.args})
    serialized = json.dumps(value, default=str)
    if len(serialized) > RESULT_LIMIT:
        return {"success": True, "result": truncate(serialized, RESULT_LIMIT), "truncated": True}
    return {"success": True, "result": value}


class SmartLoginInput(BaseModel):
    username: str = Field(description="Username, email or other login identifier")
    password: str
    submit: bool = Field(default=True, description="Click the detected submit button after filling")
    wait_after_submit: int = Field(default=3000, ge=0, description="Pause after submitting in ms")


async def _fill(page: Any, selector: str, value: str) -> None:
    element = page.locator(selector).first
    await element.wait_for(state="visible", timeout=5000)
    await element.clear()
    await element.fill(value)


async def smart_login(params: SmartLoginInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    username = await adaptive.find_element(page, "username")
    password = await adaptive.find_element(page, "password")
    submit = await adaptive.find_element(page, "submit")
    detected = {
        "username_field": username.selector if username else None,
        "password_field": password.selector if password else None,
        "submit_button": submit.selector if submit else None,
    }
    if username is None or password is None:
        return {
            "success": False,
            "detected": detected,
            "filled": 0,
            "submitted": False,
            "error": f"Missing fields - username: {username is not None}, password: {password is not None}",
        }

    errors: list[str] = []
    filled = 0
    for label, match, value in (("Username", username, params.username), ("Password", password, params.password)):
        try:
            await _fill(page, match.selector, value)
            filled += 1
        except Exception as exc:
            errors.append(truncate(f"{label} fill failed: {exc}", ERROR_LIMIT))

    submitted = False
    if params.submit and submit is not None and not errors:
        try:
            await page.locator(submit.selector).first.click()
            submitted = True
        except Exception as exc:
            errors.append(truncate(f"Submit failed: {exc}", ERROR_LIMIT))
        if submitted and params.wait_after_submit:
            await page.wait_for_timeout(params.wait_after_submit)

    LOGGER.info("Smart login filled %s/2 fields (submitted=%s, job=%s)", filled, submitted, ctx.job_id)
    result: dict[str, Any] = {"success": not errors, "detected": detected, "filled": filled, "submitted": submitted}
    if errors:
        result["error"] = errors[0]
    return result


class SmartSearchInput(BaseModel):
    query: str
    selector: str | None = Field(default=None, description="Search field selector, if known")
    press_enter: bool = True
    wait_for_results: int = Field(default=5000, ge=0, description="Pause for results in ms")
    take_screenshot: bool = False
    screenshot_name: str = Field(default="search-results", pattern=r"^[A-Za-z0-9_.-]+$")


async def smart_search(params: SmartSearchInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    field_match = await adaptive.find_element(page, "search", params.selector)
    if field_match is None:
        return {"success": False, "search_performed": False, "error": "Could not find search field"}

    await _fill(page, field_match.selector, params.query)
    if params.press_enter:
        await page.locator(field_match.selector).first.press("Enter")
    results_appeared = False
    if params.wait_for_results:
        await page.wait_for_timeout(params.wait_for_results)
        results_appeared = await adaptive.first_present(page, adaptive.SELECTOR_PATTERNS["results"]) is not None

    result: dict[str, Any] = {
        "success": True,
        "search_performed": True,
        "search_field": field_match.selector,
        "results_appeared": results_appeared,
    }
    if params.take_screenshot and ctx.save_artifact is not None:
        result["screenshot"], _ = await _capture(ctx, page, params.screenshot_name, True)
    return result


class SmartTableClickInput(BaseModel):
    row_index: int = Field(default=0, ge=0, description="Row to click, 0 being the first data row")
    content_match: str | None = Field(default=None, description="Click the first row containing this text instead")
    wait_after_click: int = Field(default=3000, ge=0)


async def smart_table_click(params: SmartTableClickInput, ctx: ToolContext) -> dict[str, Any]:
    page = await ctx.sessions.get_page()
    rows = await adaptive.find_element(page, "table_row")
    if rows is None:
        return {
            "success": False,
            "table_found": False,
            "row_clicked": False,
            "total_rows": 0,
            "error": "No table rows found",
        }

    locator = page.locator(rows.selector)
    target = None
    error = ""
    index = params.row_index
    if params.content_match:
        needle = params.content_match.lower()
        for candidate in range(rows.count):
            text = (await locator.nth(candidate).text_content()) or ""
            if needle in text.lower():
                index, target = candidate, locator.nth(candidate)
                break
        if target is None:
            error = f"No row contains {params.content_match!r}"
    elif index < rows.count:
        target = locator.nth(index)
    else:
        error = f"Row index {index} out of range ({rows.count} rows)"
    if target is None:
        return {
            "success": False,
            "table_found": True,
            "row_clicked": False,
            "total_rows": rows.count,
            "error": truncate(error, ERROR_LIMIT),
        }

    text = ((await target.text_content()) or "").strip()
    await target.wait_for(state="visible", timeout=5000)
    await target.click()
    if params.wait_after_click:
        await page.wait_for_timeout(params.wait_after_click)
    return {
        "success": True,
        "table_found": True,
        "row_clicked": True,
        "row_index": index,
        "row_text": truncate(text, ROW_TEXT_LIMIT),
        "total_rows": rows.count,
    }


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for spec in (
        ToolSpec("smart_login", "Detect a login form, fill the credentials and submit", SmartLoginInput, smart_login),
        ToolSpec("smart_search", "Find the search field, run a query, wait for results", SmartSearchInput, smart_search),
        ToolSpec("smart_table_click", "Click a table row by index or text", SmartTableClickInput, smart_table_click),
        ToolSpec("navigate", "Open a URL and summarise the page (title, forms, inputs, buttons)", NavigateInput, navigate),
        ToolSpec("find_elements", "Count elements matching a CSS selector and preview their text", FindElementsInput, find_elements),
        ToolSpec("click", "Click the n-th element matching a CSS selector", ClickInput, click),
        ToolSpec("type", "Type text into an input matching a CSS selector", TypeInput, type_text),
        ToolSpec("fill_form", "Fill several form fields and optionally submit", FillFormInput, fill_form),
        ToolSpec("wait", "Wait for an element, a URL change, page text, or a fixed time", WaitInput, wait),
        ToolSpec("screenshot", "Capture the current page as a PNG artifact", ScreenshotInput, screenshot),
        ToolSpec("execute_js", "Run a JavaScript function body in the page", ExecuteJsInput, execute_js),
    ):
        registry.register(spec)
    return registry
