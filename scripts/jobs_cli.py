#!/usr/bin/env python3
"""Operator CLI for the agentjobs API: submit jobs, follow them, manage dead letters."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ContextManager, Iterator, Optional

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from agentjobs.settings import get_settings, load_config

console = Console()
cli = typer.Typer(help="Interact with the agentjobs API")
dlq_cli = typer.Typer(help="Inspect and redrive dead-lettered messages.")
cli.add_typer(dlq_cli, name="dlq")

_TERMINAL_STATES = {"completed", "failed", "not_found"}


@dataclass
class APISettings:
    base_url: str
    env_path: Path


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    config = load_config(str(env_path))
    return APISettings(base_url=config("API_BASE_URL", default="http://localhost:8000"), env_path=env_path)


def _resolve_settings(override_base: Optional[str]) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    return settings


def _client(settings: APISettings, *, timeout: float = 30.0) -> httpx.Client:
    return httpx.Client(base_url=settings.base_url, timeout=httpx.Timeout(timeout, connect=10.0))


def _client_ctx(settings: APISettings, *, timeout: float = 30.0) -> ContextManager[httpx.Client]:
    @contextmanager
    def _ctx() -> Iterator[httpx.Client]:
        client = _client(settings, timeout=timeout)
        try:
            yield client
        finally:
            client.close()

    return _ctx()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_time=False)],
    )


def _extract_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        return str(payload.get("detail") or payload.get("error") or payload)
    return str(payload)


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/]")
    raise typer.Exit(1)


def _print_status(payload: dict[str, Any]) -> None:
    table = Table("Field", "Value", title=f"Job {payload.get('jobId', 'unknown')}")
    for key in ("status", "containerName", "submittedAt", "completedAt", "processingTime", "resultUrl"):
        if payload.get(key) is not None:
            table.add_row(key, str(payload[key]))
    for key in ("result", "error"):
        value = payload.get(key)
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, indent=2)
        table.add_row(key, str(value))
    console.print(table)


def _fetch_status(client: httpx.Client, job_id: str) -> dict[str, Any]:
    response = client.get(f"/api/job/{job_id}")
    if response.status_code >= 400:
        _fail(f"Status query failed ({response.status_code}): {_extract_detail(response)}")
    return response.json()


def _wait_for(client: httpx.Client, job_id: str, *, timeout: float, interval: float) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    while True:
        payload = _fetch_status(client, job_id)
        if payload.get("status") in _TERMINAL_STATES:
            return payload
        if time.monotonic() >= deadline:
            return payload
        console.print(f"[dim]{job_id}: {payload.get('status')}[/]")
        time.sleep(interval)


@cli.command()
def submit(
    container: str = typer.Argument(..., help="Container that should run the job"),
    prompt: Optional[str] = typer.Argument(None, help="Natural-language instruction"),
    input_json: Optional[str] = typer.Option(None, "--input-json", help="Raw agent input as JSON (instead of a prompt)"),
    thread_id: Optional[str] = typer.Option(None, "--thread-id"),
    max_steps: Optional[int] = typer.Option(None, "--max-steps", min=1),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens", min=1),
    wait: bool = typer.Option(False, "--wait/--no-wait", help="Poll until the job finishes"),
    timeout: float = typer.Option(900.0, "--timeout", help="Seconds to wait with --wait"),
    interval: float = typer.Option(5.0, "--interval", help="Seconds between polls with --wait"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    json_output: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Queue a container job."""

    if prompt is None and input_json is None:
        _fail("Provide a prompt or --input-json")
    payload: dict[str, Any] = {"container": container}
    if prompt is not None:
        payload["prompt"] = prompt
    else:
        try:
            payload["input"] = json.loads(input_json or "null")
        except ValueError as exc:
            _fail(f"--input-json is not valid JSON: {exc}")
    if thread_id:
        payload["thread_id"] = thread_id
    if max_steps:
        payload["maxSteps"] = max_steps
    if max_tokens:
        payload["maxTokens"] = max_tokens

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.post("/api/job/start", json=payload)
        if response.status_code != 202:
            _fail(f"Submit failed ({response.status_code}): {_extract_detail(response)}")
        accepted = response.json()
        job_id = accepted["jobId"]
        if json_output and not wait:
            console.print_json(data=accepted)
            return
        if not json_output:
            console.print(f"[green]Queued[/] {job_id} on {accepted.get('containerName')}")
        if not wait:
            return
        final = _wait_for(client, job_id, timeout=timeout, interval=interval)
    if json_output:
        console.print_json(data=final)
    else:
        _print_status(final)
    if final.get("status") != "completed":
        raise typer.Exit(1)


@cli.command()
def status(
    job_id: str = typer.Argument(..., help="Job identifier"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    json_output: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show the current status of a job."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        payload = _fetch_status(client, job_id)
    if json_output:
        console.print_json(data=payload)
    else:
        _print_status(payload)


@cli.command()
def wait(
    job_id: str = typer.Argument(..., help="Job identifier"),
    timeout: float = typer.Option(900.0, "--timeout", help="Give up after this many seconds"),
    interval: float = typer.Option(5.0, "--interval", help="Seconds between polls"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    json_output: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Poll a job until it completes or fails; exits non-zero unless it completed."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        payload = _wait_for(client, job_id, timeout=timeout, interval=interval)
    if json_output:
        console.print_json(data=payload)
    else:
        _print_status(payload)
    if payload.get("status") != "completed":
        raise typer.Exit(1)


@cli.command()
def dispatch(
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit"),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Run a dispatcher against the configured queue (use QUEUE_BACKEND=redis to share with the API)."""

    from agentjobs.runtime import build_runtime

    _configure_logging(log_level)
    settings = get_settings()
    if settings.queue.backend == "memory":
        console.print("[yellow]In-memory queue: this dispatcher only sees jobs published by this process.[/]")

    async def _run() -> int:
        runtime = build_runtime(settings)
        try:
            if once:
                return await runtime.dispatcher.drain()
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)
            await runtime.dispatcher.run(stop_event)
            return 0
        finally:
            await runtime.aclose()

    processed = asyncio.run(_run())
    if once:
        console.print(f"Processed {processed} message(s)")


@dlq_cli.command("list")
def dlq_list(
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    json_output: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """List dead-lettered messages."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.get("/api/dlq")
        if response.status_code >= 400:
            _fail(f"Listing dead letters failed ({response.status_code}): {_extract_detail(response)}")
        entries = response.json()
    if json_output:
        console.print_json(data=entries)
        return
    if not entries:
        console.print("[dim]Dead-letter list is empty.[/]")
        return
    table = Table("Message", "Partition", "Job", "Receives", title="Dead letters")
    for entry in entries:
        job = entry.get("job") or {}
        table.add_row(
            str(entry.get("messageId")),
            str(entry.get("partition")),
            str(job.get("jobId")),
            str(entry.get("receiveCount")),
        )
    console.print(table)


@dlq_cli.command("redrive")
def dlq_redrive(
    message_id: str = typer.Argument(..., help="Dead-lettered message id"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
) -> None:
    """Move a dead-lettered message back onto its partition."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.post(f"/api/dlq/{message_id}/redrive")
    if response.status_code >= 400:
        _fail(f"Redrive failed ({response.status_code}): {_extract_detail(response)}")
    console.print(f"[green]Redrove[/] {message_id}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
