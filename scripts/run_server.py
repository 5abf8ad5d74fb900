"""Launcher for the agentjobs API using uvicorn."""

from __future__ import annotations

import logging
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from agentjobs.settings import load_config

app = typer.Typer(help="Run the agentjobs FastAPI app with uvicorn.", add_completion=False)
console = Console()


@app.callback(invoke_without_command=True)
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (HOST)."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (PORT)."),
    app_path: str = typer.Option("agentjobs.main:app", "--app", help="ASGI import path."),
    reload: Optional[bool] = typer.Option(None, "--reload/--no-reload", help="Auto-reload on code changes."),
    workers: Optional[int] = typer.Option(None, "--workers", min=1, help="Worker processes."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level."),
    env_path: str = typer.Option(".env", "--env-file", help="Optional .env file with defaults."),
) -> None:
    """Serve the API. Flags win over the environment, which wins over the .env file.

    With the in-memory queue the dispatcher lives inside the API process, so more
    than one worker process only makes sense with ``QUEUE_BACKEND=redis``.
    """

    cfg = load_config(env_path)
    host = host or cfg("HOST", default="127.0.0.1")
    port = port or cfg("PORT", cast=int, default=8000)
    if reload is None:
        reload = cfg("AGENTJOBS_SERVER_RELOAD", cast=bool, default=False)
    workers = workers or cfg("AGENTJOBS_SERVER_WORKERS", cast=int, default=1)
    log_level = (log_level or cfg("AGENTJOBS_SERVER_LOG_LEVEL", default="info")).lower()

    if workers > 1 and cfg("QUEUE_BACKEND", default="memory").lower() != "redis":
        console.print("[yellow]Worker processes do not share the in-memory queue; set QUEUE_BACKEND=redis.[/]")
    if workers > 1 and reload:
        raise typer.BadParameter("--reload cannot be combined with multiple workers")

    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_time=False)],
    )
    console.print(f"Serving [bold]{app_path}[/] on http://{host}:{port} ({workers} worker(s))")
    uvicorn.run(app_path, host=host, port=port, reload=reload, workers=workers, log_level=log_level)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
