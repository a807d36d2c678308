"""Typer CLI entry points for the FrameFleet render orchestrator."""

from importlib import import_module
from typing import Any

import typer

from apps.framefleet.logging import configure_logging
from apps.framefleet.render import app as render

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
WEB_APP_PATH = "apps.framefleet.web.render:app"

app = typer.Typer(
    name="framefleet",
    help="FrameFleet render job orchestration command line interface.",
)
web_app = typer.Typer(name="web", help="HTTP service helpers.")


def _load_uvicorn() -> Any:
    """Dynamically import uvicorn to keep it optional for non-web commands."""

    return import_module("uvicorn")


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        "INFO", "--log-level", help="Minimum level for structured logs."
    ),
    json_logs: bool = typer.Option(
        False, "--json-logs/--console-logs", help="Emit logs as JSON lines."
    ),
) -> None:
    """Configure logging before any command runs."""

    configure_logging(log_level, json_output=json_logs)


@web_app.command("serve")
def serve(
    host: str = typer.Option(
        DEFAULT_HOST,
        "--host",
        "-h",
        help="Host interface to bind the API server to.",
        show_default=True,
    ),
    port: int = typer.Option(
        DEFAULT_PORT,
        "--port",
        "-p",
        min=1,
        max=65535,
        help="Port to expose the API on.",
        show_default=True,
    ),
    reload: bool = typer.Option(
        False,
        "--reload/--no-reload",
        help="Automatically reload when source files change.",
        show_default=True,
    ),
    log_level: str = typer.Option(
        "info",
        "--log-level",
        help="Log level passed to uvicorn.",
        show_default=True,
    ),
) -> None:
    """Launch the FrameFleet render API using uvicorn."""

    typer.echo(f"Starting FrameFleet render API on http://{host}:{port}")
    uvicorn = _load_uvicorn()
    uvicorn.run(
        WEB_APP_PATH,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


app.add_typer(render)
app.add_typer(web_app)
