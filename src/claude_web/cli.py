"""CLI entry point for claude-web."""

import logging
import os
from pathlib import Path

import click
import uvicorn

from .detect import detect_workspace


@click.group()
def main():
    """Chat with Claude Code sessions from the browser."""
    pass


@main.command()
@click.option("--port", default=3000, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--workspace",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Workspace directory (default: detected from the current directory).",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Logging verbosity.",
)
def serve(port: int, host: str, workspace: Path | None, log_level: str):
    """Start the web interface."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    workspace = workspace.resolve() if workspace else detect_workspace(Path.cwd())
    os.environ["CLAUDE_WEB_WORKSPACE"] = str(workspace)

    click.echo(f"Starting claude-web on http://{host}:{port}")
    click.echo(f"  Workspace: {workspace}")
    uvicorn.run("claude_web.server:app", host=host, port=port, reload=False, log_level=log_level)
