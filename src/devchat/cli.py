"""CLI entry point for devchat."""

import logging
import os

import click
import uvicorn


@click.group()
def main():
    """Chat with Claude about the app your dev server is running."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Directory the assistant works in (defaults to the current directory).",
)
def serve(port: int, host: str, project_root: str | None):
    """Start the chat gateway."""
    if project_root:
        os.environ["DEVCHAT_PROJECT_ROOT"] = project_root

    from .server import log_buffer

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().addHandler(log_buffer)

    click.echo(f"Starting devchat on http://{host}:{port}")
    uvicorn.run("devchat.server:app", host=host, port=port, reload=False)
