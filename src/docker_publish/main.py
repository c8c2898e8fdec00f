"""Main CLI entry point for docker-publish.

Runs the publish pipeline once against the Docker engine configured in the
environment and maps the outcome to a process exit code.

Usage:
    INPUT_NAME=my/image INPUT_USERNAME=... INPUT_PASSWORD=... \\
    GITHUB_REF=refs/heads/master docker-publish [PATH]
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from docker_publish.config import LoggingSettings
from docker_publish.engine import DockerEngineClient
from docker_publish.logging import setup_logging
from docker_publish.pipeline import publish

app = typer.Typer(
    name="docker-publish",
    help="Build a Docker image from the CI checkout and push its tags to a registry",
    add_completion=False,
)

err_console = Console(stderr=True)


@app.command()
def main(
    path: Annotated[
        Path,
        typer.Argument(help="Build-context directory", file_okay=False),
    ] = Path("."),
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Build the image in PATH and push every derived tag.

    Inputs are read from INPUT_NAME, INPUT_USERNAME, INPUT_PASSWORD,
    INPUT_REGISTRY, INPUT_CACHE, INPUT_SNAPSHOT, INPUT_DOCKERFILE,
    GITHUB_REF and GITHUB_SHA.
    """
    try:
        logging_settings = LoggingSettings()
    except ValidationError as e:
        err_console.print(f"[red]Error loading logging configuration:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    if verbose:
        logging_settings = logging_settings.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_settings)

    engine = DockerEngineClient()
    try:
        publish(engine, path, datetime.now())
    except Exception as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False, soft_wrap=True)
        raise typer.Exit(code=1)
    finally:
        engine.close()


if __name__ == "__main__":
    app()
