"""Build-context packaging.

Turns a directory into the single tar stream the engine builds from, using
docker-py's own archiver so that ``.dockerignore`` is honored the same way
``docker build`` honors it.
"""

from __future__ import annotations

from pathlib import Path
from typing import IO

from docker.utils import tar

from docker_publish.engine import DEFAULT_DOCKERFILE
from docker_publish.errors import ConfigError
from docker_publish.logging import get_logger

logger = get_logger(__name__)


def read_dockerignore(path: Path) -> list[str]:
    """Read exclusion patterns from ``path/.dockerignore``.

    Blank lines and comments are skipped. A missing file yields no patterns.
    """
    dockerignore = path / ".dockerignore"
    if not dockerignore.is_file():
        return []
    lines = (line.strip() for line in dockerignore.read_text().splitlines())
    return [line for line in lines if line and not line.startswith("#")]


def package_context(path: Path, dockerfile: str | None = None) -> IO[bytes]:
    """Package a build-context directory into a tar stream.

    Args:
        path: Build-context directory
        dockerfile: Build-file path relative to ``path``; always kept in the
            archive even when ``.dockerignore`` matches it

    Returns:
        Temporary file positioned at the start of the archive. The caller
        owns it and must close it.

    Raises:
        ConfigError: If ``path`` is not a directory
    """
    if not path.is_dir():
        raise ConfigError(f"Build context path does not exist: {path}", field="context")

    exclude = read_dockerignore(path)
    archive: IO[bytes] = tar(
        str(path),
        exclude=exclude,
        dockerfile=(dockerfile or DEFAULT_DOCKERFILE, None),
    )

    logger.debug(
        "build_context_packaged",
        path=str(path),
        excluded_patterns=len(exclude),
    )

    return archive
