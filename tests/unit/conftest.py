"""Pytest fixtures for publish pipeline unit tests.

Provides a recording engine double standing in for the Docker engine, a
clean step-input environment, and a temporary build context.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import pytest

from docker_publish.engine import Credential

STEP_INPUTS = (
    "INPUT_NAME",
    "INPUT_USERNAME",
    "INPUT_PASSWORD",
    "INPUT_REGISTRY",
    "INPUT_CACHE",
    "INPUT_SNAPSHOT",
    "INPUT_DOCKERFILE",
    "GITHUB_REF",
    "GITHUB_SHA",
)


class FakeStream:
    """A response stream yielding scripted chunks and recording ``close``.

    Setting ``fail_after`` makes iteration raise once that many chunks have
    been yielded.
    """

    def __init__(self, body: str | Sequence[bytes | str] = "", fail_after: int | None = None) -> None:
        self.chunks: list[bytes | str] = [body] if isinstance(body, str) else list(body)
        self.fail_after = fail_after
        self.closed = False

    def __iter__(self) -> Iterator[bytes | str]:
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise ConnectionError("stream interrupted")
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise ConnectionError("stream interrupted")

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeEngine:
    """Engine client double recording every call.

    Each ``*_result`` is either a ``FakeStream`` to return or an exception to
    raise. ``push_results`` maps a reference to a per-reference result.
    """

    login_error: Exception | None = None
    pull_result: FakeStream | Exception = field(default_factory=FakeStream)
    build_result: FakeStream | Exception = field(default_factory=FakeStream)
    push_result: FakeStream | Exception | None = None
    push_results: dict[str, FakeStream | Exception] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    logins: list[Credential] = field(default_factory=list)
    pulls: list[tuple[str, str]] = field(default_factory=list)
    builds: list[dict[str, Any]] = field(default_factory=list)
    pushes: list[tuple[str, str]] = field(default_factory=list)
    opened: list[FakeStream] = field(default_factory=list)
    closed: bool = False

    def _answer(self, result: FakeStream | Exception) -> FakeStream:
        if isinstance(result, Exception):
            raise result
        self.opened.append(result)
        return result

    def registry_login(self, credential: Credential) -> dict[str, str]:
        self.calls.append(("login", credential))
        self.logins.append(credential)
        if self.login_error is not None:
            raise self.login_error
        return {"Status": "Login Succeeded"}

    def image_pull(self, ref: str, auth_token: str) -> FakeStream:
        self.calls.append(("pull", ref))
        self.pulls.append((ref, auth_token))
        return self._answer(self.pull_result)

    def image_build(
        self,
        context: IO[bytes],
        *,
        tags: Sequence[str],
        cache_from: Sequence[str],
        dockerfile: str,
    ) -> FakeStream:
        self.calls.append(("build", tuple(tags)))
        self.builds.append(
            {
                "context": context.read(),
                "tags": list(tags),
                "cache_from": list(cache_from),
                "dockerfile": dockerfile,
            }
        )
        return self._answer(self.build_result)

    def image_push(self, ref: str, auth_token: str) -> FakeStream:
        self.calls.append(("push", ref))
        self.pushes.append((ref, auth_token))
        if ref in self.push_results:
            return self._answer(self.push_results[ref])
        if self.push_result is not None:
            return self._answer(self.push_result)
        return self._answer(FakeStream())

    def close(self) -> None:
        self.closed = True

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture(autouse=True)
def clean_step_inputs(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove step inputs inherited from the surrounding CI environment."""
    for name in STEP_INPUTS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def mandatory_inputs(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set the mandatory step inputs and a default-branch ref."""
    monkeypatch.setenv("INPUT_NAME", "my/testimage")
    monkeypatch.setenv("INPUT_USERNAME", "USERNAME")
    monkeypatch.setenv("INPUT_PASSWORD", "PASSWORD")
    monkeypatch.setenv("GITHUB_REF", "refs/heads/master")


@pytest.fixture
def engine() -> FakeEngine:
    """Create a fresh recording engine double."""
    return FakeEngine()


@pytest.fixture
def build_context(tmp_path: Path) -> Path:
    """Create a temporary build context with a Dockerfile.

    Returns:
        Path to the build context directory.
    """
    (tmp_path / "Dockerfile").write_text("FROM scratch")
    return tmp_path


@pytest.fixture
def sink() -> list[str]:
    """Collect relayed log entries; pass ``sink.append`` to the pipeline."""
    return []
