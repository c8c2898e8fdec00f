"""Container engine capability consumed by the publish pipeline.

The pipeline depends on exactly four engine operations, captured by the
``EngineClient`` protocol. ``DockerEngineClient`` implements them on top of
docker-py's low-level API client; tests substitute a recording double.

Pull, build and push answer with a ``LogStream``: a lazy, finite,
non-restartable iterable of raw response chunks that must be closed once
consumed or abandoned.

Example usage:
    >>> from docker_publish.engine import DockerEngineClient
    >>>
    >>> engine = DockerEngineClient()
    >>> engine.registry_login(credential)
    >>> stream = engine.image_push("docker.io/my/image:latest", token)
    >>> try:
    ...     for chunk in stream:
    ...         print(chunk)
    ... finally:
    ...     stream.close()
"""

from __future__ import annotations

import base64
import json
from collections.abc import Iterator, Sequence
from typing import IO, Any, Protocol, runtime_checkable

import docker
from docker.errors import APIError, DockerException
from pydantic import BaseModel, ConfigDict

from docker_publish.errors import AuthError, BuildError, PullError, PushError
from docker_publish.logging import get_logger

DEFAULT_DOCKERFILE = "Dockerfile"

logger = get_logger(__name__)


class Credential(BaseModel):
    """Registry credentials for a publish run.

    Attributes:
        username: Registry username
        password: Registry password or access token
        registry_address: Registry server address
    """

    model_config = ConfigDict(frozen=True)

    username: str
    password: str
    registry_address: str

    def auth_config(self) -> dict[str, str]:
        """Return the engine's auth configuration object."""
        return {
            "username": self.username,
            "password": self.password,
            "serveraddress": self.registry_address,
        }

    def auth_token(self) -> str:
        """Encode the credential as an engine registry-auth token.

        Returns:
            URL-safe base64 of the compact JSON auth configuration
        """
        encoded = json.dumps(self.auth_config(), separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(encoded).decode("ascii")


def decode_auth_token(token: str) -> dict[str, str]:
    """Decode a registry-auth token back into an auth configuration.

    Args:
        token: Token produced by ``Credential.auth_token``

    Returns:
        Auth configuration dictionary
    """
    decoded: dict[str, str] = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    return decoded


@runtime_checkable
class LogStream(Protocol):
    """Streamed engine response body."""

    def __iter__(self) -> Iterator[bytes | str]: ...

    def close(self) -> None: ...


class EngineClient(Protocol):
    """The four engine operations the publish pipeline consumes."""

    def registry_login(self, credential: Credential) -> Any: ...

    def image_pull(self, ref: str, auth_token: str) -> LogStream: ...

    def image_build(
        self,
        context: IO[bytes],
        *,
        tags: Sequence[str],
        cache_from: Sequence[str],
        dockerfile: str,
    ) -> LogStream: ...

    def image_push(self, ref: str, auth_token: str) -> LogStream: ...


class _PrimedStream:
    """A response stream whose first chunk was read ahead of time."""

    def __init__(self, first: bytes | str | None, rest: Iterator[bytes | str]) -> None:
        self._first = first
        self._rest = rest

    def __iter__(self) -> Iterator[bytes | str]:
        if self._first is not None:
            first, self._first = self._first, None
            yield first
        yield from self._rest

    def close(self) -> None:
        """Release the response.

        The remaining body is drained first so that the underlying HTTP
        response is read to the end and its connection returned to the pool.
        """
        try:
            for _ in self._rest:
                pass
        except Exception as e:
            logger.debug(
                "docker_stream_drain_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            close = getattr(self._rest, "close", None)
            if close is not None:
                close()


class DockerEngineClient:
    """``EngineClient`` implementation backed by docker-py.

    The connection honors ``DOCKER_HOST`` and the other standard Docker
    environment variables, and is deferred until first use.

    Attributes:
        logger: Structured logger instance
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        """Initialize the engine client.

        Args:
            client: Existing docker-py client. If None, one is created from
                the environment on first use.
        """
        self.logger = get_logger(__name__)
        self._client = client

    def _get_api(self) -> docker.APIClient:
        """Get or create the low-level Docker API client.

        Raises:
            DockerException: If unable to connect to the Docker daemon
        """
        if self._client is None:
            try:
                self._client = docker.DockerClient.from_env()
                self.logger.info("docker_client_connected")
            except DockerException as e:
                self.logger.debug(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
        return self._client.api

    def registry_login(self, credential: Credential) -> Any:
        """Log into the registry.

        Raises:
            AuthError: If the registry rejects the credentials
        """
        api = self._get_api()
        try:
            return api.login(
                username=credential.username,
                password=credential.password,
                registry=credential.registry_address,
                # Always contact the registry, even with stored credentials
                reauth=True,
            )
        except DockerException as e:
            raise AuthError(str(e)) from e

    def image_pull(self, ref: str, auth_token: str) -> LogStream:
        """Pull an image reference.

        Raises:
            PullError: If the pull cannot be started
        """
        api = self._get_api()
        try:
            stream = api.pull(
                ref,
                stream=True,
                auth_config=decode_auth_token(auth_token),
            )
            return _prime(stream)
        except DockerException as e:
            raise PullError(str(e)) from e

    def image_build(
        self,
        context: IO[bytes],
        *,
        tags: Sequence[str],
        cache_from: Sequence[str],
        dockerfile: str = DEFAULT_DOCKERFILE,
    ) -> LogStream:
        """Build an image from a tar build context.

        The engine reports request errors only once the response is read, so
        the first chunk is read here to surface them at invocation time.

        Raises:
            BuildError: If the engine refuses the build request
        """
        build_kwargs: dict[str, Any] = {
            "fileobj": context,
            "custom_context": True,
            # Repeated ``t`` query parameters, one per tag
            "tag": list(tags),
            "dockerfile": dockerfile,
            "rm": True,
        }
        if cache_from:
            build_kwargs["cache_from"] = list(cache_from)

        api = self._get_api()
        try:
            stream = api.build(**build_kwargs)
            return _prime(stream)
        except DockerException as e:
            raise BuildError(str(e)) from e

    def image_push(self, ref: str, auth_token: str) -> LogStream:
        """Push an image reference.

        Raises:
            PushError: If the push cannot be started
        """
        api = self._get_api()
        try:
            stream = api.push(
                ref,
                stream=True,
                auth_config=decode_auth_token(auth_token),
            )
            return _prime(stream)
        except DockerException as e:
            raise PushError(str(e), ref=ref) from e

    def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times or if the client was never connected.
        """
        if self._client is not None:
            try:
                self._client.close()
                self.logger.info("docker_client_closed")
            except Exception as e:
                self.logger.warning("docker_client_close_error", error=str(e))
            finally:
                self._client = None


def _prime(stream: Iterator[bytes | str]) -> _PrimedStream:
    """Read the first chunk of a lazy docker-py response stream.

    Raises:
        APIError: If the engine answered the request with an error status
    """
    try:
        first = next(stream)
    except StopIteration:
        first = None
    except APIError:
        close = getattr(stream, "close", None)
        if close is not None:
            close()
        raise
    return _PrimedStream(first, stream)
