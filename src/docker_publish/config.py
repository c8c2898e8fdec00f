"""Configuration management for docker-publish.

This module reads the step inputs with Pydantic settings and resolves them,
once, into an immutable ``PublishConfig``. No other module reads the process
environment after resolution.

GitHub Actions exposes every ``with:`` input as an ``INPUT_<NAME>`` variable
and the triggering ref and commit as ``GITHUB_REF`` / ``GITHUB_SHA``:

    INPUT_NAME=my/image
    INPUT_USERNAME=octocat
    INPUT_PASSWORD=secret
    INPUT_REGISTRY=docker.pkg.github.com
    INPUT_SNAPSHOT=true
    GITHUB_REF=refs/heads/master
    GITHUB_SHA=1dbfb40621d5d4a13d51d97b3f52732fda0432ad

Diagnostic logging is configured separately through ``PUBLISH_LOGGING__*``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from docker_publish.errors import ConfigError

DEFAULT_REGISTRY = "docker.io"
SNAPSHOT_SHA_LENGTH = 6

# Ordered: only the first missing input is reported
_MANDATORY_INPUTS: tuple[tuple[str, str], ...] = (
    ("name", "image_name"),
    ("username", "username"),
    ("password", "password"),
)


class LoggingSettings(BaseSettings):
    """Diagnostic logging configuration.

    Diagnostics are quiet by default: a CI step's output is the relayed engine
    log and, on failure, one error line.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
    """

    model_config = SettingsConfigDict(env_prefix="PUBLISH_LOGGING__")

    level: str = Field(default="WARNING")
    format: Literal["json", "console"] = Field(default="console")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Upper-case the level and check that logging knows it."""
        v_upper = v.upper()
        if v_upper not in logging.getLevelNamesMapping():
            raise ValueError(f"Invalid log level: {v}")
        return v_upper


class PublishSettings(BaseSettings):
    """Raw step inputs as read from the environment.

    Every field is optional at this level so that missing inputs can be
    reported one at a time, in a fixed order, by ``resolve_config``.

    Attributes:
        name: Image name, e.g. ``my/image``
        username: Registry username
        password: Registry password or access token
        registry: Registry host overriding the public default
        cache: Enable the cache-seeding pull (any non-empty value)
        snapshot: Enable the timestamp+SHA snapshot tag (any non-empty value)
        dockerfile: Custom build-file path relative to the build context
        ref: Source-control ref that triggered the run
        sha: Commit SHA that triggered the run
    """

    model_config = SettingsConfigDict(
        env_prefix="INPUT_",
        extra="ignore",
        populate_by_name=True,
    )

    name: str = Field(default="")
    username: str = Field(default="")
    password: str = Field(default="")
    registry: str = Field(default="")
    cache: bool = Field(default=False)
    snapshot: bool = Field(default=False)
    dockerfile: str = Field(default="")
    ref: str = Field(default="", validation_alias="GITHUB_REF")
    sha: str = Field(default="", validation_alias="GITHUB_SHA")

    @field_validator("cache", "snapshot", mode="before")
    @classmethod
    def presence_as_boolean(cls, v: Any) -> bool:
        """Treat any non-empty input as enabled, including ``"false"``."""
        if isinstance(v, str):
            return v != ""
        return bool(v)


class PublishConfig(BaseModel):
    """Validated, immutable configuration for a single publish run.

    Attributes:
        image_name: Image name combined with the registry address
        username: Registry username
        password: Registry password
        registry_address: Registry host
        cache_enabled: Whether to seed the build cache with a pull
        snapshot_enabled: Whether to add the snapshot tag
        custom_dockerfile: Custom build-file path, None for the default
        source_ref: Ref driving tag derivation
        commit_sha: Commit SHA driving the snapshot tag
        build_time: Timestamp used for the snapshot tag
    """

    model_config = ConfigDict(frozen=True)

    image_name: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    registry_address: str = Field(default=DEFAULT_REGISTRY, min_length=1)
    cache_enabled: bool = False
    snapshot_enabled: bool = False
    custom_dockerfile: str | None = None
    source_ref: str = Field(min_length=1)
    commit_sha: str = ""
    build_time: datetime


def resolve_config(
    build_time: datetime,
    settings: PublishSettings | None = None,
) -> PublishConfig:
    """Resolve step inputs into a validated ``PublishConfig``.

    Args:
        build_time: Timestamp of this run, used for snapshot tags.
        settings: Pre-read inputs. If None, inputs are read from the
            environment.

    Returns:
        PublishConfig: Immutable configuration for the run.

    Raises:
        ConfigError: If a required input is missing. Only the first missing
            input, in the order name, username, password, source ref, is
            reported.
    """
    if settings is None:
        settings = PublishSettings()

    values = {
        "image_name": settings.name,
        "username": settings.username,
        "password": settings.password,
    }
    for field, key in _MANDATORY_INPUTS:
        if values[key] == "":
            raise ConfigError(
                f"Unable to find the {field}. Did you set with.{field}?",
                field=field,
            )

    if settings.ref == "":
        raise ConfigError("Unable to find the source ref. Is GITHUB_REF set?", field="ref")

    if settings.snapshot and len(settings.sha) < SNAPSHOT_SHA_LENGTH:
        raise ConfigError(
            f"Unable to create a snapshot tag from commit SHA '{settings.sha}'. "
            "Is GITHUB_SHA set?",
            field="sha",
        )

    return PublishConfig(
        image_name=settings.name,
        username=settings.username,
        password=settings.password,
        registry_address=settings.registry or DEFAULT_REGISTRY,
        cache_enabled=settings.cache,
        snapshot_enabled=settings.snapshot,
        custom_dockerfile=settings.dockerfile or None,
        source_ref=settings.ref,
        commit_sha=settings.sha,
        build_time=build_time,
    )
