"""The publish pipeline: login, cache seeding, build and push.

Stages run strictly in sequence, each blocking on its engine call:

    init -> validated -> authenticated -> [cache_probed] -> built
         -> pushed (n/N) -> done

The first error moves the pipeline to ``failed`` and is re-raised to the
caller unmodified. The only engine error handled here is a failed cache
pull, which simply disables caching for the run. Nothing is retried and
tags that were already pushed stay published.

Each response stream is relayed to the log sink and closed before the next
stage starts, so at most one stream is open at any time.

Example usage:
    >>> from docker_publish.engine import DockerEngineClient
    >>> from docker_publish.pipeline import publish
    >>>
    >>> state = publish(DockerEngineClient(), Path("."), datetime.now())
    >>> state.stage
    <PipelineStage.DONE: 'done'>
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import closing
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO

from pydantic import BaseModel, ConfigDict, Field

from docker_publish.config import PublishConfig, PublishSettings, resolve_config
from docker_publish.context import package_context
from docker_publish.engine import DEFAULT_DOCKERFILE, Credential, EngineClient
from docker_publish.errors import PushError
from docker_publish.logging import bind_run_context, clear_run_context, get_logger
from docker_publish.logstream import (
    BuildLogRecord,
    LogSink,
    PushLogRecord,
    RelayResult,
    relay,
    stdout_sink,
)
from docker_publish.tags import TagPlan, plan_tags_for

logger = get_logger(__name__)


class PipelineStage(str, Enum):
    """Stage of a publish run.

    Attributes:
        INIT: Nothing has happened yet
        VALIDATED: Configuration resolved
        AUTHENTICATED: Registry login succeeded
        CACHE_PROBED: Cache-seeding pull attempted
        BUILT: Image build finished
        PUSHED: At least one tag pushed
        DONE: Every tag pushed
        FAILED: A stage raised; terminal
    """

    INIT = "init"
    VALIDATED = "validated"
    AUTHENTICATED = "authenticated"
    CACHE_PROBED = "cache_probed"
    BUILT = "built"
    PUSHED = "pushed"
    DONE = "done"
    FAILED = "failed"


VALID_TRANSITIONS: dict[PipelineStage, set[PipelineStage]] = {
    PipelineStage.INIT: {PipelineStage.VALIDATED, PipelineStage.FAILED},
    PipelineStage.VALIDATED: {PipelineStage.AUTHENTICATED, PipelineStage.FAILED},
    PipelineStage.AUTHENTICATED: {
        PipelineStage.CACHE_PROBED,
        PipelineStage.BUILT,
        PipelineStage.FAILED,
    },
    PipelineStage.CACHE_PROBED: {PipelineStage.BUILT, PipelineStage.FAILED},
    PipelineStage.BUILT: {PipelineStage.PUSHED, PipelineStage.FAILED},
    # One self-transition per additional pushed tag
    PipelineStage.PUSHED: {PipelineStage.PUSHED, PipelineStage.DONE, PipelineStage.FAILED},
    PipelineStage.DONE: set(),
    PipelineStage.FAILED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when an invalid stage transition is attempted.

    Attributes:
        current: The current stage.
        target: The attempted target stage.
    """

    def __init__(self, current: PipelineStage, target: PipelineStage) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition from {current.value} to {target.value}")


def validate_transition(current: PipelineStage, target: PipelineStage) -> bool:
    """Return True if moving from ``current`` to ``target`` is allowed."""
    return target in VALID_TRANSITIONS.get(current, set())


class PipelineState(BaseModel):
    """Progress of a publish run.

    Attributes:
        stage: Current stage
        failed_stage: Stage that was being attempted when the run failed
        pushed: Number of tags pushed so far
        total: Number of tags planned
    """

    stage: PipelineStage = Field(default=PipelineStage.INIT)
    failed_stage: PipelineStage | None = Field(default=None)
    pushed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class BuildPlan(BaseModel):
    """Everything the build call needs besides the context.

    Attributes:
        tags: Fully qualified references to apply, in plan order
        cache_from: Empty, or the single reference seeding the cache
        dockerfile: Custom build-file path, None for the default
    """

    model_config = ConfigDict(frozen=True)

    tags: tuple[str, ...] = Field(min_length=1)
    cache_from: tuple[str, ...] = Field(default=(), max_length=1)
    dockerfile: str | None = None


def build_plan_for(
    tag_plan: TagPlan,
    cache_from: str | None,
    dockerfile: str | None,
) -> BuildPlan:
    """Combine the tag plan with cache and build-file overrides."""
    return BuildPlan(
        tags=tag_plan.tags,
        cache_from=(cache_from,) if cache_from is not None else (),
        dockerfile=dockerfile,
    )


def authenticate(engine: EngineClient, credential: Credential) -> str:
    """Log into the registry and return the auth token for pulls and pushes.

    Args:
        engine: Engine client
        credential: Registry credentials

    Returns:
        Registry-auth token, reused unmodified for the whole run

    Raises:
        Exception: Whatever the engine raised, unchanged
    """
    logger.info(
        "registry_login_started",
        registry=credential.registry_address,
        username=credential.username,
    )
    engine.registry_login(credential)
    logger.info("registry_login_succeeded", registry=credential.registry_address)
    return credential.auth_token()


def seed_cache(
    engine: EngineClient,
    enabled: bool,
    primary_tag: str,
    auth_token: str,
    sink: LogSink = stdout_sink,
) -> str | None:
    """Pull the primary tag so the build can reuse its layers.

    Every failure, whether the image is absent, the registry refuses or the
    network breaks, counts as a cache miss and is not raised.

    Args:
        engine: Engine client
        enabled: Whether cache seeding is configured
        primary_tag: Reference to pull
        auth_token: Registry-auth token
        sink: Receives the pull log

    Returns:
        The pulled reference to use as cache source, or None
    """
    if not enabled:
        return None

    logger.info("cache_pull_started", ref=primary_tag)
    try:
        stream = engine.image_pull(primary_tag, auth_token)
    except Exception as e:
        logger.info("cache_pull_failed", ref=primary_tag, error=str(e))
        return None

    with closing(stream):
        try:
            result = relay(stream, PushLogRecord, sink)
        except Exception as e:
            logger.info("cache_pull_failed", ref=primary_tag, error=str(e))
            return None

    if result.errors:
        logger.info("cache_pull_failed", ref=primary_tag, error=result.errors[0])
        return None

    logger.info("cache_pull_succeeded", ref=primary_tag, log_lines=result.relayed)
    return primary_tag


def build_image(
    engine: EngineClient,
    context: IO[bytes],
    plan: BuildPlan,
    sink: LogSink = stdout_sink,
) -> RelayResult | None:
    """Build the image once with every planned tag and relay its log.

    Errors while reading the build log are logged and ignored: the build has
    already been submitted, only its reporting is affected.

    Args:
        engine: Engine client
        context: Tar build context
        plan: Build plan
        sink: Receives the build log

    Returns:
        Relay outcome, or None if the log could not be read

    Raises:
        Exception: Whatever the engine raised when starting the build
    """
    logger.info(
        "docker_build_started",
        tags=list(plan.tags),
        cache_from=list(plan.cache_from),
        dockerfile=plan.dockerfile or DEFAULT_DOCKERFILE,
    )
    stream = engine.image_build(
        context,
        tags=plan.tags,
        cache_from=plan.cache_from,
        dockerfile=plan.dockerfile or DEFAULT_DOCKERFILE,
    )

    with closing(stream):
        try:
            result = relay(stream, BuildLogRecord, sink)
        except Exception as e:
            logger.warning(
                "docker_build_stream_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    for error in result.errors:
        logger.error("docker_build_stream_error", error=error)

    logger.info("docker_build_finished", log_lines=result.relayed, dropped=result.dropped)
    return result


def push_image(
    engine: EngineClient,
    ref: str,
    auth_token: str,
    sink: LogSink = stdout_sink,
) -> None:
    """Push a single reference and relay its log.

    Raises:
        PushError: If the registry reported an error inside the push log
        Exception: Whatever the engine raised when starting the push
    """
    logger.info("docker_push_started", ref=ref)
    stream = engine.image_push(ref, auth_token)

    with closing(stream):
        try:
            result = relay(stream, PushLogRecord, sink)
        except Exception as e:
            logger.warning(
                "docker_push_stream_error",
                ref=ref,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

    if result.errors:
        raise PushError(result.errors[0], ref=ref)

    logger.info("docker_push_succeeded", ref=ref, log_lines=result.relayed)


def push_all(
    engine: EngineClient,
    tags: Sequence[str],
    auth_token: str,
    sink: LogSink = stdout_sink,
    on_pushed: Callable[[str], None] | None = None,
) -> None:
    """Push every reference in order, stopping at the first failure.

    References after a failing one are never attempted. References already
    pushed are left in place.

    Args:
        engine: Engine client
        tags: Fully qualified references, in plan order
        auth_token: Registry-auth token
        sink: Receives each push log
        on_pushed: Called with each reference after it was pushed

    Raises:
        Exception: The first push error, unchanged
    """
    for ref in tags:
        push_image(engine, ref, auth_token, sink)
        if on_pushed is not None:
            on_pushed(ref)


class PublishPipeline:
    """Runs one publish from configuration to pushed tags.

    Attributes:
        engine: Engine client performing login, pull, build and push
        sink: Receives relayed pull, build and push log entries
        state: Progress of the run
    """

    def __init__(self, engine: EngineClient, sink: LogSink = stdout_sink) -> None:
        self.engine = engine
        self.sink = sink
        self.state = PipelineState()
        self.tag_plan: TagPlan | None = None
        self.build_plan: BuildPlan | None = None
        self._attempting = PipelineStage.VALIDATED
        self.logger = logger.bind(component="PublishPipeline")

    def _transition(self, target: PipelineStage) -> None:
        current = self.state.stage
        if not validate_transition(current, target):
            raise InvalidTransitionError(current, target)
        self.state.stage = target
        self.logger.info(
            "pipeline_transition",
            from_stage=current.value,
            to_stage=target.value,
            pushed=self.state.pushed,
            total=self.state.total,
        )

    def _fail(self, error: Exception) -> None:
        self.state.failed_stage = self._attempting
        self._transition(PipelineStage.FAILED)
        # Reported to the user by the caller
        self.logger.debug(
            "pipeline_failed",
            stage=self._attempting.value,
            error=str(error),
            error_type=type(error).__name__,
        )

    def publish(
        self,
        context_path: Path,
        build_time: datetime,
        settings: PublishSettings | None = None,
    ) -> PipelineState:
        """Resolve configuration from the environment and run the pipeline.

        Args:
            context_path: Build-context directory
            build_time: Timestamp of the run
            settings: Pre-read inputs. If None, read from the environment.

        Returns:
            Final pipeline state

        Raises:
            ConfigError: If a required input is missing; no engine call is made
            Exception: The first fatal stage error, unchanged
        """
        try:
            config = resolve_config(build_time, settings)
        except Exception as e:
            self._fail(e)
            raise
        return self.run(config, context_path)

    def run(self, config: PublishConfig, context_path: Path) -> PipelineState:
        """Run every stage for a resolved configuration.

        Args:
            config: Resolved configuration
            context_path: Build-context directory

        Returns:
            Final pipeline state

        Raises:
            Exception: The first fatal stage error, unchanged
        """
        try:
            self._run(config, context_path)
        except Exception as e:
            self._fail(e)
            raise
        finally:
            clear_run_context()
        return self.state

    def _run(self, config: PublishConfig, context_path: Path) -> None:
        self._transition(PipelineStage.VALIDATED)

        self._attempting = PipelineStage.AUTHENTICATED
        credential = Credential(
            username=config.username,
            password=config.password,
            registry_address=config.registry_address,
        )
        auth_token = authenticate(self.engine, credential)
        self._transition(PipelineStage.AUTHENTICATED)

        tag_plan = plan_tags_for(config)
        self.tag_plan = tag_plan
        self.state.total = len(tag_plan.tags)
        bind_run_context(image=tag_plan.canonical_name, ref=config.source_ref)

        cache_from = None
        if config.cache_enabled:
            self._attempting = PipelineStage.CACHE_PROBED
            cache_from = seed_cache(
                self.engine, True, tag_plan.primary_tag, auth_token, self.sink
            )
            self._transition(PipelineStage.CACHE_PROBED)

        self._attempting = PipelineStage.BUILT
        build_plan = build_plan_for(tag_plan, cache_from, config.custom_dockerfile)
        self.build_plan = build_plan
        with closing(package_context(context_path, config.custom_dockerfile)) as context:
            build_image(self.engine, context, build_plan, self.sink)
        self._transition(PipelineStage.BUILT)

        self._attempting = PipelineStage.PUSHED
        push_all(
            self.engine,
            build_plan.tags,
            auth_token,
            self.sink,
            on_pushed=self._on_pushed,
        )
        self._transition(PipelineStage.DONE)

    def _on_pushed(self, ref: str) -> None:
        self.state.pushed += 1
        self._transition(PipelineStage.PUSHED)


def publish(
    engine: EngineClient,
    context_path: Path,
    build_time: datetime,
    settings: PublishSettings | None = None,
    sink: LogSink = stdout_sink,
) -> PipelineState:
    """Publish the image built from ``context_path``.

    Args:
        engine: Engine client
        context_path: Build-context directory
        build_time: Timestamp of the run, used for snapshot tags
        settings: Pre-read inputs. If None, read from the environment.
        sink: Receives relayed pull, build and push log entries

    Returns:
        Final pipeline state

    Raises:
        Exception: The first fatal error, unchanged
    """
    return PublishPipeline(engine, sink=sink).publish(context_path, build_time, settings)
