"""Image tag derivation from CI metadata.

The ref that triggered the run selects the primary tag:

    refs/heads/master      -> latest
    refs/tags/<anything>   -> latest
    refs/heads/<branch>    -> <branch>

Branch names pass through verbatim. A branch containing characters that are
invalid in a Docker tag yields an invalid reference; the engine rejects it at
build time.

With snapshots enabled, a second tag pins the exact build:
``<YYYYMMDDhhmmss><first 6 chars of the commit SHA>``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from docker_publish.config import SNAPSHOT_SHA_LENGTH, PublishConfig
from docker_publish.errors import ConfigError
from docker_publish.logging import get_logger

DEFAULT_BRANCH_REF = "refs/heads/master"
BRANCH_REF_PREFIX = "refs/heads/"
TAG_REF_PREFIX = "refs/tags"
LATEST_TAG = "latest"
SNAPSHOT_TIME_FORMAT = "%Y%m%d%H%M%S"

logger = get_logger(__name__)


class TagPlan(BaseModel):
    """Fully qualified image references to build and push.

    Attributes:
        canonical_name: ``registry/image`` without a tag
        tags: Fully qualified references, ref tag first then snapshot tag
    """

    model_config = ConfigDict(frozen=True)

    canonical_name: str
    tags: tuple[str, ...] = Field(min_length=1, max_length=2)

    @property
    def primary_tag(self) -> str:
        """The ref-derived reference, used for cache seeding."""
        return self.tags[0]


def translate_ref_to_tag(ref: str) -> str:
    """Map a source-control ref to an image tag.

    Args:
        ref: Ref such as ``refs/heads/feature-x`` or ``refs/tags/v1.0.0``

    Returns:
        ``latest`` for the default branch and for tag refs, otherwise the
        branch name
    """
    if ref == DEFAULT_BRANCH_REF:
        return LATEST_TAG
    if ref.startswith(TAG_REF_PREFIX):
        return LATEST_TAG
    return ref.removeprefix(BRANCH_REF_PREFIX)


def snapshot_tag(build_time: datetime, commit_sha: str) -> str:
    """Build the point-in-time snapshot tag.

    Args:
        build_time: Timestamp of the run
        commit_sha: Commit SHA, at least 6 characters

    Returns:
        Formatted timestamp followed by the short SHA

    Raises:
        ConfigError: If the commit SHA is shorter than 6 characters
    """
    if len(commit_sha) < SNAPSHOT_SHA_LENGTH:
        raise ConfigError(
            f"Unable to create a snapshot tag from commit SHA '{commit_sha}'. "
            "Is GITHUB_SHA set?",
            field="sha",
        )
    return build_time.strftime(SNAPSHOT_TIME_FORMAT) + commit_sha[:SNAPSHOT_SHA_LENGTH]


def plan_tags(
    registry_address: str,
    image_name: str,
    ref: str,
    build_time: datetime,
    commit_sha: str,
    snapshot_enabled: bool,
) -> TagPlan:
    """Derive the canonical name and ordered tag list for a run.

    The result is a pure function of the arguments.

    Args:
        registry_address: Registry host
        image_name: Image name within the registry
        ref: Source-control ref of the run
        build_time: Timestamp of the run
        commit_sha: Commit SHA of the run
        snapshot_enabled: Whether to append the snapshot tag

    Returns:
        TagPlan with one or two fully qualified references

    Raises:
        ConfigError: If snapshots are enabled and the SHA is too short
    """
    canonical_name = f"{registry_address}/{image_name}"
    tags = [f"{canonical_name}:{translate_ref_to_tag(ref)}"]
    if snapshot_enabled:
        tags.append(f"{canonical_name}:{snapshot_tag(build_time, commit_sha)}")

    logger.debug("tags_planned", canonical_name=canonical_name, tags=tags)

    return TagPlan(canonical_name=canonical_name, tags=tuple(tags))


def plan_tags_for(config: PublishConfig) -> TagPlan:
    """Derive the tag plan for a resolved configuration."""
    return plan_tags(
        registry_address=config.registry_address,
        image_name=config.image_name,
        ref=config.source_ref,
        build_time=config.build_time,
        commit_sha=config.commit_sha,
        snapshot_enabled=config.snapshot_enabled,
    )
