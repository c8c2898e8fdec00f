"""Error taxonomy for the publish pipeline.

Every fatal failure surfaces as a ``PublishError`` subclass. The pipeline
never wraps these: an error raised by the engine client reaches the caller
as the very same object, so the process wiring can print its message as the
single terminal error line.

Cache misses have no error type. A failed cache pull is recovered
inside the pipeline and never escapes it.
"""

from __future__ import annotations


class PublishError(Exception):
    """Base class for all fatal publish pipeline errors."""


class ConfigError(PublishError):
    """Raised when a required input is missing or malformed.

    Attributes:
        field: Name of the offending input, if a single one is to blame.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class AuthError(PublishError):
    """Raised when the registry rejects the login."""


class PullError(PublishError):
    """Raised when pulling an image fails."""


class BuildError(PublishError):
    """Raised when the engine refuses to start the image build."""


class PushError(PublishError):
    """Raised when pushing a tag fails.

    Attributes:
        ref: Fully qualified reference that failed to push.
    """

    def __init__(self, message: str, ref: str) -> None:
        self.ref = ref
        super().__init__(message)
