"""docker-publish - Build a container image in CI and push its tags to a registry.

This package provides the publish pipeline behind a continuous-integration
step: configuration resolution from the runner environment, registry login,
optional cache seeding, image build with streamed logs, and sequential push
of every derived tag.
"""

__version__ = "0.1.0"
