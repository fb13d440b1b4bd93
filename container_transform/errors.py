#!/usr/bin/env python3
"""
Exception hierarchy for container transformation.

Each subsystem raises its own error type; the per-container pipeline
turns any of them into a failed transform result.
"""


class TransformError(RuntimeError):
    """Base exception for all transformation failures."""


class ConfigError(TransformError):
    """Raised for an invalid or unreadable configuration file."""


class DockerCommandError(TransformError):
    """Raised when a docker CLI call fails."""


class ImageServiceError(TransformError):
    """Raised when the image service reports a transport or embedded error."""


class TransformCancelled(TransformError):
    """Raised at a pipeline checkpoint after cancellation was requested."""
