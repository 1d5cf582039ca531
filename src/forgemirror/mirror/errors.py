"""Exceptions raised while serving a mirror request."""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for mirror failures that map onto an HTTP status."""

    status_code = 500


class PathResolutionError(MirrorError):
    status_code = 400


class InvalidPath(PathResolutionError):
    """The request path is empty or cannot be parsed."""


class UnsupportedHost(PathResolutionError):
    """An absolute URL in the path points outside the allow-listed hosts."""

    def __init__(self, host: str) -> None:
        super().__init__(f"Host not mirrored: {host}")
        self.host = host


class MethodNotAllowed(MirrorError):
    status_code = 405

    def __init__(self, method: str) -> None:
        super().__init__(f"Method not allowed: {method}")
        self.method = method


class UpstreamUnavailable(MirrorError):
    """Every attempt against the source host failed without a response."""

    status_code = 502

    def __init__(self, url: str, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(f"Upstream request to {url} failed after {attempts} attempt(s)")
        self.url = url
        self.attempts = attempts
        self.cause = cause


class UpstreamTimeout(UpstreamUnavailable):
    status_code = 504
