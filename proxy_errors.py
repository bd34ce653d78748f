"""
Error taxonomy shared by the resolver, fetch client, rewriter and dispatcher.
"""
from enum import Enum


class ErrorKind(Enum):
    INVALID_TARGET = 'invalid_target'
    TIMEOUT = 'timeout'
    HTTP_ERROR = 'http_error'
    NETWORK = 'network_error'
    TOO_MANY_REDIRECTS = 'too_many_redirects'
    INTERNAL = 'internal_error'


class ProxyError(Exception):
    """Base class for failures that end up on an error page."""
    status_code = 500
    kind = ErrorKind.INTERNAL

    def __init__(self, message, url=None):
        super().__init__(message)
        self.message = message
        self.url = url


class InvalidTarget(ProxyError):
    """The requested target is malformed or uses a disallowed scheme."""
    status_code = 400
    kind = ErrorKind.INVALID_TARGET


class UpstreamError(ProxyError):
    """The remote site timed out, refused the connection or answered non-2xx."""
    status_code = 502

    def __init__(self, kind, message, url=None, status=None):
        super().__init__(message, url)
        self.kind = kind
        self.status = status

    def __str__(self):
        if self.status is not None:
            return f"{self.kind.value} ({self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"


class RewriteFailure(ProxyError):
    """A rewrite rule could not be applied; the chunk is passed through unmodified."""

    def __init__(self, rule, cause):
        super().__init__(f"rewrite rule {rule!r} failed: {cause}")
        self.rule = rule
        self.cause = cause
