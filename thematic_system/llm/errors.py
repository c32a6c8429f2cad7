"""
Classification of generator errors into retry classes.

SDK exception hierarchies differ between providers, so classification works
on the error message first and on a handful of well-known types second.
"""

import asyncio
import builtins
import re
from enum import Enum

import httpx

from ..exceptions import (
    ExternalServiceError,
    FatalExternalError,
    TimeoutError as TaskTimeoutError,
    TransientExternalError,
    ValidationError,
)


class ExternalErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    AUTH = "auth"
    VALIDATION = "validation"
    SERVER = "server"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = {
    ExternalErrorKind.RATE_LIMIT,
    ExternalErrorKind.NETWORK,
    ExternalErrorKind.SERVER,
    ExternalErrorKind.VALIDATION,
}

# Checked in order; the first matching class wins.
_PATTERNS = [
    (ExternalErrorKind.RATE_LIMIT, re.compile(r"rate.?limit|\b429\b|too many requests|quota", re.I)),
    (ExternalErrorKind.AUTH, re.compile(
        r"\b401\b|\b403\b|unauthori[sz]ed|authenticat|api.?key|forbidden|permission denied", re.I)),
    (ExternalErrorKind.SERVER, re.compile(
        r"\b50[0234]\b|\b529\b|server error|internal error|overloaded|service unavailable|bad gateway", re.I)),
    (ExternalErrorKind.NETWORK, re.compile(
        r"network|connection|timed? ?out|timeout|econnreset|econnrefused|socket|dns|unreachable", re.I)),
    (ExternalErrorKind.VALIDATION, re.compile(
        r"json|pars(e|ing)|unterminated|malformed|invalid|validation|unexpected (token|end)|"
        r"context length|too large|truncat|max(imum)? tokens", re.I)),
]

_PAYLOAD_SIGNATURE = re.compile(
    r"token|context length|too large|payload|truncat|json|unterminated|pars(e|ing)|malformed", re.I
)


def classify_error(error) -> ExternalErrorKind:
    """
    Classify an exception (or a bare message) into an ExternalErrorKind.

    Args:
        error: Exception instance or error message

    Returns:
        The matching error kind, UNKNOWN when nothing matches
    """
    if isinstance(error, ExternalServiceError):
        try:
            return ExternalErrorKind(error.kind)
        except ValueError:
            pass
    elif isinstance(error, ValidationError):
        return ExternalErrorKind.VALIDATION
    elif isinstance(error, (asyncio.TimeoutError, builtins.TimeoutError, TaskTimeoutError,
                            httpx.TimeoutException, httpx.TransportError)):
        return ExternalErrorKind.NETWORK

    message = str(error) if error is not None else ""
    for kind, pattern in _PATTERNS:
        if pattern.search(message):
            return kind
    return ExternalErrorKind.UNKNOWN


def is_retryable(error) -> bool:
    return classify_error(error).retryable


def suggests_payload_problem(error) -> bool:
    """True when an error looks like an oversized request or truncated/malformed output."""
    if isinstance(error, ValidationError):
        return True
    return bool(_PAYLOAD_SIGNATURE.search(str(error)))


def to_external_error(error: BaseException, provider: str = None) -> ExternalServiceError:
    """Wrap an arbitrary exception as a transient or fatal external error."""
    if isinstance(error, ExternalServiceError):
        return error
    kind = classify_error(error)
    cls = TransientExternalError if kind.retryable else FatalExternalError
    wrapped = cls(f"{type(error).__name__}: {error}", kind=kind.value, provider=provider)
    wrapped.__cause__ = error
    return wrapped
