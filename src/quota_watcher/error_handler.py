# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Exception taxonomy and classifiers for discovery and quota fetching.

Discovery errors are recoverable within an attempt budget. Transport,
application and parse errors raised during a fetch are caught at the
polling engine boundary and fed into its retry ladder.
"""

import asyncio
import ssl
from typing import Any, Iterator, Optional

import httpx


class QuotaWatcherError(Exception):
    """Base class for all errors raised by the quota watcher."""


# =============================================================================
# DISCOVERY ERRORS
# =============================================================================


class DiscoveryError(QuotaWatcherError):
    """Locating the language server or its API port failed."""


class ProcessNotFoundError(DiscoveryError):
    pass


class NoListeningPortsError(DiscoveryError):
    pass


class NoResponsivePortError(DiscoveryError):
    pass


class CommandUnavailableError(DiscoveryError):
    """The process inspection tool is missing on this system."""


class UnsupportedPlatformError(DiscoveryError):
    """Raised for operating systems without a platform strategy. Not retryable."""


# =============================================================================
# FETCH ERRORS
# =============================================================================


class TransportError(QuotaWatcherError):
    """The RPC could not be completed at the HTTP level."""


class ProtocolMismatchError(TransportError):
    """The peer answered a TLS handshake with plain HTTP."""


class RequestTimeoutError(TransportError):
    pass


class HttpStatusError(TransportError):
    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}")


class ApplicationError(QuotaWatcherError):
    """A 200 response whose embedded ``code`` is not a success value."""

    def __init__(self, code: Any, message: Optional[str] = None):
        self.code = code
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"Application error code {code!r}{detail}")


class ResponseParseError(QuotaWatcherError):
    """Malformed JSON or a response missing required fields."""


class MissingCsrfTokenError(QuotaWatcherError):
    """No CSRF token is available for the request."""


# =============================================================================
# CLASSIFIERS
# =============================================================================

# Fragments seen in OpenSSL / Node / httpx messages when TLS meets plain HTTP
_PROTOCOL_MISMATCH_MARKERS = (
    "wrong_version_number",
    "wrong version number",
    "eproto",
    "record_layer_failure",
    "record layer failure",
    "packet_length_too_long",
    "packet length too long",
    "http_request",
    "unknown protocol",
)

# Fragments of "tool not installed" errors across shells
_COMMAND_UNAVAILABLE_MARKERS = (
    "is not recognized as an internal or external command",
    "is not recognized as the name of a cmdlet",
    "not recognized",
    "command not found",
    "no such file or directory",
    "cannot find",
    "not found",
)


def _exception_chain(e: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = e
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def is_protocol_mismatch(e: BaseException) -> bool:
    """Checks whether an HTTPS failure means the peer speaks plain HTTP."""
    for exc in _exception_chain(e):
        if isinstance(exc, ProtocolMismatchError):
            return True
        message = str(exc).lower()
        if isinstance(exc, ssl.SSLError):
            reason = (getattr(exc, "reason", None) or "").lower()
            if reason in _PROTOCOL_MISMATCH_MARKERS:
                return True
        if any(marker in message for marker in _PROTOCOL_MISMATCH_MARKERS):
            return True
    return False


def is_timeout_error(e: BaseException) -> bool:
    """Checks if the exception is a request or command timeout."""
    return isinstance(
        e, (httpx.TimeoutException, asyncio.TimeoutError, RequestTimeoutError)
    )


def is_retryable_fetch_error(e: BaseException) -> bool:
    """
    Checks if a fetch failure should enter the polling retry ladder.

    Everything a single fetch can raise is retryable except credential
    and platform errors, which no amount of waiting will fix.
    """
    return not isinstance(e, (MissingCsrfTokenError, UnsupportedPlatformError))


def is_command_unavailable(text: str) -> bool:
    """Checks shell error output for a missing-command signature."""
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _COMMAND_UNAVAILABLE_MARKERS)


def describe_error(e: BaseException) -> str:
    """One-line description used in logs and observer payloads."""
    if isinstance(e, HttpStatusError):
        return f"HTTP {e.status_code}"
    if isinstance(e, ApplicationError):
        return str(e)
    if is_timeout_error(e):
        return "request timed out"
    text = str(e)
    return f"{type(e).__name__}: {text}" if text else type(e).__name__
