"""
Maps Python exceptions to OONI failure strings.

The raw exception keeps travelling up the call stack unchanged, so that
the caller has full fidelity, while the archival data format receives a
failure string from a stable taxonomy together with the operation that
we blame for the failure.

Corresponds to netx/internal/errwrapper and netx/modelx's failures.
"""

from __future__ import annotations
import asyncio
import concurrent.futures
from enum import Enum
import errno
import socket
import ssl
from typing import (
    Optional,
)

from .scrubber import scrub


class Failure(Enum):
    """Represents a failure that occurred while measuring."""

    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    DNS_BOGON_ERROR = "dns_bogon_error"
    DNS_NXDOMAIN_ERROR = "dns_nxdomain_error"
    EOF_ERROR = "eof_error"
    GENERIC_TIMEOUT_ERROR = "generic_timeout_error"
    SSL_INVALID_CERTIFICATE = "ssl_invalid_certificate"
    SSL_INVALID_HOSTNAME = "ssl_invalid_hostname"
    SSL_UNKNOWN_AUTHORITY = "ssl_unknown_authority"
    UNKNOWN_FAILURE = "unknown_failure"

    def __str__(self) -> str:
        return self.value


# Operations we blame for a failure in preference to outer operations.
CONNECT_OPERATION = "connect"
HTTP_ROUND_TRIP_OPERATION = "http_round_trip"
RESOLVE_OPERATION = "resolve"
TLS_HANDSHAKE_OPERATION = "tls_handshake"

# Granular operations performed by measured connections.
READ_OPERATION = "read"
WRITE_OPERATION = "write"
CLOSE_OPERATION = "close"

MAJOR_OPERATIONS = frozenset(
    [
        CONNECT_OPERATION,
        HTTP_ROUND_TRIP_OPERATION,
        RESOLVE_OPERATION,
        TLS_HANDSHAKE_OPERATION,
    ]
)


class DNSBogonError(Exception):
    """Raised by resolvers when a lookup returns a bogon address."""

    def __init__(self, message: str = "dns: detected bogon address"):
        super().__init__(message)


# Message emitted by Go's net/http (and by HTTP transports imitating it).
TLS_HANDSHAKE_TIMEOUT_MESSAGE = "TLS handshake timeout"

NO_SUCH_HOST_MESSAGE = "no such host"

# X509_V_ERR_* codes we map to specific failures. See openssl/x509_vfy.h.
_X509_V_ERR_HOSTNAME_MISMATCH = 62
_X509_V_ERR_IP_ADDRESS_MISMATCH = 64
_X509_UNKNOWN_AUTHORITY_CODES = frozenset(
    [
        2,  # X509_V_ERR_UNABLE_TO_GET_ISSUER_CERT
        18,  # X509_V_ERR_DEPTH_ZERO_SELF_SIGNED_CERT
        19,  # X509_V_ERR_SELF_SIGNED_CERT_IN_CHAIN
        20,  # X509_V_ERR_UNABLE_TO_GET_ISSUER_CERT_LOCALLY
        21,  # X509_V_ERR_UNABLE_TO_VERIFY_LEAF_SIGNATURE
    ]
)

_TIMEOUT_TYPES = (
    TimeoutError,
    socket.timeout,
    concurrent.futures.TimeoutError,
    asyncio.TimeoutError,
    concurrent.futures.CancelledError,
    asyncio.CancelledError,
)

_EOF_TYPES = (
    EOFError,
    ssl.SSLEOFError,
)


class NormalizedError:
    """The failure string and the operation we blame for it. The
    failure is None when the operation succeeded."""

    def __init__(self, failure: Optional[str], operation: str):
        self.failure = failure
        self.operation = operation

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NormalizedError):
            return NotImplemented
        return self.failure == other.failure and self.operation == other.operation

    def __repr__(self) -> str:
        return f"NormalizedError({self.failure!r}, {self.operation!r})"


class ErrWrapper(Exception):
    """An exception carrying an already normalized failure.

    Corresponds to netx/modelx.ErrWrapper."""

    def __init__(
        self,
        failure: str,
        operation: str,
        wrapped_err: BaseException,
        conn_id: int = 0,
        dial_id: int = 0,
        transaction_id: int = 0,
    ):
        super().__init__(failure)
        self.failure = failure
        self.operation = operation
        self.wrapped_err = wrapped_err
        self.conn_id = conn_id
        self.dial_id = dial_id
        self.transaction_id = transaction_id

    def __str__(self) -> str:
        return self.failure


# Attribute we set on raw exceptions once a measuring wrapper has seen them.
_ANNOTATION_ATTR = "_ooninetx_normalized"


def annotate(err: BaseException, normalized: NormalizedError):
    """Remembers the normalization of err so that outer wrappers apply the
    operation precedence rules. Type, message and traceback are unchanged."""
    setattr(err, _ANNOTATION_ATTR, normalized)


def annotation(err: BaseException) -> Optional[NormalizedError]:
    """Returns the normalization previously stored by annotate or None."""
    if isinstance(err, ErrWrapper):
        return NormalizedError(err.failure, err.operation)
    value = getattr(err, _ANNOTATION_ATTR, None)
    if isinstance(value, NormalizedError):
        return value
    return None


def clear_annotation(err: BaseException):
    """Forgets the normalization stored by annotate. The outermost wrapper
    calls this once err leaves the wrappers, so that raising the same
    exception object again starts from a clean slate."""
    if _ANNOTATION_ATTR in getattr(err, "__dict__", {}):
        delattr(err, _ANNOTATION_ATTR)


def _classify_certificate_error(err: ssl.SSLCertVerificationError) -> Failure:
    code = getattr(err, "verify_code", None)
    if code in (_X509_V_ERR_HOSTNAME_MISMATCH, _X509_V_ERR_IP_ADDRESS_MISMATCH):
        return Failure.SSL_INVALID_HOSTNAME
    if code in _X509_UNKNOWN_AUTHORITY_CODES:
        return Failure.SSL_UNKNOWN_AUTHORITY
    return Failure.SSL_INVALID_CERTIFICATE


def _is_timeout(err: BaseException) -> bool:
    if isinstance(err, _TIMEOUT_TYPES):
        return True
    if isinstance(err, OSError):
        # The socket module reports timeouts as OSError("timed out")
        if err.errno == errno.ETIMEDOUT:
            return True
        if err.args and err.args[0] == "timed out":
            return True
    return False


def _is_nxdomain(err: BaseException, message: str) -> bool:
    if message.endswith(NO_SUCH_HOST_MESSAGE):
        return True
    return isinstance(err, socket.gaierror) and err.errno == socket.EAI_NONAME


def _error_message(err: BaseException) -> str:
    try:
        return str(err)
    except Exception:
        # We must always return a failure string
        return type(err).__name__


def to_failure_string(err: BaseException) -> str:
    """Classifies err and returns the corresponding failure string."""
    previous = annotation(err)
    if previous is not None and previous.failure is not None:
        return previous.failure
    message = _error_message(err)
    if _is_timeout(err):
        return str(Failure.GENERIC_TIMEOUT_ERROR)
    if isinstance(err, _EOF_TYPES):
        return str(Failure.EOF_ERROR)
    if _is_nxdomain(err, message):
        return str(Failure.DNS_NXDOMAIN_ERROR)
    if isinstance(err, DNSBogonError):
        return str(Failure.DNS_BOGON_ERROR)
    if isinstance(err, ssl.SSLCertVerificationError):
        return str(_classify_certificate_error(err))
    if isinstance(err, OSError):
        if err.errno == errno.ECONNREFUSED:
            return str(Failure.CONNECTION_REFUSED)
        if err.errno == errno.ECONNRESET:
            return str(Failure.CONNECTION_RESET)
    if TLS_HANDSHAKE_TIMEOUT_MESSAGE in message:
        return str(Failure.GENERIC_TIMEOUT_ERROR)
    return f"{Failure.UNKNOWN_FAILURE}: {scrub(message)}"


def to_operation_string(err: BaseException, operation: str) -> str:
    """Returns the operation to blame for err given that the current
    layer is performing the given operation."""
    previous = annotation(err)
    if previous is not None and previous.operation in MAJOR_OPERATIONS:
        # The innermost major operation wins: if we're doing HTTP and the
        # DNS fails, we want to know that resolve failed.
        return previous.operation
    # Otherwise, e.g. when read fails during a TLS handshake, we want to
    # know about the TLS handshake rather than the read.
    return operation


def normalize(err: Optional[BaseException], operation: str) -> NormalizedError:
    """Maps err and the operation being performed to a NormalizedError."""
    if err is None:
        return NormalizedError(None, operation)
    return NormalizedError(to_failure_string(err), to_operation_string(err, operation))


def maybe_build(
    err: Optional[BaseException],
    operation: str,
    conn_id: int = 0,
    dial_id: int = 0,
    transaction_id: int = 0,
) -> Optional[ErrWrapper]:
    """Wraps err into an ErrWrapper or returns None if err is None.

    Corresponds to netx/internal/errwrapper.SafeErrWrapperBuilder."""
    if err is None:
        return None
    normalized = normalize(err, operation)
    if normalized.failure is None:
        raise RuntimeError("normalize returned no failure for an error")
    return ErrWrapper(
        failure=normalized.failure,
        operation=normalized.operation,
        wrapped_err=err,
        conn_id=conn_id,
        dial_id=dial_id,
        transaction_id=transaction_id,
    )
