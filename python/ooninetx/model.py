"""
Data types shared by the measuring wrappers and the archival code.

Corresponds to netx/modelx and model in probe-engine.
"""

from __future__ import annotations
import datetime
import io
from typing import (
    Any,
    BinaryIO,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Tuple,
)


class HTTPHeader:
    """Represents HTTP headers.

    Equivalent to net/http.Header in the Go stdlib, except that we preserve
    the order in which the keys were first added."""

    def __init__(self):
        self.headers: Dict[str, List[str]] = {}

    @staticmethod
    def unmarshal(m: Any) -> HTTPHeader:
        msg = dict(m)
        o = HTTPHeader()
        for key, values in msg.items():
            if isinstance(values, (str, bytes)):
                values = [values]
            o.headers[str(key)] = list(values)
        return o

    @staticmethod
    def from_pairs(pairs: List[Tuple[str, Any]]) -> HTTPHeader:
        """Builds headers from (key, value) tuples, e.g., the return value
        of http.client.HTTPResponse.getheaders."""
        out = HTTPHeader()
        for key, value in pairs:
            out.append(key, value)
        return out

    def clone(self) -> HTTPHeader:
        """Returns a clone of the original headers."""
        out = HTTPHeader()
        for key, values in self.headers.items():
            out.headers[key] = values[:]
        return out

    def append(self, key: str, value: Any):
        """Appends the given header value to the values for the given key.
        The value may be bytes when the peer sent non-UTF-8 headers."""
        self.headers.setdefault(key, [])
        self.headers[key].append(value)

    def items(self) -> Iterator[Tuple[str, List[Any]]]:
        return iter(self.headers.items())

    def __len__(self) -> int:
        return len(self.headers)


class HTTPRequest:
    """An HTTP request as seen by an HTTPTransport."""

    def __init__(
        self,
        method: str,
        url: str,
        headers: Optional[HTTPHeader] = None,
        body: bytes = b"",
    ):
        self.method = method
        self.url = url
        self.headers = headers if headers is not None else HTTPHeader()
        self.body = body


class HTTPResponse:
    """An HTTP response returned by an HTTPTransport. The body is a
    binary file-like object that the caller is expected to read."""

    def __init__(
        self,
        status_code: int,
        headers: Optional[HTTPHeader] = None,
        body: Optional[BinaryIO] = None,
    ):
        self.status_code = status_code
        self.headers = headers if headers is not None else HTTPHeader()
        self.body: BinaryIO = body if body is not None else io.BytesIO(b"")


class HTTPBodySnapshot:
    """The beginning of an HTTP body and whether we truncated it."""

    def __init__(self, data: bytes, truncated: bool):
        self.data = data
        self.truncated = truncated

    def __len__(self) -> int:
        return len(self.data)


class Measurement:
    """The subset of an OONI measurement this library touches.

    Corresponds to model.Measurement. The caller owns it."""

    def __init__(self):
        self.extensions: Optional[Dict[str, int]] = None
        self.measurement_start_time: Optional[datetime.datetime] = None
        self.test_keys: Dict[str, Any] = {}


def utc_now() -> datetime.datetime:
    """Returns the current time as a timezone-aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


Clock = Callable[[], datetime.datetime]


class Options:
    """Contains options for the measuring wrappers."""

    def __init__(self):
        self.clock: Clock = utc_now
        self.max_request_body_snapshot_size = 1 << 14
        self.max_response_body_snapshot_size = 1 << 17

    @staticmethod
    def unmarshal(m: Any) -> Options:
        msg = dict(m)
        o = Options()
        o.max_request_body_snapshot_size = (
            msg.get("max_request_body_snapshot_size", 0)
            or o.max_request_body_snapshot_size
        )
        o.max_response_body_snapshot_size = (
            msg.get("max_response_body_snapshot_size", 0)
            or o.max_response_body_snapshot_size
        )
        return o

    def clone(self) -> Options:
        """Returns a clone of the current options."""
        out = Options()
        out.clock = self.clock
        out.max_request_body_snapshot_size = self.max_request_body_snapshot_size
        out.max_response_body_snapshot_size = self.max_response_body_snapshot_size
        return out
