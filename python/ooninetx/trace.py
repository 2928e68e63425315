"""
Contains the event trace filled by the measuring wrappers.

Corresponds to netx/trace.
"""

from __future__ import annotations
import copy
import datetime
import threading
from typing import (
    List,
    Optional,
)

from .model import (
    HTTPBodySnapshot,
    HTTPRequest,
    HTTPResponse,
)
from .tabulatex import Tabular

# Names of the events emitted by the measuring wrappers. Other names are
# allowed and end up in the network events as generic entries.
CONNECT = "connect"
READ = "read"
WRITE = "write"
CLOSE = "close"
RESOLVE_DONE = "resolve_done"
TLS_HANDSHAKE_DONE = "tls_handshake_done"
HTTP_ROUND_TRIP_DONE = "http_round_trip_done"


class Event:
    """Something that happened while measuring.

    Corresponds to netx/trace.Event."""

    def __init__(
        self,
        name: str,
        time: datetime.datetime,
        *,
        err: Optional[BaseException] = None,
        failure: Optional[str] = None,
        operation: str = "",
        address: str = "",
        proto: str = "",
        num_bytes: int = 0,
        hostname: str = "",
        addresses: Optional[List[str]] = None,
        http_request: Optional[HTTPRequest] = None,
        http_request_body: Optional[HTTPBodySnapshot] = None,
        http_response: Optional[HTTPResponse] = None,
        http_response_body: Optional[HTTPBodySnapshot] = None,
        tls_cipher_suite: str = "",
        tls_negotiated_proto: str = "",
        tls_version: str = "",
        tls_peer_certs: Optional[List[bytes]] = None,
        conn_id: int = 0,
        dial_id: int = 0,
        transaction_id: int = 0,
    ):
        self.name = name
        self.time = time
        self.err = err
        self.failure = failure
        self.operation = operation or name
        self.address = address
        self.proto = proto
        self.num_bytes = num_bytes
        self.hostname = hostname
        self.addresses: List[str] = list(addresses or [])
        self.http_request = http_request
        self.http_request_body = http_request_body
        self.http_response = http_response
        self.http_response_body = http_response_body
        self.tls_cipher_suite = tls_cipher_suite
        self.tls_negotiated_proto = tls_negotiated_proto
        self.tls_version = tls_version
        self.tls_peer_certs: List[bytes] = list(tls_peer_certs or [])
        self.conn_id = conn_id
        self.dial_id = dial_id
        self.transaction_id = transaction_id

    def __repr__(self) -> str:
        return f"Event({self.name!r}, {self.time.isoformat()}, failure={self.failure!r})"


class Trace:
    """An append-only list of events owned by a single measurement.

    Multiple wrappers append concurrently. The events are stored in the
    order in which append returned and their time never goes backwards."""

    def __init__(self):
        self._events: List[Event] = []
        self._mu = threading.Lock()

    def append(self, event: Event):
        """Appends a copy of the event to the trace."""
        ev = copy.copy(event)
        ev.addresses = list(event.addresses)
        ev.tls_peer_certs = list(event.tls_peer_certs)
        with self._mu:
            if self._events and ev.time < self._events[-1].time:
                ev.time = self._events[-1].time
            self._events.append(ev)

    def events(self) -> List[Event]:
        """Returns a snapshot of the events appended so far."""
        with self._mu:
            return list(self._events)

    def __len__(self) -> int:
        with self._mu:
            return len(self._events)

    def tabular(self, begin: Optional[datetime.datetime] = None) -> Tabular:
        """Returns a tabular view of the trace useful for debugging."""
        events = self.events()
        if begin is None and events:
            begin = events[0].time
        tab = Tabular()
        for ev in events:
            elapsed = (ev.time - begin).total_seconds() if begin else 0.0
            tab.appendrow(
                [
                    ("t", round(elapsed, 6)),
                    ("name", ev.name),
                    ("operation", ev.operation),
                    ("address", ev.address or ev.hostname),
                    ("conn_id", ev.conn_id),
                    ("dial_id", ev.dial_id),
                    ("transaction_id", ev.transaction_id),
                    ("failure", ev.failure),
                ]
            )
        return tab
