"""
Converts a trace to the OONI archival data format.

The archival data format is what we send to the OONI collector. Each
section (tcp_connect, requests, queries, network_events, tls_handshakes)
has its own entry type. Every entry type knows how to parse itself back
from JSON, which is useful for processing measurements.

Corresponds to netx/archival. See also the df-00x data format documents
published by OONI.

Note to the reader: attributes of the entry types use the same names as
the JSON fields because we serialize them by walking their __dict__.
"""

from __future__ import annotations
import base64
import binascii
import datetime
import json
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from .errorx import normalize
from .model import (
    HTTPBodySnapshot,
    HTTPHeader,
)
from .trace import (
    CONNECT,
    HTTP_ROUND_TRIP_DONE,
    READ,
    RESOLVE_DONE,
    TLS_HANDSHAKE_DONE,
    WRITE,
    Event,
    Trace,
)
from .typecast import (
    DictWrapper,
    as_string,
)

#
# Binary data
#


def _encode_binary(value: bytes) -> Any:
    """Returns value as a string when it is valid UTF-8 and otherwise
    as the {"format": "base64", "data": ...} object."""
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return {
            "format": "base64",
            "data": base64.b64encode(value).decode("ascii"),
        }


def _decode_binary_object(value: Any) -> bytes:
    """The opposite of the object representation emitted by _encode_binary."""
    if not isinstance(value, dict):
        raise ValueError("the value is neither a string nor an object")
    if "format" not in value:
        raise ValueError("missing format field")
    if value["format"] != "base64":
        raise ValueError("invalid format field")
    if "data" not in value:
        raise ValueError("missing data field")
    data = value["data"]
    if not isinstance(data, str):
        raise ValueError("the data field is not a string")
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 data: {exc}") from exc


class MaybeBinaryValue:
    """A possibly binary string.

    Valid UTF-8 content is represented as a string while any other content
    is represented using `{"format":"base64","data":"..."}`."""

    def __init__(self, value: Union[bytes, str] = b""):
        if isinstance(value, str):
            # surrogateescape gives us back bytes that were decoded with it
            value = value.encode("utf-8", "surrogateescape")
        self.value = bytes(value)

    def marshal(self) -> Any:
        return _encode_binary(self.value)

    @staticmethod
    def unmarshal(data: Any) -> MaybeBinaryValue:
        if isinstance(data, str):
            return MaybeBinaryValue(data)
        return MaybeBinaryValue(_decode_binary_object(data))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MaybeBinaryValue):
            return NotImplemented
        return self.value == other.value

    def __repr__(self) -> str:
        return f"MaybeBinaryValue({self.value!r})"


# Note that HTTPBody must be the same type as MaybeBinaryValue for
# the serialization to work correctly.
HTTPBody = MaybeBinaryValue


class HTTPHeaderPair:
    """A single HTTP header serialized as a [key, value] list where the
    value is maybe-binary data."""

    def __init__(self, key: str, value: MaybeBinaryValue):
        self.key = key
        self.value = value

    def marshal(self) -> List[Any]:
        return [self.key, self.value.marshal()]

    @staticmethod
    def unmarshal(data: Any) -> HTTPHeaderPair:
        if not isinstance(data, list):
            raise ValueError("expected a list")
        if len(data) != 2:
            raise ValueError("unexpected pair length")
        key, value = data
        if not isinstance(key, str):
            raise ValueError("the key is not a string")
        return HTTPHeaderPair(key, MaybeBinaryValue.unmarshal(value))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HTTPHeaderPair):
            return NotImplemented
        return self.key == other.key and self.value == other.value

    def __repr__(self) -> str:
        return f"HTTPHeaderPair({self.key!r}, {self.value!r})"


#
# Entries
#


class TCPConnectStatus:
    """The status of a TCP connect."""

    def __init__(self, failure: Optional[str] = None, success: bool = False):
        self.failure = failure
        self.success = success

    @staticmethod
    def unmarshal(entry: DictWrapper) -> TCPConnectStatus:
        return TCPConnectStatus(
            failure=entry.getfailure("failure"),
            success=entry.getbool("success"),
        )


class TCPConnectEntry:
    """An entry of the "tcp_connect" key of a OONI report."""

    _omitempty = ("conn_id", "dial_id", "transaction_id")

    def __init__(
        self,
        ip: str = "",
        port: int = 0,
        status: Optional[TCPConnectStatus] = None,
        t: float = 0.0,
        conn_id: int = 0,
        dial_id: int = 0,
        transaction_id: int = 0,
    ):
        self.conn_id = conn_id
        self.dial_id = dial_id
        self.ip = ip
        self.port = port
        self.status = status or TCPConnectStatus()
        self.t = t
        self.transaction_id = transaction_id

    @staticmethod
    def unmarshal(entry: DictWrapper) -> TCPConnectEntry:
        return TCPConnectEntry(
            ip=entry.getstring("ip"),
            port=entry.getinteger("port"),
            status=TCPConnectStatus.unmarshal(entry.getdictionary("status")),
            t=entry.getfloat("t"),
            conn_id=entry.getinteger("conn_id"),
            dial_id=entry.getinteger("dial_id"),
            transaction_id=entry.getinteger("transaction_id"),
        )


class HTTPTor:
    """Tor information of an HTTP request."""

    def __init__(
        self,
        exit_ip: Optional[str] = None,
        exit_name: Optional[str] = None,
        is_tor: bool = False,
    ):
        self.exit_ip = exit_ip
        self.exit_name = exit_name
        self.is_tor = is_tor

    @staticmethod
    def unmarshal(entry: DictWrapper) -> HTTPTor:
        return HTTPTor(
            exit_ip=entry.getoptionalstring("exit_ip"),
            exit_name=entry.getoptionalstring("exit_name"),
            is_tor=entry.getbool("is_tor"),
        )


def _unmarshal_body(entry: DictWrapper) -> MaybeBinaryValue:
    value = entry.getany("body")
    if value is None:
        return HTTPBody()
    return MaybeBinaryValue.unmarshal(value)


def _unmarshal_headers_list(values: List) -> List[HTTPHeaderPair]:
    return [HTTPHeaderPair.unmarshal(x) for x in values]


def _unmarshal_headers_map(values: DictWrapper) -> Dict[str, MaybeBinaryValue]:
    return {
        as_string(key): MaybeBinaryValue.unmarshal(value)
        for key, value in values.unwrap().items()
    }


class HTTPRequestEntry:
    """The request of a "requests" entry.

    Headers are a map in the Web Connectivity data format but we also
    have a list representation since data format version 0.3.0."""

    def __init__(
        self,
        body: Optional[MaybeBinaryValue] = None,
        body_is_truncated: bool = False,
        headers_list: Optional[List[HTTPHeaderPair]] = None,
        headers: Optional[Dict[str, MaybeBinaryValue]] = None,
        method: str = "",
        tor: Optional[HTTPTor] = None,
        url: str = "",
    ):
        self.body = body or HTTPBody()
        self.body_is_truncated = body_is_truncated
        self.headers_list = headers_list or []
        self.headers = headers or {}
        self.method = method
        self.tor = tor or HTTPTor()
        self.url = url

    @staticmethod
    def unmarshal(entry: DictWrapper) -> HTTPRequestEntry:
        return HTTPRequestEntry(
            body=_unmarshal_body(entry),
            body_is_truncated=entry.getbool("body_is_truncated"),
            headers_list=_unmarshal_headers_list(entry.getlist("headers_list")),
            headers=_unmarshal_headers_map(entry.getdictionary("headers")),
            method=entry.getstring("method"),
            tor=HTTPTor.unmarshal(entry.getdictionary("tor")),
            url=entry.getstring("url"),
        )


class HTTPResponseEntry:
    """The response of a "requests" entry."""

    def __init__(
        self,
        body: Optional[MaybeBinaryValue] = None,
        body_is_truncated: bool = False,
        code: int = 0,
        headers_list: Optional[List[HTTPHeaderPair]] = None,
        headers: Optional[Dict[str, MaybeBinaryValue]] = None,
    ):
        self.body = body or HTTPBody()
        self.body_is_truncated = body_is_truncated
        self.code = code
        self.headers_list = headers_list or []
        self.headers = headers or {}

    @staticmethod
    def unmarshal(entry: DictWrapper) -> HTTPResponseEntry:
        return HTTPResponseEntry(
            body=_unmarshal_body(entry),
            body_is_truncated=entry.getbool("body_is_truncated"),
            code=entry.getinteger("code"),
            headers_list=_unmarshal_headers_list(entry.getlist("headers_list")),
            headers=_unmarshal_headers_map(entry.getdictionary("headers")),
        )


class RequestEntry:
    """An entry of the "requests" key of a OONI report."""

    _omitempty = ("transaction_id",)

    def __init__(
        self,
        failure: Optional[str] = None,
        request: Optional[HTTPRequestEntry] = None,
        response: Optional[HTTPResponseEntry] = None,
        t: float = 0.0,
        transaction_id: int = 0,
    ):
        self.failure = failure
        self.request = request or HTTPRequestEntry()
        self.response = response or HTTPResponseEntry()
        self.t = t
        self.transaction_id = transaction_id

    @staticmethod
    def unmarshal(entry: DictWrapper) -> RequestEntry:
        return RequestEntry(
            failure=entry.getfailure("failure"),
            request=HTTPRequestEntry.unmarshal(entry.getdictionary("request")),
            response=HTTPResponseEntry.unmarshal(entry.getdictionary("response")),
            t=entry.getfloat("t"),
            transaction_id=entry.getinteger("transaction_id"),
        )


class DNSAnswerEntry:
    """The answer to a DNS query."""

    _omitempty = ("hostname", "ipv4", "ipv6")

    def __init__(
        self,
        answer_type: str = "",
        hostname: str = "",
        ipv4: str = "",
        ipv6: str = "",
        ttl: Optional[int] = None,
    ):
        self.answer_type = answer_type
        self.hostname = hostname
        self.ipv4 = ipv4
        self.ipv6 = ipv6
        self.ttl = ttl

    @staticmethod
    def unmarshal(entry: DictWrapper) -> DNSAnswerEntry:
        ttl = entry.getany("ttl")
        return DNSAnswerEntry(
            answer_type=entry.getstring("answer_type"),
            hostname=entry.getstring("hostname"),
            ipv4=entry.getstring("ipv4"),
            ipv6=entry.getstring("ipv6"),
            ttl=None if ttl is None else entry.getinteger("ttl"),
        )


class DNSQueryEntry:
    """An entry of the "queries" key of a OONI report."""

    _omitempty = ("dial_id", "transaction_id")

    def __init__(
        self,
        answers: Optional[List[DNSAnswerEntry]] = None,
        engine: str = "",
        failure: Optional[str] = None,
        hostname: str = "",
        query_type: str = "",
        resolver_address: str = "",
        t: float = 0.0,
        dial_id: int = 0,
        transaction_id: int = 0,
    ):
        self.answers = answers or []
        self.dial_id = dial_id
        self.engine = engine
        self.failure = failure
        self.hostname = hostname
        self.query_type = query_type
        self.resolver_hostname: Optional[str] = None
        self.resolver_port: Optional[str] = None
        self.resolver_address = resolver_address
        self.t = t
        self.transaction_id = transaction_id

    @staticmethod
    def unmarshal(entry: DictWrapper) -> DNSQueryEntry:
        out = DNSQueryEntry(
            answers=[
                DNSAnswerEntry.unmarshal(DictWrapper(x))
                for x in entry.getlist("answers")
            ],
            engine=entry.getstring("engine"),
            failure=entry.getfailure("failure"),
            hostname=entry.getstring("hostname"),
            query_type=entry.getstring("query_type"),
            resolver_address=entry.getstring("resolver_address"),
            t=entry.getfloat("t"),
            dial_id=entry.getinteger("dial_id"),
            transaction_id=entry.getinteger("transaction_id"),
        )
        out.resolver_hostname = entry.getoptionalstring("resolver_hostname")
        out.resolver_port = entry.getoptionalstring("resolver_port")
        return out


class NetworkEvent:
    """An entry of the "network_events" key of a OONI report."""

    _omitempty = (
        "address",
        "conn_id",
        "dial_id",
        "num_bytes",
        "proto",
        "transaction_id",
    )

    def __init__(
        self,
        operation: str = "",
        failure: Optional[str] = None,
        t: float = 0.0,
        address: str = "",
        num_bytes: int = 0,
        proto: str = "",
        conn_id: int = 0,
        dial_id: int = 0,
        transaction_id: int = 0,
    ):
        self.address = address
        self.conn_id = conn_id
        self.dial_id = dial_id
        self.failure = failure
        self.num_bytes = num_bytes
        self.operation = operation
        self.proto = proto
        self.t = t
        self.transaction_id = transaction_id

    @staticmethod
    def unmarshal(entry: DictWrapper) -> NetworkEvent:
        return NetworkEvent(
            operation=entry.getstring("operation"),
            failure=entry.getfailure("failure"),
            t=entry.getfloat("t"),
            address=entry.getstring("address"),
            num_bytes=entry.getinteger("num_bytes"),
            proto=entry.getstring("proto"),
            conn_id=entry.getinteger("conn_id"),
            dial_id=entry.getinteger("dial_id"),
            transaction_id=entry.getinteger("transaction_id"),
        )


class TLSHandshake:
    """An entry of the "tls_handshakes" key of a OONI report."""

    _omitempty = ("conn_id", "transaction_id")

    def __init__(
        self,
        cipher_suite: str = "",
        failure: Optional[str] = None,
        negotiated_protocol: str = "",
        peer_certificates: Optional[List[MaybeBinaryValue]] = None,
        t: float = 0.0,
        tls_version: str = "",
        conn_id: int = 0,
        transaction_id: int = 0,
    ):
        self.cipher_suite = cipher_suite
        self.conn_id = conn_id
        self.failure = failure
        self.negotiated_protocol = negotiated_protocol
        self.peer_certificates = peer_certificates or []
        self.t = t
        self.tls_version = tls_version
        self.transaction_id = transaction_id

    @staticmethod
    def unmarshal(entry: DictWrapper) -> TLSHandshake:
        return TLSHandshake(
            cipher_suite=entry.getstring("cipher_suite"),
            failure=entry.getfailure("failure"),
            negotiated_protocol=entry.getstring("negotiated_protocol"),
            peer_certificates=[
                MaybeBinaryValue.unmarshal(x)
                for x in entry.getlist("peer_certificates")
            ],
            t=entry.getfloat("t"),
            tls_version=entry.getstring("tls_version"),
            conn_id=entry.getinteger("conn_id"),
            transaction_id=entry.getinteger("transaction_id"),
        )


#
# Trace to archival
#


def _elapsed(begin: datetime.datetime, ev: Event) -> float:
    """Returns the seconds elapsed between begin and the event."""
    return max(0.0, (ev.time - begin).total_seconds())


def _make_failure(ev: Event) -> Optional[str]:
    """Returns the failure string of the event. We normalize the raw error
    for events not created by the measuring wrappers."""
    if ev.failure is not None:
        return ev.failure
    if ev.err is not None:
        return normalize(ev.err, ev.operation).failure
    return None


def _split_host_port(address: str) -> Tuple[str, str]:
    """Splits an endpoint like 8.8.8.8:53 or [::1]:443 into address and
    port. Returns empty strings when the endpoint is not valid."""
    if address.startswith("["):
        end = address.find("]:")
        if end < 0:
            return "", ""
        return address[1:end], address[end + 2 :]
    host, sep, port = address.rpartition(":")
    if not sep or ":" in host:
        return "", ""
    return host, port


def _parse_port(port: str) -> int:
    try:
        return int(port)
    except ValueError:
        return 0


def new_tcp_connect_list(
    begin: datetime.datetime, events: Iterable[Event]
) -> List[TCPConnectEntry]:
    """Returns the list for "tcp_connect"."""
    out: List[TCPConnectEntry] = []
    for ev in events:
        if ev.name != CONNECT:
            continue
        ip, port = _split_host_port(ev.address)
        failure = _make_failure(ev)
        out.append(
            TCPConnectEntry(
                ip=ip,
                port=_parse_port(port),
                status=TCPConnectStatus(failure=failure, success=failure is None),
                t=_elapsed(begin, ev),
                conn_id=ev.conn_id,
                dial_id=ev.dial_id,
                transaction_id=ev.transaction_id,
            )
        )
    return out


def _add_headers(
    source: HTTPHeader,
) -> Tuple[List[HTTPHeaderPair], Dict[str, MaybeBinaryValue]]:
    """Builds both headers representations in a single pass. With the map
    representation we can only keep a single value for every key, hence
    the list representation."""
    hlist: List[HTTPHeaderPair] = []
    hmap: Dict[str, MaybeBinaryValue] = {}
    for key, values in source.items():
        for value in values:
            mbv = MaybeBinaryValue(value)
            hmap[key] = mbv
            hlist.append(HTTPHeaderPair(key, mbv))
    return hlist, hmap


def _body_and_truncated(
    snapshot: Optional[HTTPBodySnapshot],
) -> Tuple[MaybeBinaryValue, bool]:
    if snapshot is None:
        return HTTPBody(), False
    return HTTPBody(snapshot.data), snapshot.truncated


def new_request_list(
    begin: datetime.datetime, events: Iterable[Event]
) -> List[RequestEntry]:
    """Returns the list for "requests"."""
    out: List[RequestEntry] = []
    # OONI's data format wants more recent requests first
    for ev in reversed(list(events)):
        if ev.name != HTTP_ROUND_TRIP_DONE:
            continue
        request = HTTPRequestEntry()
        if ev.http_request is not None:
            request.headers_list, request.headers = _add_headers(
                ev.http_request.headers
            )
            request.method = ev.http_request.method
            request.url = ev.http_request.url
        request.body, request.body_is_truncated = _body_and_truncated(
            ev.http_request_body
        )
        response = HTTPResponseEntry()
        if ev.http_response is not None:
            response.headers_list, response.headers = _add_headers(
                ev.http_response.headers
            )
            response.code = ev.http_response.status_code
        response.body, response.body_is_truncated = _body_and_truncated(
            ev.http_response_body
        )
        out.append(
            RequestEntry(
                failure=_make_failure(ev),
                request=request,
                response=response,
                t=_elapsed(begin, ev),
                transaction_id=ev.transaction_id,
            )
        )
    return out


def _address_matches_query_type(query_type: str, addr: str) -> bool:
    # We don't validate addresses: anything containing a colon is IPv6.
    if query_type == "A":
        return ":" not in addr
    if query_type == "AAAA":
        return ":" in addr
    return False


def _new_dns_answer_entry(query_type: str, addr: str) -> DNSAnswerEntry:
    if query_type == "A":
        return DNSAnswerEntry(answer_type=query_type, ipv4=addr)
    return DNSAnswerEntry(answer_type=query_type, ipv6=addr)


def new_dns_queries_list(
    begin: datetime.datetime, events: Iterable[Event]
) -> List[DNSQueryEntry]:
    """Returns the list for "queries"."""
    # TODO: add support for CNAME lookups once events carry the CNAME.
    out: List[DNSQueryEntry] = []
    for ev in events:
        if ev.name != RESOLVE_DONE:
            continue
        for query_type in ("A", "AAAA"):
            answers = [
                _new_dns_answer_entry(query_type, addr)
                for addr in ev.addresses
                if _address_matches_query_type(query_type, addr)
            ]
            if not answers:
                continue
            out.append(
                DNSQueryEntry(
                    answers=answers,
                    engine=ev.proto,
                    failure=_make_failure(ev),
                    hostname=ev.hostname,
                    query_type=query_type,
                    resolver_address=ev.address,
                    t=_elapsed(begin, ev),
                    dial_id=ev.dial_id,
                    transaction_id=ev.transaction_id,
                )
            )
    return out


def new_network_events_list(
    begin: datetime.datetime, events: Iterable[Event]
) -> List[NetworkEvent]:
    """Returns the list for "network_events"."""
    out: List[NetworkEvent] = []
    for ev in events:
        entry = NetworkEvent(
            operation=ev.name,
            failure=_make_failure(ev),
            t=_elapsed(begin, ev),
            conn_id=ev.conn_id,
            dial_id=ev.dial_id,
            transaction_id=ev.transaction_id,
        )
        if ev.name == CONNECT:
            entry.address = ev.address
            entry.proto = ev.proto
        elif ev.name in (READ, WRITE):
            entry.num_bytes = ev.num_bytes
            entry.proto = ev.proto
        out.append(entry)
    return out


def new_tls_handshakes_list(
    begin: datetime.datetime, events: Iterable[Event]
) -> List[TLSHandshake]:
    """Returns the list for "tls_handshakes"."""
    out: List[TLSHandshake] = []
    for ev in events:
        if ev.name != TLS_HANDSHAKE_DONE:
            continue
        out.append(
            TLSHandshake(
                cipher_suite=ev.tls_cipher_suite,
                failure=_make_failure(ev),
                negotiated_protocol=ev.tls_negotiated_proto,
                peer_certificates=[MaybeBinaryValue(x) for x in ev.tls_peer_certs],
                t=_elapsed(begin, ev),
                tls_version=ev.tls_version,
                conn_id=ev.conn_id,
                transaction_id=ev.transaction_id,
            )
        )
    return out


class ArchivalBundle:
    """All the archival lists generated from a trace."""

    def __init__(
        self,
        network_events: List[NetworkEvent],
        queries: List[DNSQueryEntry],
        requests: List[RequestEntry],
        tcp_connect: List[TCPConnectEntry],
        tls_handshakes: List[TLSHandshake],
    ):
        self.network_events = network_events
        self.queries = queries
        self.requests = requests
        self.tcp_connect = tcp_connect
        self.tls_handshakes = tls_handshakes

    def as_dict(self) -> Dict[str, Any]:
        """Returns a JSON-ready dict suitable for inclusion in test keys."""
        return json_marshal_type_expander(self)

    @staticmethod
    def unmarshal(entry: DictWrapper) -> ArchivalBundle:
        return ArchivalBundle(
            network_events=[
                NetworkEvent.unmarshal(DictWrapper(x))
                for x in entry.getlist("network_events")
            ],
            queries=[
                DNSQueryEntry.unmarshal(DictWrapper(x))
                for x in entry.getlist("queries")
            ],
            requests=[
                RequestEntry.unmarshal(DictWrapper(x))
                for x in entry.getlist("requests")
            ],
            tcp_connect=[
                TCPConnectEntry.unmarshal(DictWrapper(x))
                for x in entry.getlist("tcp_connect")
            ],
            tls_handshakes=[
                TLSHandshake.unmarshal(DictWrapper(x))
                for x in entry.getlist("tls_handshakes")
            ],
        )


def serialize(
    trace: Union[Trace, Iterable[Event]], begin: datetime.datetime
) -> ArchivalBundle:
    """Converts the trace to the archival data format. The trace is not
    modified, hence calling this function again yields the same result."""
    events = trace.events() if isinstance(trace, Trace) else list(trace)
    return ArchivalBundle(
        network_events=new_network_events_list(begin, events),
        queries=new_dns_queries_list(begin, events),
        requests=new_request_list(begin, events),
        tcp_connect=new_tcp_connect_list(begin, events),
        tls_handshakes=new_tls_handshakes_list(begin, events),
    )


#
# JSON
#


def json_marshal_type_expander(value: Any) -> Any:
    """Recursively converts value to types the json module understands."""
    if value is None or isinstance(value, (str, int, float)):
        return value
    if isinstance(value, (MaybeBinaryValue, HTTPHeaderPair)):
        return value.marshal()
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise ValueError("keys must be strings")
            out[k] = json_marshal_type_expander(v)
        return out
    if isinstance(value, (list, tuple)):
        return [json_marshal_type_expander(entry) for entry in value]
    if hasattr(value, "__dict__"):
        omitempty = getattr(type(value), "_omitempty", ())
        out = {}
        for k, v in value.__dict__.items():
            if k.startswith("_") or (k in omitempty and not v):
                continue
            out[k] = json_marshal_type_expander(v)
        return out
    raise ValueError(f"json_marshal_type_expander: cannot expand: {value}")


def json_marshal(value: Any) -> str:
    """Serializes value, e.g., an ArchivalBundle, to JSON."""
    return json.dumps(json_marshal_type_expander(value))
