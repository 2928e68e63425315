"""
Measuring wrappers for resolvers, dialers, TLS dialers and HTTP transports.

Each wrapper owns an inner implementation of the same protocol and is a
drop-in replacement for it. The wrapper performs the operation using the
inner implementation, normalizes the error (if any) and appends an event
to the trace. The caller always sees the original exception.

Corresponds to probe-engine's netx/{resolver,dialer,httptransport}.
"""

from __future__ import annotations
import io
import itertools
import logging
import threading
from typing import (
    Any,
    BinaryIO,
    List,
    Optional,
    Protocol,
    Tuple,
)

from .correlation import (
    Context,
    dial_id,
    transaction_id,
    with_dial_id,
    with_transaction_id,
)
from .errorx import (
    CLOSE_OPERATION,
    CONNECT_OPERATION,
    HTTP_ROUND_TRIP_OPERATION,
    READ_OPERATION,
    RESOLVE_OPERATION,
    TLS_HANDSHAKE_OPERATION,
    WRITE_OPERATION,
    Failure,
    NormalizedError,
    annotate,
    clear_annotation,
    normalize,
)
from .model import (
    HTTPBodySnapshot,
    HTTPRequest,
    HTTPResponse,
    Options,
)
from .trace import (
    CLOSE,
    CONNECT,
    HTTP_ROUND_TRIP_DONE,
    READ,
    RESOLVE_DONE,
    TLS_HANDSHAKE_DONE,
    WRITE,
    Event,
    Trace,
)

#
# Capabilities
#
# These are the interfaces implemented by the code actually doing
# network I/O. We only wrap them.
#


class Resolver(Protocol):
    """Resolves domain names to IP addresses."""

    def lookup_host(self, ctx: Context, hostname: str) -> List[str]:
        ...

    def network(self) -> str:
        """The resolver engine (e.g., "system", "udp", "doh")."""
        ...

    def address(self) -> str:
        """The resolver address or the empty string."""
        ...


class Conn(Protocol):
    """A socket-like byte stream."""

    def recv(self, bufsize: int) -> bytes:
        ...

    def send(self, data: bytes) -> int:
        ...

    def close(self) -> None:
        ...


class Dialer(Protocol):
    """Creates byte streams."""

    def dial_context(self, ctx: Context, network: str, address: str) -> Conn:
        ...


class TLSConn(Conn, Protocol):
    """A byte stream with ssl.SSLSocket-like TLS accessors."""

    def cipher(self) -> Optional[Tuple[str, str, int]]:
        ...

    def version(self) -> Optional[str]:
        ...

    def selected_alpn_protocol(self) -> Optional[str]:
        ...

    def getpeercert(self, binary_form: bool = False) -> Any:
        ...


class TLSDialer(Protocol):
    """Creates byte streams and performs the TLS handshake."""

    def dial_tls_context(self, ctx: Context, network: str, address: str) -> TLSConn:
        ...


class HTTPTransport(Protocol):
    """Performs HTTP round trips."""

    def round_trip(self, ctx: Context, request: HTTPRequest) -> HTTPResponse:
        ...


#
# Helpers
#


class IDGenerator:
    """Assigns unique, increasing IDs starting from one. Safe to use
    from multiple threads."""

    def __init__(self):
        self._counter = itertools.count(1)
        self._mu = threading.Lock()

    def next_id(self) -> int:
        with self._mu:
            return next(self._counter)


# Attribute tying the annotation of an exception to a call chain.
_CHAIN_ATTR = "_ooninetx_chain"


def _normalize_and_annotate(
    err: Optional[BaseException], operation: str, chain: Any = None
) -> NormalizedError:
    """Normalizes err and remembers the result on err itself so that
    outer wrappers of the same call chain honour the operation precedence
    rules. An annotation left by another call chain is ignored."""
    if err is not None and getattr(err, _CHAIN_ATTR, None) is not chain:
        clear_annotation(err)
    normalized = normalize(err, operation)
    if err is not None:
        annotate(err, normalized)
        setattr(err, _CHAIN_ATTR, chain)
        if str(normalized.failure).startswith(str(Failure.UNKNOWN_FAILURE)):
            logging.warning(f"{operation}: unhandled failure: {normalized.failure}")
    return normalized


def _forget(err: BaseException):
    """Removes the annotation once err leaves the outermost wrapper, so
    that raising the same exception object again starts afresh."""
    clear_annotation(err)
    if _CHAIN_ATTR in getattr(err, "__dict__", {}):
        delattr(err, _CHAIN_ATTR)


# Context key holding the token of the current call chain.
_CHAIN_KEY = "measuring_chain"


def _enter(ctx: Context) -> Tuple[Context, Any, bool]:
    """Returns the context to pass to the inner implementation, the token
    of the call chain and whether we are the outermost wrapper of it."""
    chain = ctx.value(_CHAIN_KEY)
    if chain is not None:
        return ctx, chain, False
    chain = object()
    return ctx.with_value(_CHAIN_KEY, chain), chain, True


def _result_string(normalized: NormalizedError) -> str:
    """Provides a convenient string representation for logging"""
    if normalized.failure is not None:
        return normalized.failure
    return "ok"


#
# Resolver
#


class MeasuringResolver:
    """Resolver saving resolve_done events into a trace."""

    def __init__(
        self, resolver: Resolver, trace: Trace, options: Optional[Options] = None
    ):
        self._resolver = resolver
        self._trace = trace
        self._options = options or Options()

    def network(self) -> str:
        return self._resolver.network()

    def address(self) -> str:
        return self._resolver.address()

    def lookup_host(self, ctx: Context, hostname: str) -> List[str]:
        ctx, chain, outermost = _enter(ctx)
        try:
            addrs = self._resolver.lookup_host(ctx, hostname)
        except BaseException as exc:
            self._save(ctx, chain, hostname, [], exc)
            if outermost:
                _forget(exc)
            raise
        self._save(ctx, chain, hostname, addrs, None)
        return addrs

    def _save(
        self,
        ctx: Context,
        chain: Any,
        hostname: str,
        addrs: List[str],
        err: Optional[BaseException],
    ):
        normalized = _normalize_and_annotate(err, RESOLVE_OPERATION, chain)
        self._trace.append(
            Event(
                RESOLVE_DONE,
                self._options.clock(),
                err=err,
                failure=normalized.failure,
                operation=normalized.operation,
                address=self._resolver.address(),
                proto=self._resolver.network(),
                hostname=hostname,
                addresses=addrs,
                dial_id=dial_id(ctx),
                transaction_id=transaction_id(ctx),
            )
        )
        logging.info(f"lookup {hostname}... {_result_string(normalized)} {addrs}")


#
# Dialer
#


class MeasuringConn:
    """Conn saving read, write and close events into a trace. Any other
    attribute is forwarded to the underlying conn."""

    def __init__(
        self,
        conn: Conn,
        trace: Trace,
        options: Options,
        network: str,
        address: str,
        conn_id: int,
        did: int,
        txid: int,
    ):
        self._conn = conn
        self._trace = trace
        self._options = options
        self._network = network
        self._address = address
        self.conn_id = conn_id
        self._dial_id = did
        self._transaction_id = txid

    def recv(self, bufsize: int) -> bytes:
        try:
            data = self._conn.recv(bufsize)
        except BaseException as exc:
            self._save(READ, READ_OPERATION, 0, exc)
            _forget(exc)
            raise
        self._save(READ, READ_OPERATION, len(data), None)
        return data

    def send(self, data: bytes) -> int:
        try:
            count = self._conn.send(data)
        except BaseException as exc:
            self._save(WRITE, WRITE_OPERATION, 0, exc)
            _forget(exc)
            raise
        self._save(WRITE, WRITE_OPERATION, count, None)
        return count

    def sendall(self, data: bytes) -> None:
        """Sends all the data. Raises ConnectionError if the underlying
        conn accepts zero bytes."""
        view = memoryview(data)
        while view:
            count = self.send(view)  # type: ignore
            if count <= 0:
                raise ConnectionError("send wrote zero bytes")
            view = view[count:]

    def close(self) -> None:
        try:
            self._conn.close()
        except BaseException as exc:
            self._save(CLOSE, CLOSE_OPERATION, 0, exc)
            _forget(exc)
            raise
        self._save(CLOSE, CLOSE_OPERATION, 0, None)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    def _save(self, name: str, operation: str, count: int, err: Optional[BaseException]):
        normalized = _normalize_and_annotate(err, operation)
        self._trace.append(
            Event(
                name,
                self._options.clock(),
                err=err,
                failure=normalized.failure,
                operation=normalized.operation,
                address=self._address,
                proto=self._network,
                num_bytes=count,
                conn_id=self.conn_id,
                dial_id=self._dial_id,
                transaction_id=self._transaction_id,
            )
        )


class MeasuringDialer:
    """Dialer saving connect events into a trace and returning conns
    that also save their I/O events into the same trace.

    When the context does not carry a dial ID, we assign one before
    calling the inner dialer, so that a measuring resolver used by the
    inner dialer tags its events with the same dial ID."""

    def __init__(
        self,
        dialer: Dialer,
        trace: Trace,
        options: Optional[Options] = None,
        dial_ids: Optional[IDGenerator] = None,
        conn_ids: Optional[IDGenerator] = None,
    ):
        self._dialer = dialer
        self._trace = trace
        self._options = options or Options()
        self._dial_ids = dial_ids or IDGenerator()
        self._conn_ids = conn_ids or IDGenerator()

    def dial_context(self, ctx: Context, network: str, address: str) -> Conn:
        did = dial_id(ctx) or self._dial_ids.next_id()
        ctx, chain, outermost = _enter(with_dial_id(ctx, did))
        try:
            conn = self._dialer.dial_context(ctx, network, address)
        except BaseException as exc:
            self._save(ctx, chain, network, address, 0, exc)
            if outermost:
                _forget(exc)
            raise
        conn_id = self._conn_ids.next_id()
        self._save(ctx, chain, network, address, conn_id, None)
        return MeasuringConn(
            conn,
            self._trace,
            self._options,
            network,
            address,
            conn_id,
            did,
            transaction_id(ctx),
        )

    def _save(
        self,
        ctx: Context,
        chain: Any,
        network: str,
        address: str,
        conn_id: int,
        err: Optional[BaseException],
    ):
        normalized = _normalize_and_annotate(err, CONNECT_OPERATION, chain)
        self._trace.append(
            Event(
                CONNECT,
                self._options.clock(),
                err=err,
                failure=normalized.failure,
                operation=normalized.operation,
                address=address,
                proto=network,
                conn_id=conn_id,
                dial_id=dial_id(ctx),
                transaction_id=transaction_id(ctx),
            )
        )
        logging.info(
            f"[#{dial_id(ctx)}] connect {address}/{network}... {_result_string(normalized)}"
        )


#
# TLS dialer
#


def _tls_connection_state(conn: TLSConn) -> Tuple[str, str, str, List[bytes]]:
    """Returns cipher suite, negotiated ALPN, TLS version and the peer
    certificates of a TLS conn."""
    cipher = conn.cipher()
    cipher_suite = cipher[0] if cipher else ""
    negotiated_proto = conn.selected_alpn_protocol() or ""
    version = conn.version() or ""
    #
    # Note: the ssl module only gives us the server's certificate
    # and not the whole chain, hence the list contains at most one
    # certificate in DER format.
    #
    cert = conn.getpeercert(binary_form=True)
    certs = [bytes(cert)] if cert else []
    return cipher_suite, negotiated_proto, version, certs


class MeasuringTLSDialer:
    """TLSDialer saving tls_handshake_done events into a trace."""

    def __init__(
        self, dialer: TLSDialer, trace: Trace, options: Optional[Options] = None
    ):
        self._dialer = dialer
        self._trace = trace
        self._options = options or Options()

    def dial_tls_context(self, ctx: Context, network: str, address: str) -> TLSConn:
        ctx, chain, outermost = _enter(ctx)
        try:
            conn = self._dialer.dial_tls_context(ctx, network, address)
        except BaseException as exc:
            self._save(ctx, chain, network, address, None, exc)
            if outermost:
                _forget(exc)
            raise
        self._save(ctx, chain, network, address, conn, None)
        return conn

    def _save(
        self,
        ctx: Context,
        chain: Any,
        network: str,
        address: str,
        conn: Optional[TLSConn],
        err: Optional[BaseException],
    ):
        normalized = _normalize_and_annotate(err, TLS_HANDSHAKE_OPERATION, chain)
        cipher_suite, negotiated_proto, version, certs = "", "", "", []
        if conn is not None:
            cipher_suite, negotiated_proto, version, certs = _tls_connection_state(
                conn
            )
        self._trace.append(
            Event(
                TLS_HANDSHAKE_DONE,
                self._options.clock(),
                err=err,
                failure=normalized.failure,
                operation=normalized.operation,
                address=address,
                proto=network,
                tls_cipher_suite=cipher_suite,
                tls_negotiated_proto=negotiated_proto,
                tls_version=version,
                tls_peer_certs=certs,
                conn_id=getattr(conn, "conn_id", 0) if conn is not None else 0,
                dial_id=dial_id(ctx),
                transaction_id=transaction_id(ctx),
            )
        )
        logging.info(
            f"tls_handshake {address} {version} {negotiated_proto}... {_result_string(normalized)}"
        )


#
# HTTP transport
#


class _HTTPBodyReader:
    """Replays the body snapshot we've already read before reading the
    rest of the body from the original stream."""

    def __init__(self, snapshot: bytes, rest: BinaryIO):
        self._snapshot = io.BytesIO(snapshot)
        self._rest = rest

    def read(self, amt: Optional[int] = None) -> bytes:
        if amt is None or amt < 0:
            return self._snapshot.read() + self._rest.read()
        data = self._snapshot.read(amt)
        if data:
            return data
        return self._rest.read(amt)

    def close(self) -> None:
        self._rest.close()


def _close_body(body: Any):
    """Closes a body the caller will never see because reading the
    snapshot failed."""
    try:
        body.close()
    except Exception as exc:
        logging.warning(f"cannot close response body: {exc}")


def _read_snapshot(body: BinaryIO, size: int) -> Tuple[bytes, bool]:
    """Reads at most size bytes plus one byte used to know whether
    the body is larger than the snapshot."""
    chunks: List[bytes] = []
    total = 0
    while total <= size:
        chunk = body.read(size + 1 - total)
        if not chunk:
            break
        chunks.append(chunk)
        total += len(chunk)
    data = b"".join(chunks)
    return data, len(data) > size


class MeasuringHTTPTransport:
    """HTTPTransport saving http_round_trip_done events into a trace.

    For OONI the round trip also includes reading a snapshot of the
    response body. The response we return allows the caller to read the
    whole body, including the part we have already read.

    When the context does not carry a transaction ID, we assign one before
    calling the inner transport, so that everything happening inside the
    round trip is tagged with the same transaction ID."""

    def __init__(
        self,
        transport: HTTPTransport,
        trace: Trace,
        options: Optional[Options] = None,
        transaction_ids: Optional[IDGenerator] = None,
    ):
        self._transport = transport
        self._trace = trace
        self._options = options or Options()
        self._transaction_ids = transaction_ids or IDGenerator()

    def round_trip(self, ctx: Context, request: HTTPRequest) -> HTTPResponse:
        txid = transaction_id(ctx) or self._transaction_ids.next_id()
        ctx, chain, outermost = _enter(with_transaction_id(ctx, txid))
        reqsize = self._options.max_request_body_snapshot_size
        reqbody = HTTPBodySnapshot(
            request.body[:reqsize], len(request.body) > reqsize
        )
        response: Optional[HTTPResponse] = None
        respbody: Optional[HTTPBodySnapshot] = None
        try:
            response = self._transport.round_trip(ctx, request)
            data, truncated = _read_snapshot(
                response.body, self._options.max_response_body_snapshot_size
            )
            snapshot = data[: self._options.max_response_body_snapshot_size]
            respbody = HTTPBodySnapshot(snapshot, truncated)
            response.body = _HTTPBodyReader(data, response.body)  # type: ignore
        except BaseException as exc:
            if response is not None:
                _close_body(response.body)
            self._save(ctx, chain, request, reqbody, response, respbody, exc)
            if outermost:
                _forget(exc)
            raise
        self._save(ctx, chain, request, reqbody, response, respbody, None)
        return response

    def _save(
        self,
        ctx: Context,
        chain: Any,
        request: HTTPRequest,
        reqbody: HTTPBodySnapshot,
        response: Optional[HTTPResponse],
        respbody: Optional[HTTPBodySnapshot],
        err: Optional[BaseException],
    ):
        normalized = _normalize_and_annotate(err, HTTP_ROUND_TRIP_OPERATION, chain)
        self._trace.append(
            Event(
                HTTP_ROUND_TRIP_DONE,
                self._options.clock(),
                err=err,
                failure=normalized.failure,
                operation=normalized.operation,
                http_request=request,
                http_request_body=reqbody,
                http_response=response,
                http_response_body=respbody,
                dial_id=dial_id(ctx),
                transaction_id=transaction_id(ctx),
            )
        )
        logging.info(
            f"[#{transaction_id(ctx)}] {request.method} {request.url}... {_result_string(normalized)}"
        )
