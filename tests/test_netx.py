"""
Tests for the netx module using fake capabilities.
"""

import asyncio
import datetime
import errno
import io
import itertools
import logging
import socket
from typing import List

import pytest

from ooninetx import correlation, trace
from ooninetx.correlation import BACKGROUND, Context
from ooninetx.errorx import DNSBogonError, annotation
from ooninetx.model import (
    HTTPHeader,
    HTTPRequest,
    HTTPResponse,
    Options,
)
from ooninetx.netx import (
    IDGenerator,
    MeasuringDialer,
    MeasuringHTTPTransport,
    MeasuringResolver,
    MeasuringTLSDialer,
)
from ooninetx.trace import Trace

BEGIN = datetime.datetime(2022, 4, 1, 10, 0, 0, tzinfo=datetime.timezone.utc)


def _options() -> Options:
    """Options with a clock advancing one second at every call."""
    counter = itertools.count(1)
    options = Options()
    options.clock = lambda: BEGIN + datetime.timedelta(seconds=next(counter))
    return options


class FakeResolver:
    def __init__(self, addrs: List[str] = None, err: Exception = None):
        self.addrs = addrs or []
        self.err = err
        self.contexts: List[Context] = []

    def lookup_host(self, ctx, hostname):
        self.contexts.append(ctx)
        if self.err is not None:
            raise self.err
        return list(self.addrs)

    def network(self):
        return "udp"

    def address(self):
        return "8.8.8.8:53"


class FakeConn:
    def __init__(self, incoming: bytes = b"", recv_err: Exception = None):
        self.incoming = io.BytesIO(incoming)
        self.recv_err = recv_err
        self.sent = b""
        self.closed = False
        self.family = socket.AF_INET

    def recv(self, bufsize):
        if self.recv_err is not None:
            raise self.recv_err
        return self.incoming.read(bufsize)

    def send(self, data):
        # Accept at most four bytes at a time.
        self.sent += data[:4]
        return min(len(data), 4)

    def close(self):
        self.closed = True


class FakeTLSConn(FakeConn):
    def cipher(self):
        return ("TLS_AES_128_GCM_SHA256", "TLSv1.3", 128)

    def version(self):
        return "TLSv1.3"

    def selected_alpn_protocol(self):
        return "h2"

    def getpeercert(self, binary_form=False):
        return b"\x30\x82\x01\x0a" if binary_form else {}


class ResolvingDialer:
    """Dialer resolving the domain with the given resolver first."""

    def __init__(self, resolver, conn=None, err=None):
        self.resolver = resolver
        self.conn = conn or FakeConn()
        self.err = err

    def dial_context(self, ctx, network, address):
        host, port = address.rsplit(":", 1)
        self.resolver.lookup_host(ctx, host)
        if self.err is not None:
            raise self.err
        return self.conn


class HandshakingTLSDialer:
    """TLS dialer dialing with the given dialer and then reading from
    the conn to simulate the handshake."""

    def __init__(self, dialer, tls_conn=None):
        self.dialer = dialer
        self.tls_conn = tls_conn or FakeTLSConn()

    def dial_tls_context(self, ctx, network, address):
        conn = self.dialer.dial_context(ctx, network, address)
        conn.recv(1024)
        return self.tls_conn


class FakeTransport:
    def __init__(self, response=None, err=None, resolver=None):
        self.response = response
        self.err = err
        self.resolver = resolver
        self.contexts: List[Context] = []

    def round_trip(self, ctx, request):
        self.contexts.append(ctx)
        if self.resolver is not None:
            self.resolver.lookup_host(ctx, "example.com")
        if self.err is not None:
            raise self.err
        return self.response


def _names(tr: Trace) -> List[str]:
    return [ev.name for ev in tr.events()]


class TestIDGenerator:
    def test_starts_from_one(self):
        gen = IDGenerator()
        assert [gen.next_id() for _ in range(3)] == [1, 2, 3]


class TestMeasuringResolver:
    def test_success(self):
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(["1.1.1.1", "::1"]), tr, _options())
        addrs = reso.lookup_host(BACKGROUND, "example.com")
        assert addrs == ["1.1.1.1", "::1"]
        assert reso.network() == "udp"
        assert reso.address() == "8.8.8.8:53"
        (ev,) = tr.events()
        assert ev.name == trace.RESOLVE_DONE
        assert ev.operation == "resolve"
        assert ev.failure is None
        assert ev.hostname == "example.com"
        assert ev.addresses == ["1.1.1.1", "::1"]
        assert ev.proto == "udp"
        assert ev.address == "8.8.8.8:53"
        assert ev.time == BEGIN + datetime.timedelta(seconds=1)

    def test_failure_returns_the_same_exception(self):
        err = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(err=err), tr, _options())
        with pytest.raises(socket.gaierror) as excinfo:
            reso.lookup_host(BACKGROUND, "antani.ooni.io")
        assert excinfo.value is err
        (ev,) = tr.events()
        assert ev.failure == "dns_nxdomain_error"
        assert ev.operation == "resolve"
        assert ev.err is err
        assert ev.addresses == []

    def test_unknown_failure_is_logged(self, caplog):
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(err=Exception("mocked error")), tr)
        with caplog.at_level(logging.WARNING):
            with pytest.raises(Exception):
                reso.lookup_host(BACKGROUND, "example.com")
        assert "unknown_failure: mocked error" in caplog.text

    def test_correlation_ids_from_context(self):
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(["1.1.1.1"]), tr)
        ctx = correlation.with_transaction_id(BACKGROUND, 11)
        ctx = correlation.with_dial_id(ctx, 7)
        reso.lookup_host(ctx, "example.com")
        (ev,) = tr.events()
        assert ev.dial_id == 7
        assert ev.transaction_id == 11


class TestMeasuringDialer:
    def test_dial_id_is_propagated(self):
        tr = Trace()
        options = _options()
        reso = MeasuringResolver(FakeResolver(["93.184.216.34"]), tr, options)
        dialer = MeasuringDialer(ResolvingDialer(reso), tr, options)
        conn = dialer.dial_context(BACKGROUND, "tcp", "example.com:443")
        resolve, connect = tr.events()
        assert resolve.name == trace.RESOLVE_DONE
        assert connect.name == trace.CONNECT
        assert resolve.dial_id == 1
        assert connect.dial_id == 1
        assert connect.conn_id == 1
        assert connect.address == "example.com:443"
        assert connect.proto == "tcp"
        assert conn.conn_id == 1

    def test_existing_dial_id_is_kept(self):
        tr = Trace()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver()), tr)
        dialer.dial_context(correlation.with_dial_id(BACKGROUND, 42), "tcp", "a:1")
        (connect,) = tr.events()
        assert connect.dial_id == 42

    def test_ids_increase(self):
        tr = Trace()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver()), tr)
        dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        assert [(ev.dial_id, ev.conn_id) for ev in tr.events()] == [(1, 1), (2, 2)]

    def test_failure(self):
        err = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        tr = Trace()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver(), err=err), tr)
        with pytest.raises(ConnectionRefusedError) as excinfo:
            dialer.dial_context(BACKGROUND, "tcp", "127.0.0.1:1")
        assert excinfo.value is err
        (connect,) = tr.events()
        assert connect.failure == "connection_refused"
        assert connect.operation == "connect"
        assert connect.conn_id == 0
        assert connect.dial_id == 1

    def test_conn_events(self):
        tr = Trace()
        fake = FakeConn(incoming=b"HTTP/1.1 200 OK\r\n")
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver(), conn=fake), tr)
        conn = dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        conn.sendall(b"GET / HTTP/1.0\r\n")
        assert fake.sent == b"GET / HTTP/1.0\r\n"
        assert conn.recv(1024) == b"HTTP/1.1 200 OK\r\n"
        conn.close()
        assert fake.closed
        assert conn.family == socket.AF_INET
        events = tr.events()
        assert _names(tr) == ["connect"] + ["write"] * 4 + ["read", "close"]
        for ev in events:
            assert ev.conn_id == 1
            assert ev.dial_id == 1
            assert ev.address == "1.1.1.1:80"
            assert ev.proto == "tcp"
        assert [ev.num_bytes for ev in events[1:5]] == [4, 4, 4, 4]
        assert events[5].num_bytes == 17

    def test_read_failure(self):
        err = ConnectionResetError(errno.ECONNRESET, "Connection reset by peer")
        tr = Trace()
        fake = FakeConn(recv_err=err)
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver(), conn=fake), tr)
        conn = dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        with pytest.raises(ConnectionResetError) as excinfo:
            conn.recv(1024)
        assert excinfo.value is err
        read = tr.events()[-1]
        assert read.name == "read"
        assert read.failure == "connection_reset"
        assert read.operation == "read"
        assert read.num_bytes == 0


class TestMeasuringTLSDialer:
    def test_success(self):
        tr = Trace()
        options = _options()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver()), tr, options)
        tlsdialer = MeasuringTLSDialer(HandshakingTLSDialer(dialer), tr, options)
        tlsdialer.dial_tls_context(BACKGROUND, "tcp", "1.1.1.1:443")
        assert _names(tr) == ["connect", "read", "tls_handshake_done"]
        ev = tr.events()[-1]
        assert ev.failure is None
        assert ev.operation == "tls_handshake"
        assert ev.tls_cipher_suite == "TLS_AES_128_GCM_SHA256"
        assert ev.tls_negotiated_proto == "h2"
        assert ev.tls_version == "TLSv1.3"
        assert ev.tls_peer_certs == [b"\x30\x82\x01\x0a"]
        assert ev.address == "1.1.1.1:443"

    def test_read_failure_is_blamed_on_handshake(self):
        err = ConnectionResetError(errno.ECONNRESET, "Connection reset by peer")
        tr = Trace()
        inner = ResolvingDialer(FakeResolver(), conn=FakeConn(recv_err=err))
        dialer = MeasuringDialer(inner, tr)
        tlsdialer = MeasuringTLSDialer(HandshakingTLSDialer(dialer), tr)
        with pytest.raises(ConnectionResetError) as excinfo:
            tlsdialer.dial_tls_context(BACKGROUND, "tcp", "1.1.1.1:443")
        assert excinfo.value is err
        connect, read, handshake = tr.events()
        assert connect.failure is None
        assert (read.failure, read.operation) == ("connection_reset", "read")
        assert (handshake.failure, handshake.operation) == (
            "connection_reset",
            "tls_handshake",
        )
        assert handshake.tls_peer_certs == []

    def test_connect_failure_keeps_connect_operation(self):
        err = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        tr = Trace()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver(), err=err), tr)
        tlsdialer = MeasuringTLSDialer(HandshakingTLSDialer(dialer), tr)
        with pytest.raises(ConnectionRefusedError):
            tlsdialer.dial_tls_context(BACKGROUND, "tcp", "1.1.1.1:443")
        handshake = tr.events()[-1]
        assert (handshake.failure, handshake.operation) == (
            "connection_refused",
            "connect",
        )


class TestMeasuringHTTPTransport:
    def _response(self, body: bytes) -> HTTPResponse:
        headers = HTTPHeader()
        headers.append("Content-Type", "text/plain")
        return HTTPResponse(200, headers, io.BytesIO(body))

    def test_body_snapshot(self):
        tr = Trace()
        options = _options()
        options.max_request_body_snapshot_size = 2
        options.max_response_body_snapshot_size = 4
        txp = MeasuringHTTPTransport(
            FakeTransport(self._response(b"0123456789")), tr, options
        )
        request = HTTPRequest("POST", "http://example.com/", body=b"abc")
        response = txp.round_trip(BACKGROUND, request)
        assert response.body.read() == b"0123456789"
        (ev,) = tr.events()
        assert ev.name == trace.HTTP_ROUND_TRIP_DONE
        assert ev.operation == "http_round_trip"
        assert ev.failure is None
        assert ev.http_request is request
        assert ev.http_request_body.data == b"ab"
        assert ev.http_request_body.truncated is True
        assert ev.http_response is response
        assert ev.http_response_body.data == b"0123"
        assert ev.http_response_body.truncated is True
        assert ev.transaction_id == 1

    def test_small_body_is_not_truncated(self):
        tr = Trace()
        txp = MeasuringHTTPTransport(FakeTransport(self._response(b"ok")), tr)
        response = txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://x/"))
        chunks = []
        while True:
            chunk = response.body.read(1)
            if not chunk:
                break
            chunks.append(chunk)
        assert b"".join(chunks) == b"ok"
        (ev,) = tr.events()
        assert ev.http_response_body.data == b"ok"
        assert ev.http_response_body.truncated is False

    def test_transaction_id_is_propagated(self):
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(["1.1.1.1"]), tr)
        inner = FakeTransport(self._response(b""), resolver=reso)
        txp = MeasuringHTTPTransport(inner, tr)
        txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        assert [(ev.name, ev.transaction_id) for ev in tr.events()] == [
            ("resolve_done", 1),
            ("http_round_trip_done", 1),
            ("resolve_done", 2),
            ("http_round_trip_done", 2),
        ]
        assert correlation.transaction_id(inner.contexts[0]) == 1

    def test_dns_failure_is_blamed_on_resolve(self):
        err = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(err=err), tr)
        txp = MeasuringHTTPTransport(FakeTransport(resolver=reso), tr)
        with pytest.raises(socket.gaierror) as excinfo:
            txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        assert excinfo.value is err
        resolve, round_trip = tr.events()
        assert (resolve.failure, resolve.operation) == ("dns_nxdomain_error", "resolve")
        assert (round_trip.failure, round_trip.operation) == (
            "dns_nxdomain_error",
            "resolve",
        )
        assert round_trip.http_response is None
        assert round_trip.http_response_body is None

    def test_failure(self):
        err = EOFError()
        tr = Trace()
        txp = MeasuringHTTPTransport(FakeTransport(err=err), tr)
        with pytest.raises(EOFError):
            txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        (ev,) = tr.events()
        assert (ev.failure, ev.operation) == ("eof_error", "http_round_trip")


class FailingTLSDialer:
    def __init__(self, err):
        self.err = err

    def dial_tls_context(self, ctx, network, address):
        raise self.err


class SwallowingTransport:
    """Transport whose lookups may fail without failing the round trip."""

    def __init__(self, resolver, response):
        self.resolver = resolver
        self.response = response

    def round_trip(self, ctx, request):
        try:
            self.resolver.lookup_host(ctx, "example.com")
        except OSError:
            pass
        return self.response


class ZeroConn(FakeConn):
    def send(self, data):
        return 0


class FailingBody:
    def __init__(self, err):
        self.err = err
        self.closed = False

    def read(self, amt=None):
        raise self.err

    def close(self):
        self.closed = True


class TestReraisedExceptions:
    @pytest.mark.parametrize(
        "err,failure",
        [
            (DNSBogonError(), "dns_bogon_error"),
            (OSError("boom"), "unknown_failure: boom"),
        ],
    )
    def test_same_exception_raised_twice(self, err, failure):
        tr = Trace()
        tlsdialer = MeasuringTLSDialer(FailingTLSDialer(err), tr)
        with pytest.raises(type(err)):
            tlsdialer.dial_tls_context(BACKGROUND, "tcp", "1.1.1.1:443")
        reso = MeasuringResolver(FakeResolver(err=err), tr)
        with pytest.raises(type(err)):
            reso.lookup_host(BACKGROUND, "example.com")
        handshake, resolve = tr.events()
        assert (handshake.failure, handshake.operation) == (failure, "tls_handshake")
        assert (resolve.failure, resolve.operation) == (failure, "resolve")

    def test_annotation_does_not_outlive_the_wrappers(self):
        err = OSError("boom")
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(err=err), tr)
        txp = MeasuringHTTPTransport(FakeTransport(resolver=reso), tr)
        with pytest.raises(OSError):
            txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        assert tr.events()[-1].operation == "resolve"
        assert annotation(err) is None

    def test_annotation_from_another_call_chain_is_ignored(self):
        err = OSError("boom")
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(err=err), tr)
        txp = MeasuringHTTPTransport(
            SwallowingTransport(reso, HTTPResponse(200)), tr
        )
        txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        tlsdialer = MeasuringTLSDialer(FailingTLSDialer(err), tr)
        with pytest.raises(OSError):
            tlsdialer.dial_tls_context(BACKGROUND, "tcp", "1.1.1.1:443")
        resolve, round_trip, handshake = tr.events()
        assert resolve.operation == "resolve"
        assert round_trip.failure is None
        assert handshake.operation == "tls_handshake"


class TestCancellation:
    def test_resolver(self):
        err = asyncio.CancelledError()
        tr = Trace()
        reso = MeasuringResolver(FakeResolver(err=err), tr)
        with pytest.raises(asyncio.CancelledError) as excinfo:
            reso.lookup_host(BACKGROUND, "example.com")
        assert excinfo.value is err
        (ev,) = tr.events()
        assert (ev.failure, ev.operation) == ("generic_timeout_error", "resolve")

    def test_conn(self):
        tr = Trace()
        fake = FakeConn(recv_err=asyncio.CancelledError())
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver(), conn=fake), tr)
        conn = dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        with pytest.raises(asyncio.CancelledError):
            conn.recv(1024)
        read = tr.events()[-1]
        assert (read.failure, read.operation) == ("generic_timeout_error", "read")


class TestSendall:
    def test_zero_length_send(self):
        tr = Trace()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver(), conn=ZeroConn()), tr)
        conn = dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        with pytest.raises(ConnectionError):
            conn.sendall(b"GET / HTTP/1.0\r\n")
        assert _names(tr) == ["connect", "write"]
        assert tr.events()[-1].num_bytes == 0

    def test_empty_data(self):
        tr = Trace()
        dialer = MeasuringDialer(ResolvingDialer(FakeResolver()), tr)
        conn = dialer.dial_context(BACKGROUND, "tcp", "1.1.1.1:80")
        conn.sendall(b"")
        assert _names(tr) == ["connect"]


class TestResponseBodyFailure:
    def test_body_is_closed(self):
        err = ConnectionResetError(errno.ECONNRESET, "Connection reset by peer")
        body = FailingBody(err)
        tr = Trace()
        txp = MeasuringHTTPTransport(FakeTransport(HTTPResponse(200, body=body)), tr)
        with pytest.raises(ConnectionResetError) as excinfo:
            txp.round_trip(BACKGROUND, HTTPRequest("GET", "http://example.com/"))
        assert excinfo.value is err
        assert body.closed
        (ev,) = tr.events()
        assert (ev.failure, ev.operation) == ("connection_reset", "http_round_trip")
        assert ev.http_response_body is None
