import socket
import struct
import threading
from unittest.mock import MagicMock

import pytest

from courier.context import background
from courier.exceptions import (
    Cancelled,
    InvalidAddressError,
    ProxyDialError,
    UnknownAuthnTypeError,
    UnknownProxySchemeError,
)
from courier.target import dialer
from courier.target.types import HostAuthn, HostOption


class FakeSocket:
    """Replays canned proxy responses and records what was sent."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.sent = b""
        self.closed = False
        self.timeouts = []

    def sendall(self, data):
        self.sent += data

    def recv(self, n):
        if not self.responses:
            return b""
        head = self.responses[0]
        chunk, rest = head[:n], head[n:]
        if rest:
            self.responses[0] = rest
        else:
            self.responses.pop(0)
        return chunk

    def settimeout(self, t):
        self.timeouts.append(t)

    def close(self):
        self.closed = True


class FakeForward(dialer.Dialer):
    def __init__(self, sock):
        self.sock = sock
        self.dialed = []

    def dial(self, address):
        self.dialed.append(address)
        return self.sock


def test_http_connect_handshake():
    sock = FakeSocket(b"HTTP/1.1 200 Connection established\r\n\r\n")
    forward = FakeForward(sock)
    d = dialer.HTTPConnectDialer(forward, ("proxy", 3128), "me", "pw")

    assert d.dial(("10.0.0.5", 22)) is sock
    assert forward.dialed == [("proxy", 3128)]
    assert sock.sent.startswith(b"CONNECT 10.0.0.5:22 HTTP/1.1\r\nHost: 10.0.0.5:22\r\n")
    assert b"Proxy-Authorization: Basic bWU6cHc=\r\n" in sock.sent
    assert sock.sent.endswith(b"\r\n\r\n")
    assert sock.timeouts[-1] is None


def test_http_connect_refused_closes_socket():
    sock = FakeSocket(b"HTTP/1.1 407 Proxy Authentication Required\r\n\r\n")
    d = dialer.HTTPConnectDialer(FakeForward(sock), ("proxy", 3128))

    with pytest.raises(ConnectionError, match="status code: 407"):
        d.dial(("10.0.0.5", 22))
    assert sock.closed
    assert b"Proxy-Authorization" not in sock.sent


def test_socks5_no_auth_domain_name():
    sock = FakeSocket(
        b"\x05\x00",
        b"\x05\x00\x00\x01",
        b"\x7f\x00\x00\x01\x00\x16",
    )
    d = dialer.SOCKS5Dialer(FakeForward(sock), ("proxy", 1080))
    d.dial(("target.example", 22))

    greeting, request = sock.sent[:3], sock.sent[3:]
    assert greeting == b"\x05\x01\x00"
    name = b"target.example"
    assert request == b"\x05\x01\x00\x03" + bytes([len(name)]) + name + struct.pack("!H", 22)


def test_socks5_user_password_ipv4():
    sock = FakeSocket(
        b"\x05\x02",
        b"\x01\x00",
        b"\x05\x00\x00\x04" + b"\x00" * 18,
    )
    d = dialer.SOCKS5Dialer(FakeForward(sock), ("proxy", 1080), "me", "pw")
    d.dial(("10.0.0.5", 2222))

    assert sock.sent.startswith(b"\x05\x02\x00\x02")
    assert b"\x01\x02me\x02pw" in sock.sent
    assert sock.sent.endswith(b"\x05\x01\x00\x01\x0a\x00\x00\x05" + struct.pack("!H", 2222))


@pytest.mark.parametrize(
    "responses,message",
    [
        ((b"\x05\xff",), "no acceptable"),
        ((b"\x05\x02", b"\x01\x01"), "authentication failed"),
        ((b"\x05\x00", b"\x05\x05\x00\x01"), "connection refused"),
        ((b"\x05\x00",), "closed during handshake"),
    ],
)
def test_socks5_failures(responses, message):
    sock = FakeSocket(*responses)
    d = dialer.SOCKS5Dialer(FakeForward(sock), ("proxy", 1080), "me", "pw")
    with pytest.raises(ConnectionError, match=message):
        d.dial(("10.0.0.5", 22))
    assert sock.closed


@pytest.mark.parametrize(
    "address,cls,proxy",
    [
        ("http://proxy", dialer.HTTPConnectDialer, ("proxy", 80)),
        ("https://proxy", dialer.HTTPConnectDialer, ("proxy", 443)),
        ("http://proxy:3128", dialer.HTTPConnectDialer, ("proxy", 3128)),
        ("socks5://proxy", dialer.SOCKS5Dialer, ("proxy", 1080)),
    ],
)
def test_dial_selects_protocol(address, cls, proxy):
    d = dialer.dial(None, HostOption(address, HostAuthn("proxy", "u", "p")))
    assert isinstance(d, cls)
    assert d.proxy == proxy
    assert (d.user, d.password) == ("u", "p")
    assert isinstance(d.forward, dialer.DirectDialer)


def test_dial_unknown_scheme():
    with pytest.raises(UnknownProxySchemeError):
        dialer.dial(None, HostOption("ftp://proxy", HostAuthn("proxy")))


def test_ssh_tunnel_dialer():
    transport = MagicMock()
    d = dialer.SSHTunnelDialer(transport, "bastion:22")
    d.dial(("10.0.0.5", 22))
    transport.open_channel.assert_called_once_with(
        "direct-tcpip", ("10.0.0.5", 22), ("127.0.0.1", 0)
    )
    d.close()
    transport.close.assert_called_once_with()


class Layer(dialer.Dialer):
    def __init__(self, name, events, forward):
        self.name = name
        self.events = events
        self.forward = forward

    def close(self):
        self.events.append(("close", self.name))


def recording_factory(events, fail_at=None):
    def factory(forward, hop):
        events.append(("dial", hop.address))
        if hop.address == fail_at:
            raise OSError("unreachable")
        return Layer(hop.address, events, forward)

    return factory


def hops(n):
    return [HostOption(f"hop{i}", HostAuthn("proxy")) for i in range(1, n + 1)]


def test_build_chain_layers():
    """
    Test an n-hop chain has n layers, each dialed through the previous one
    """
    events = []
    chain = dialer.build_chain(hops(3), {"proxy": recording_factory(events)})

    assert len(chain) == 3
    assert [h.name for h in chain.hops] == ["hop1", "hop2", "hop3"]
    assert len(chain.hops[2].forward) == 2
    assert len(chain.hops[0].forward) == 0

    chain.close()
    assert events[3:] == [("close", "hop3"), ("close", "hop2"), ("close", "hop1")]


def test_build_chain_failure_closes_earlier_hops():
    """
    Test a failure at hop k closes hops 1..k-1 and never tries k+1
    """
    events = []
    with pytest.raises(ProxyDialError) as e:
        dialer.build_chain(hops(4), {"proxy": recording_factory(events, fail_at="hop3")})

    assert e.value.index == 3
    assert e.value.address == "hop3"
    assert isinstance(e.value.reason, OSError)
    assert events == [
        ("dial", "hop1"),
        ("dial", "hop2"),
        ("dial", "hop3"),
        ("close", "hop2"),
        ("close", "hop1"),
    ]


def test_build_chain_configuration_error_is_not_wrapped():
    events = []

    def factory(forward, hop):
        if hop.address == "hop2":
            raise InvalidAddressError(hop.address)
        return recording_factory(events)(forward, hop)

    with pytest.raises(InvalidAddressError):
        dialer.build_chain(hops(2), {"proxy": factory})
    assert events[-1] == ("close", "hop1")


def test_build_chain_cancelled_before_dialing():
    events = []
    ctx = background()
    ctx.cancel()
    with pytest.raises(Cancelled):
        dialer.build_chain(hops(2), {"proxy": recording_factory(events)}, ctx=ctx)
    assert events == []


def test_build_chain_cancelled_while_dialing():
    """
    Test cancelling while hop 2 dials closes hop 1 and reports the cancellation
    """
    events = []
    ctx = background()
    record = recording_factory(events)

    def factory(forward, hop):
        if hop.address == "hop2":
            ctx.cancel()
            raise OSError("connection reset")
        return record(forward, hop)

    with pytest.raises(Cancelled):
        dialer.build_chain(hops(3), {"proxy": factory}, ctx=ctx)
    assert events == [("dial", "hop1"), ("close", "hop1")]


def test_build_chain_unknown_hop_type():
    with pytest.raises(UnknownAuthnTypeError):
        dialer.build_chain([HostOption("w", HostAuthn("winrm"))], {})


def test_empty_chain_dials_directly(monkeypatch):
    sock = MagicMock()
    create = MagicMock(return_value=sock)
    monkeypatch.setattr("courier.target.dialer.socket.create_connection", create)

    chain = dialer.build_chain([], {}, timeout=3)
    assert len(chain) == 0
    assert chain.dial(("h", 22)) is sock
    create.assert_called_once_with(("h", 22), timeout=3)


def test_chain_close_raises_first_error_after_closing_all():
    a, b = MagicMock(), MagicMock()
    b.close.side_effect = OSError("b")
    a.close.side_effect = OSError("a")
    chain = dialer.DialerChain([a, b])

    with pytest.raises(OSError, match="b"):
        chain.close()
    a.close.assert_called_once_with()
    assert len(chain) == 0


def test_local_forwarder_relays():
    server = socket.socket()
    server.bind(("127.0.0.1", 0))
    server.listen(1)

    def echo():
        conn, _ = server.accept()
        with conn:
            conn.sendall(conn.recv(1024).upper())

    t = threading.Thread(target=echo, daemon=True)
    t.start()

    with dialer.LocalForwarder(dialer.DirectDialer(5), server.getsockname()) as fwd:
        with socket.create_connection(fwd.address, timeout=5) as c:
            c.sendall(b"ping")
            assert c.recv(1024) == b"PING"

    t.join(5)
    server.close()
