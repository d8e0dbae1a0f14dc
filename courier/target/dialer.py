"""Dialers reaching a host directly or through a chain of proxies.

A dialer hands out socket-like objects (a `socket.socket` or a paramiko
`Channel`) connected to the requested address. Proxy dialers wrap the
dialer of the previous hop, so a chain is built by folding over the
hops in listed order::

    chain = build_chain([bastion, http_proxy])
    sock = chain.dial(("10.0.0.5", 22))
"""

import base64
from collections.abc import Callable, Iterable, Mapping
import ipaddress
from logging import getLogger
import select
import socket
import struct
import threading

from ..context import Context
from ..exceptions import (
    Cancelled,
    ConfigurationError,
    ProxyDialError,
    UnknownAuthnTypeError,
    UnknownProxySchemeError,
)
from ..pool import BytesPool, default_pool
from .types import AuthnType, HostAddress, HostOption

logger = getLogger("courier.target.dialer")

Address = tuple[str, int]

HANDSHAKE_TIMEOUT = 15.0

_SOCKS_VERSION = 0x05
_SOCKS_ERRORS = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


def _join(address: Address) -> str:
    host, port = address
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _recv_exact(sock, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            raise ConnectionError("connection closed during handshake")
        data += chunk
    return data


class Dialer:
    """Opens connections to addresses; `close()` releases the dialer."""

    def dial(self, address: Address):
        raise NotImplementedError

    def close(self) -> None:
        pass


class DirectDialer(Dialer):
    def __init__(self, timeout: float = HANDSHAKE_TIMEOUT) -> None:
        self.timeout = timeout

    def dial(self, address: Address) -> socket.socket:
        logger.debug("dialing %s", _join(address))
        sock = socket.create_connection(address, timeout=self.timeout)
        sock.settimeout(None)
        return sock


class ProxyDialer(Dialer):
    """Base of the dialers that speak a proxy protocol to their hop."""

    def __init__(
        self,
        forward: Dialer,
        proxy: Address,
        user: str = "",
        password: str = "",
        timeout: float = HANDSHAKE_TIMEOUT,
    ) -> None:
        self.forward = forward
        self.proxy = proxy
        self.user = user
        self.password = password
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} proxy={_join(self.proxy)}>"

    def dial(self, address: Address):
        sock = self.forward.dial(self.proxy)
        try:
            sock.settimeout(self.timeout)
            self.handshake(sock, address)
            sock.settimeout(None)
        except BaseException:
            sock.close()
            raise
        return sock

    def handshake(self, sock, address: Address) -> None:
        raise NotImplementedError


class HTTPConnectDialer(ProxyDialer):
    """Tunnels through an HTTP proxy with a CONNECT request."""

    def handshake(self, sock, address: Address) -> None:
        target = _join(address)
        lines = [
            f"CONNECT {target} HTTP/1.1",
            f"Host: {target}",
        ]
        if self.user or self.password:
            cred = base64.b64encode(f"{self.user}:{self.password}".encode()).decode()
            lines.append(f"Proxy-Authorization: Basic {cred}")
        sock.sendall(("\r\n".join(lines) + "\r\n\r\n").encode())

        head = b""
        while b"\r\n\r\n" not in head:
            chunk = sock.recv(1024)
            if not chunk:
                raise ConnectionError("proxy closed the connection")
            head += chunk
            if len(head) > 16 * 1024:
                raise ConnectionError("proxy response header too large")

        status = head.split(b"\r\n", 1)[0].decode("latin-1").split()
        if len(status) < 2 or not status[1].isdigit():
            raise ConnectionError(f"malformed proxy response: {status!r}")
        if int(status[1]) != 200:
            raise ConnectionError(f"connection error: status code: {status[1]}")


class SOCKS5Dialer(ProxyDialer):
    """Tunnels through a SOCKS5 proxy (RFC 1928, RFC 1929 authentication)."""

    def handshake(self, sock, address: Address) -> None:
        methods = b"\x00\x02" if self.user else b"\x00"
        sock.sendall(bytes([_SOCKS_VERSION, len(methods)]) + methods)

        version, method = _recv_exact(sock, 2)
        if version != _SOCKS_VERSION:
            raise ConnectionError(f"unexpected SOCKS version {version}")
        if method == 0xFF:
            raise ConnectionError("no acceptable SOCKS authentication methods")
        if method == 0x02:
            user, password = self.user.encode(), self.password.encode()
            sock.sendall(
                bytes([0x01, len(user)]) + user + bytes([len(password)]) + password
            )
            if _recv_exact(sock, 2)[1] != 0x00:
                raise ConnectionError("SOCKS username/password authentication failed")

        host, port = address
        try:
            ip = ipaddress.ip_address(host)
            dst = bytes([0x01 if ip.version == 4 else 0x04]) + ip.packed
        except ValueError:
            name = host.encode("idna")
            dst = bytes([0x03, len(name)]) + name
        sock.sendall(bytes([_SOCKS_VERSION, 0x01, 0x00]) + dst + struct.pack("!H", port))

        _, reply, _, atyp = _recv_exact(sock, 4)
        if reply != 0x00:
            reason = _SOCKS_ERRORS.get(reply, f"unknown error {reply:#x}")
            raise ConnectionError(f"SOCKS connect to {_join(address)}: {reason}")

        if atyp == 0x01:
            _recv_exact(sock, 4 + 2)
        elif atyp == 0x04:
            _recv_exact(sock, 16 + 2)
        elif atyp == 0x03:
            _recv_exact(sock, _recv_exact(sock, 1)[0] + 2)
        else:
            raise ConnectionError(f"unknown SOCKS address type {atyp:#x}")


class SSHTunnelDialer(Dialer):
    """Opens `direct-tcpip` channels through an authenticated SSH transport."""

    def __init__(self, transport, address: str) -> None:
        self.transport = transport
        self.address = address

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} address={self.address}>"

    def dial(self, address: Address):
        logger.debug("dialing %s via %s", _join(address), self.address)
        return self.transport.open_channel("direct-tcpip", address, ("127.0.0.1", 0))

    def close(self) -> None:
        self.transport.close()


def dial(forward: Dialer | None, hop: HostOption, timeout: float = HANDSHAKE_TIMEOUT) -> Dialer:
    """Returns a dialer reaching addresses through the proxy `hop`.

    No connection is made until the returned dialer is used.

    Raises:
        UnknownProxySchemeError: The hop's scheme is not a proxy protocol.
    """
    if forward is None:
        forward = DirectDialer(timeout)

    addr = hop.parse_address()
    authn = hop.authn

    if addr.scheme in ("http", "https"):
        default = 443 if addr.scheme == "https" else 80
        return HTTPConnectDialer(
            forward, addr.host_port(default), authn.user, authn.secret, timeout
        )
    if addr.scheme in ("socks5", "socks5h"):
        return SOCKS5Dialer(forward, addr.host_port(1080), authn.user, authn.secret, timeout)

    raise UnknownProxySchemeError(addr.scheme)


HopDialer = Callable[[Dialer, HostOption], Dialer]


class DialerChain(Dialer):
    """The dialers of an ordered list of hops, the last one nearest the target."""

    def __init__(self, hops: Iterable[Dialer] = (), timeout: float = HANDSHAKE_TIMEOUT) -> None:
        self.hops = list(hops)
        self.timeout = timeout

    def __len__(self) -> int:
        return len(self.hops)

    def extend(self, hop: Dialer) -> "DialerChain":
        return DialerChain([*self.hops, hop], self.timeout)

    def dial(self, address: Address):
        if not self.hops:
            return DirectDialer(self.timeout).dial(address)
        return self.hops[-1].dial(address)

    def close(self) -> None:
        """Closes the hops nearest to the target first.

        Every hop is closed even when an earlier one fails; the first
        failure is raised afterwards.
        """
        first = None
        for hop in reversed(self.hops):
            try:
                hop.close()
            except Exception as e:
                logger.debug("failed to close %r: %s", hop, e)
                if first is None:
                    first = e
        self.hops = []
        if first is not None:
            raise first


def default_hop_dialers() -> dict[AuthnType, HopDialer]:
    from .ssh import tunnel

    return {AuthnType.PROXY: dial, AuthnType.SSH: tunnel}


def build_chain(
    hops: Iterable[HostOption],
    dialers: Mapping[AuthnType, HopDialer] | None = None,
    timeout: float = HANDSHAKE_TIMEOUT,
    ctx: Context | None = None,
) -> DialerChain:
    """Dials the hops in listed order, each through the ones before it.

    When `ctx` is cancelled while dialing, the hops dialed so far are
    closed, which aborts the handshake running through them.

    Raises:
        ProxyDialError: A hop failed; every hop dialed before it has been
            closed and no later hop was attempted.
        ConfigurationError: A hop is invalid; raised after the same cleanup.
        Cancelled: `ctx` was cancelled before the chain was complete.
    """
    if dialers is None:
        dialers = default_hop_dialers()

    chain = DialerChain(timeout=timeout)
    if ctx is None:
        ctx = Context()
    ctx.check()
    handle = ctx.add_callback(lambda _: chain.close())
    try:
        for index, hop in enumerate(hops, 1):
            ctx.check()
            try:
                factory = dialers.get(hop.authn.type)
                if factory is None:
                    raise UnknownAuthnTypeError(hop.authn.type)
                logger.debug("dialing proxy #%d %s", index, hop.address)
                d = factory(chain, hop)
            except ConfigurationError:
                chain.close()
                raise
            except Exception as e:
                chain.close()
                if ctx.done():
                    raise ctx.err() from e
                try:
                    scheme = HostAddress.parse(hop.address).scheme
                except ConfigurationError:
                    scheme = ""
                raise ProxyDialError(index, scheme, hop.address, e) from e
            chain = chain.extend(d)
        ctx.check()
    except Cancelled:
        chain.close()
        raise
    finally:
        ctx.remove_callback(handle)

    return chain


class LocalForwarder:
    """Relays loopback connections to one address through a dialer.

    Used to put a proxy chain under clients that can only connect to a
    plain TCP endpoint.
    """

    def __init__(
        self, dialer: Dialer, target: Address, pool: BytesPool = default_pool
    ) -> None:
        self.dialer = dialer
        self.target = target
        self.pool = pool
        self._lock = threading.Lock()
        self._conns: set = set()
        self._closed = False

        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(16)
        self.address: Address = self._listener.getsockname()[:2]

        self._thread = threading.Thread(
            target=self._serve, name=f"forward:{_join(target)}", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> "LocalForwarder":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _serve(self) -> None:
        while True:
            try:
                client, _ = self._listener.accept()
            except OSError:
                return
            threading.Thread(
                target=self._relay, args=(client,), name=self._thread.name, daemon=True
            ).start()

    def _relay(self, client: socket.socket) -> None:
        try:
            remote = self.dialer.dial(self.target)
        except Exception as e:
            logger.warning("failed to forward to %s: %s", _join(self.target), e)
            client.close()
            return

        with self._lock:
            if self._closed:
                client.close()
                remote.close()
                return
            self._conns.update((client, remote))

        peers = {client: remote, remote: client}
        try:
            with self.pool.bytes() as buf:
                while True:
                    readable, _, _ = select.select(list(peers), [], [])
                    for r in readable:
                        n = r.recv_into(buf) if isinstance(r, socket.socket) else _recv_into(r, buf)
                        if not n:
                            return
                        peers[r].sendall(bytes(buf[:n]))
        except OSError as e:
            logger.debug("forwarding to %s ended: %s", _join(self.target), e)
        finally:
            with self._lock:
                self._conns.difference_update((client, remote))
            client.close()
            remote.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conns = list(self._conns)
            self._conns.clear()
        self._listener.close()
        for c in conns:
            c.close()


def _recv_into(channel, buf: memoryview) -> int:
    data = channel.recv(len(buf))
    buf[: len(data)] = data
    return len(data)
