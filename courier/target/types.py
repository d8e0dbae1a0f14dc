"""Value types describing how to reach a host."""

from dataclasses import dataclass, field
from enum import StrEnum
import ipaddress
from urllib.parse import urlsplit

from ..exceptions import InvalidAddressError, UnknownAuthnTypeError


class AuthnType(StrEnum):
    """How a hop authenticates, which also decides its protocol."""

    SSH = "ssh"
    WINRM = "winrm"
    PROXY = "proxy"
    BASIC = "basic"
    BEARER = "bearer"

    @classmethod
    def parse(cls, value: "str | AuthnType") -> "AuthnType":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnknownAuthnTypeError(str(value)) from None


@dataclass(frozen=True)
class HostAddress:
    """A parsed `[scheme://]host[:port]` address.

    `port` is 0 when the address does not carry one; the default port
    depends on the protocol and is applied by `host_port()`.
    """

    scheme: str
    host: str
    port: int = 0

    @classmethod
    def parse(cls, raw: str) -> "HostAddress":
        if not raw:
            raise InvalidAddressError(raw, "blank address")

        if "://" in raw:
            try:
                u = urlsplit(raw)
                port = u.port or 0
            except ValueError as e:
                raise InvalidAddressError(raw, str(e)) from None
            if not u.hostname:
                raise InvalidAddressError(raw, "no host")
            return cls(u.scheme.lower(), u.hostname, port)

        host, port = raw, 0
        if raw.startswith("["):
            inner, _, rest = raw[1:].partition("]")
            host = inner
            if rest.startswith(":"):
                port = _port(raw, rest[1:])
        elif raw.count(":") == 1:
            host, _, p = raw.partition(":")
            port = _port(raw, p)
        if not host:
            raise InvalidAddressError(raw, "no host")
        return cls("", host, port)

    def with_default_port(self, port: int) -> "HostAddress":
        if self.port > 0:
            return self
        return HostAddress(self.scheme, self.host, port)

    def host_port(self, default: int = 0) -> tuple[str, int]:
        return self.host, self.port if self.port > 0 else default

    def __str__(self) -> str:
        host = self.host
        try:
            if ipaddress.ip_address(host).version == 6:
                host = f"[{host}]"
        except ValueError:
            pass
        netloc = f"{host}:{self.port}" if self.port else host
        return f"{self.scheme}://{netloc}" if self.scheme else netloc


def _port(raw: str, value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise InvalidAddressError(raw, "invalid port") from None
    if not 0 < port < 65536:
        raise InvalidAddressError(raw, "port out of range")
    return port


@dataclass(frozen=True)
class HostAuthn:
    type: AuthnType = AuthnType.SSH
    user: str = ""
    secret: str = field(default="", repr=False)
    agent: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", AuthnType.parse(self.type))


@dataclass(frozen=True)
class HostOption:
    """One hop of the way to a host: the host itself or a proxy."""

    address: str
    authn: HostAuthn = field(default_factory=HostAuthn)
    insecure: bool = False

    def parse_address(self) -> HostAddress:
        return HostAddress.parse(self.address)


@dataclass(frozen=True)
class HostOptions(HostOption):
    """A target hop plus the proxies in front of it.

    `proxies[0]` is the hop nearest to the operator, `proxies[-1]` the
    one nearest to the target.
    """

    proxies: tuple[HostOption, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "proxies", tuple(self.proxies))


@dataclass(frozen=True)
class HostStatus:
    accessible: bool = False
    os: str = ""
    arch: str = ""
    version: str = ""
