"""Remote hosts: connecting, running commands and moving files."""

from ..context import Context
from ..exceptions import UnknownAuthnTypeError
from ..pool import BytesPool, default_pool
from .dialer import HANDSHAKE_TIMEOUT
from .host import Host, RemoteDirectory, Terminal
from .ssh import SSHHost
from .types import (
    AuthnType,
    HostAddress,
    HostAuthn,
    HostOption,
    HostOptions,
    HostStatus,
)
from .winrm import WinRMHost

__all__ = [
    "AuthnType",
    "Host",
    "HostAddress",
    "HostAuthn",
    "HostOption",
    "HostOptions",
    "HostStatus",
    "RemoteDirectory",
    "Terminal",
    "new_host",
]

HOSTS = {AuthnType.SSH: SSHHost, AuthnType.WINRM: WinRMHost}


def new_host(
    options: HostOptions,
    pool: BytesPool = default_pool,
    timeout: float = HANDSHAKE_TIMEOUT,
    ctx: Context | None = None,
) -> Host:
    """Connects to a host with the protocol its authn type selects.

    Connecting stops as soon as `ctx` is cancelled.

    Raises:
        Cancelled: `ctx` was cancelled before the host was connected.
        UnknownAuthnTypeError: The authn type is neither ssh nor winrm.
        ConnectError: The host or one of its proxies cannot be reached.
    """
    try:
        cls = HOSTS[options.authn.type]
    except KeyError:
        raise UnknownAuthnTypeError(options.authn.type) from None
    if ctx is not None:
        ctx.check()
    return cls(options, pool, timeout, ctx)
