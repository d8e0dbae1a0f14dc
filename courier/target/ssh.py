"""SSH hosts on top of paramiko.

Every operation runs on a fresh session channel of the host's single
transport. A session is bound to the `Context` of the call: when the
context is cancelled the remote process gets a KILL signal and the
channel is closed, which unblocks whoever waits on it.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from importlib.resources.abc import Traversable
import io
from logging import getLogger
from pathlib import Path
import posixpath
import stat
import threading
from typing import BinaryIO

import paramiko
from paramiko import Channel, Message, SFTPClient, Transport
from paramiko.common import cMSG_CHANNEL_REQUEST

from ..context import Context
from ..exceptions import (
    BlankCommandError,
    ConfigurationError,
    ConnectError,
    EncryptedKeyError,
    ExitCodeError,
    RemotePathError,
)
from ..pool import BytesPool, LockedWriter, default_pool
from . import codec
from .dialer import (
    HANDSHAKE_TIMEOUT,
    Dialer,
    DialerChain,
    DirectDialer,
    SSHTunnelDialer,
    build_chain,
)
from .host import Host, RemoteDirectory, Terminal, walk
from .types import AuthnType, HostOption, HostOptions, HostStatus

logger = getLogger("courier.target.ssh")

KNOWN_HOSTS = Path("~/.ssh/known_hosts")

_KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


def parse_private_key(secret: str) -> paramiko.PKey | None:
    """Loads a PEM private key, None when `secret` is not one."""
    if "-----BEGIN" not in secret:
        return None
    if "Proc-Type: 4,ENCRYPTED" in secret:
        raise EncryptedKeyError()

    for cls in _KEY_CLASSES:
        try:
            return cls.from_private_key(io.StringIO(secret))
        except paramiko.PasswordRequiredException:
            raise EncryptedKeyError() from None
        except paramiko.SSHException:
            continue
    raise ConfigurationError("failed to parse private key")


def _verify_host_key(transport: Transport, host: str, port: int) -> None:
    keys = paramiko.HostKeys()
    known = KNOWN_HOSTS.expanduser()
    if known.exists():
        keys.load(str(known))

    name = host if port == 22 else f"[{host}]:{port}"
    key = transport.get_remote_server_key()
    entry = keys.lookup(name)
    if entry is None or key.get_name() not in entry:
        raise paramiko.SSHException(f"unknown host key for {name}")
    if entry[key.get_name()] != key:
        raise paramiko.BadHostKeyException(name, key, entry[key.get_name()])


def _authenticate(transport: Transport, hop: HostOption, pkey: paramiko.PKey | None) -> None:
    authn = hop.authn
    if authn.agent:
        agent = paramiko.Agent()
        try:
            for key in agent.get_keys():
                try:
                    transport.auth_publickey(authn.user, key)
                    return
                except paramiko.AuthenticationException:
                    logger.debug("agent key %s rejected by %s", key.get_name(), hop.address)
        finally:
            agent.close()
        raise paramiko.AuthenticationException("no agent key accepted")

    if pkey is not None:
        transport.auth_publickey(authn.user, pkey)
    elif authn.secret:
        transport.auth_password(authn.user, authn.secret)
    else:
        transport.auth_none(authn.user)


def connect(
    forward: Dialer | None,
    hop: HostOption,
    timeout: float = HANDSHAKE_TIMEOUT,
    ctx: Context | None = None,
) -> Transport:
    """Dials, handshakes and authenticates an SSH hop.

    Cancelling `ctx` while connecting closes the transport being set up.

    Raises:
        ConfigurationError: The address or the private key is invalid.
        ConnectError: Any step of connecting failed.
        Cancelled: `ctx` was cancelled before the hop was connected.
    """
    if ctx is None:
        ctx = Context()
    address = hop.parse_address()
    host, port = address.host_port(22)
    pkey = None if hop.authn.agent else parse_private_key(hop.authn.secret)

    ctx.check()
    logger.debug("connecting to %s:%s", host, port)
    try:
        sock = (forward or DirectDialer(timeout)).dial((host, port))
    except Exception as e:
        raise ConnectError(hop.address, e) from e

    transport = Transport(sock)
    handle = ctx.add_callback(lambda _: transport.close())
    try:
        transport.start_client(timeout=timeout)
        if not hop.insecure:
            _verify_host_key(transport, host, port)
        _authenticate(transport, hop, pkey)
        if not transport.is_authenticated():
            raise paramiko.AuthenticationException("authentication failed")
        ctx.check()
    except (paramiko.SSHException, OSError, EOFError) as e:
        transport.close()
        if ctx.done():
            raise ctx.err() from e
        raise ConnectError(hop.address, e) from e
    except BaseException:
        transport.close()
        raise
    finally:
        ctx.remove_callback(handle)
    return transport


def tunnel(forward: Dialer, hop: HostOption, timeout: float = HANDSHAKE_TIMEOUT) -> SSHTunnelDialer:
    """Connects an SSH hop eagerly and tunnels further dials through it."""
    return SSHTunnelDialer(connect(forward, hop, timeout), hop.address)


class Session:
    """A session channel watched by the context of one call."""

    def __init__(self, transport: Transport, ctx: Context, address: str) -> None:
        ctx.check()
        try:
            self.channel: Channel = transport.open_session()
        except (paramiko.SSHException, EOFError) as e:
            raise ConnectError(address, e) from e

        try:
            transport.global_request("keepalive@openssh.com", wait=True)
        except paramiko.SSHException:
            pass
        if not transport.is_active():
            self.channel.close()
            raise ConnectError(address, "disconnected")

        self.ctx = ctx
        self._lock = threading.Lock()
        self._closed = False
        self._handle = ctx.add_callback(self._kill)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _kill(self, _) -> None:
        with self._lock:
            if self._closed:
                return
        logger.debug("killing remote process of channel %s", self.channel.get_id())
        try:
            m = Message()
            m.add_byte(cMSG_CHANNEL_REQUEST)
            m.add_int(self.channel.remote_chanid)
            m.add_string("signal")
            m.add_boolean(False)
            m.add_string("KILL")
            self.channel.transport._send_user_message(m)
        except (paramiko.SSHException, OSError, EOFError) as e:
            logger.debug("failed to send KILL: %s", e)
        self.channel.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.ctx.remove_callback(self._handle)
        self.channel.close()


class SSHTerminal(Terminal):
    def __init__(self, session: Session, platform: str, pool: BytesPool) -> None:
        super().__init__(pool=pool)
        self.platform = platform
        self.session = session
        self._stdout = session.channel.makefile("rb")

    def write(self, data: bytes) -> int:
        self.session.ctx.check()
        self.session.channel.sendall(data)
        return len(data)

    def readline(self) -> bytes:
        line = self._stdout.readline()
        if not line:
            self.session.ctx.check()
        return line

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            channel = self.session.channel
            if not channel.closed:
                channel.shutdown_write()
                channel.recv_exit_status()
        finally:
            self.session.close()


class FileTransport:
    """An SFTP client on its own session."""

    def __init__(self, session: Session) -> None:
        self.session = session
        try:
            session.channel.invoke_subsystem("sftp")
            self.sftp = SFTPClient(session.channel)
        except BaseException:
            session.close()
            raise

    def close(self) -> None:
        try:
            self.sftp.close()
        finally:
            self.session.close()

    def mkdir_all(self, path: str) -> None:
        current = "/" if path.startswith("/") else ""
        for part in path.strip("/").split("/"):
            if not part:
                continue
            current = posixpath.join(current, part)
            try:
                st = self.sftp.stat(current)
            except FileNotFoundError:
                self.sftp.mkdir(current)
                continue
            if not stat.S_ISDIR(st.st_mode):
                raise RemotePathError(current, "remote path is not a directory")


class RemoteFile(io.RawIOBase):
    """A remote file which closes its transfer session along with itself."""

    def __init__(self, handle, ft: FileTransport) -> None:
        self.handle = handle
        self.ft = ft

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        data = self.handle.read(len(b))
        b[: len(data)] = data
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        try:
            self.handle.close()
        finally:
            self.ft.close()
            super().close()


class SFTPDirectory(RemoteDirectory):
    def __init__(self, root: str, ft: FileTransport) -> None:
        self.root = root
        self.ft = ft

    def open(self, name: str) -> BinaryIO:
        return self.ft.sftp.open(posixpath.join(self.root, name), "rb")

    def listdir(self, name: str = ".") -> list[str]:
        return self.ft.sftp.listdir(posixpath.join(self.root, name))

    def close(self) -> None:
        self.ft.close()


def normalize_arch(arch: str) -> str:
    arch = arch.lower()
    if arch == "x86_64":
        return "amd64"
    if arch.endswith("aarch64") or arch.endswith("armv8"):
        return "arm64"
    if arch.startswith("riscv"):
        return "riscv64"
    if arch in ("i386", "i686", "x86"):
        return "386"
    if arch.startswith("arm"):
        return "arm"
    return arch


class SSHHost(Host):
    """A host reached over SSH, possibly through a chain of proxies."""

    def __init__(
        self,
        options: HostOptions,
        pool: BytesPool = default_pool,
        timeout: float = HANDSHAKE_TIMEOUT,
        ctx: Context | None = None,
    ) -> None:
        if options.authn.type != AuthnType.SSH:
            raise ConfigurationError(f"invalid authn type for SSH: {options.authn.type}")
        super().__init__(options.address, pool)

        self.chain: DialerChain = build_chain(options.proxies, timeout=timeout, ctx=ctx)
        try:
            self.transport = connect(self.chain, options, timeout, ctx)
        except BaseException:
            self.chain.close()
            raise

    def _close(self) -> None:
        try:
            self.transport.close()
        finally:
            self.chain.close()

    def session(self, ctx: Context) -> Session:
        logger.debug("creating new session at %s", self.address)
        return Session(self.transport, ctx, self.address)

    def state(self, ctx: Context) -> HostStatus:
        with self.shell(ctx) as t:
            os = t.execute_with_output("uname", "-s").decode().strip().lower()
            arch = t.execute_with_output("uname", "-m").decode().strip()
            version = t.execute_with_output("uname", "-r").decode().strip().lower()

        return HostStatus(True, os, normalize_arch(arch), version)

    def _run(self, ctx: Context, cmd: str, args: tuple[str, ...]) -> bytes:
        if not cmd:
            raise BlankCommandError()

        command = codec.encode_exec_input(self.platform, cmd, args)
        with self.session(ctx) as s, self.pool.buffer() as buf:
            s.channel.exec_command(command)
            out = LockedWriter(buf)

            stderr = threading.Thread(
                target=self.pool.copy, args=(out, s.channel.makefile_stderr("rb"))
            )
            stderr.start()
            self.pool.copy(out, s.channel.makefile("rb"))
            stderr.join()

            ctx.check()
            code = s.channel.recv_exit_status()
            output = buf.getvalue()

        if code != 0:
            raise ExitCodeError(code, output)
        return output

    def execute(self, ctx: Context, cmd: str, *args: str) -> None:
        self._run(ctx, cmd, args)

    def execute_with_output(self, ctx: Context, cmd: str, *args: str) -> bytes:
        return self._run(ctx, cmd, args)

    def shell(self, ctx: Context, *cmd_args: str) -> SSHTerminal:
        cmd, *args = cmd_args or ("/bin/sh",)
        s = self.session(ctx)
        try:
            s.channel.set_combine_stderr(True)
            s.channel.exec_command(codec.encode_exec_input(self.platform, cmd, args))
        except BaseException:
            s.close()
            raise
        return SSHTerminal(s, self.platform, self.pool)

    @contextmanager
    def _transfer(self, ctx: Context) -> Iterator[FileTransport]:
        ft = FileTransport(self.session(ctx))
        try:
            yield ft
        finally:
            ft.close()

    def upload_file(self, ctx: Context, src: BinaryIO, to: str) -> None:
        if src is None:
            raise ConfigurationError("nil local file reader")
        if not to:
            raise RemotePathError(to, "blank remote file path")

        logger.debug("transmitting file to %s:%s", self.address, to)
        with self._transfer(ctx) as ft, ft.sftp.open(to, "wb") as wr:
            self.pool.copy(wr, src)

    def upload_directory(self, ctx: Context, src: Traversable, to: str) -> None:
        if src is None:
            raise ConfigurationError("nil local directory reader")
        if not to:
            raise RemotePathError(to, "blank remote directory path")

        logger.debug("transmitting %s to %s:%s", src, self.address, to)
        with self._transfer(ctx) as ft:
            ft.mkdir_all(to)
            for path, entry in walk(src):
                ctx.check()
                remote = posixpath.join(to, path)
                if entry.is_dir():
                    ft.mkdir_all(remote)
                    continue
                with entry.open("rb") as rd, ft.sftp.open(remote, "wb") as wr:
                    self.pool.copy(wr, rd)

    def _lstat(self, ft: FileTransport, path: str):
        try:
            return ft.sftp.lstat(path)
        except OSError as e:
            raise RemotePathError(path, str(e) or "no such file") from e

    def download_file(self, ctx: Context, src: str) -> BinaryIO:
        if not src:
            raise RemotePathError(src, "blank remote file path")

        ft = FileTransport(self.session(ctx))
        try:
            if stat.S_ISDIR(self._lstat(ft, src).st_mode or 0):
                raise RemotePathError(src, "remote path is not a file")
            handle = ft.sftp.open(src, "rb")
        except BaseException:
            ft.close()
            raise
        return RemoteFile(handle, ft)  # type: ignore[return-value]

    def download_directory(self, ctx: Context, src: str) -> SFTPDirectory:
        if not src:
            raise RemotePathError(src, "blank remote directory path")

        ft = FileTransport(self.session(ctx))
        try:
            if not stat.S_ISDIR(self._lstat(ft, src).st_mode or 0):
                raise RemotePathError(src, "remote path is not a directory")
        except BaseException:
            ft.close()
            raise
        return SFTPDirectory(src, ft)
