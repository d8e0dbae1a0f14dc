"""Windows hosts reached over WinRM, using pywinrm's protocol client.

WinRM has no file channel. Uploads create the remote file, append the
content as base64 lines with ``echo``, and decode it in place once the
file is complete.
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib.resources.abc import Traversable
import io
from logging import getLogger
import threading
from typing import BinaryIO
from xml.etree import ElementTree

import requests
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError, WinRMTransportError
from winrm.protocol import Protocol

from ..context import Context
from ..exceptions import (
    BlankCommandError,
    ConfigurationError,
    ConnectError,
    CourierError,
    ExitCodeError,
    FinalizeError,
    RemotePathError,
    UnsupportedOperationError,
)
from ..pool import BytesPool, default_pool
from . import codec
from .dialer import HANDSHAKE_TIMEOUT, DialerChain, LocalForwarder, build_chain
from .host import Host, RemoteDirectory, Terminal, walk
from .types import AuthnType, HostOption, HostOptions, HostStatus

logger = getLogger("courier.target.winrm")

OPERATION_TIMEOUT = 60
MAX_ENVELOPE_SIZE = 153600
LOCALE = "en-US"
CODEPAGE_UTF8 = 65001

PLATFORM = "windows"

_ERRORS = (WinRMError, WinRMTransportError, requests.RequestException)

# Win32_Processor.Architecture
ARCHITECTURES = {
    "0": "386",
    "1": "mips",
    "2": "alpha",
    "3": "ppc",
    "5": "arm",
    "6": "ia64",
    "9": "amd64",
    "12": "arm64",
}

FINALIZE_SCRIPT = """
$path = {path}
if (Test-Path $path -Type Leaf) {{
    $rd = [System.IO.File]::OpenText($path)
    $wr = [System.IO.File]::OpenWrite("$path.tmp")
    try {{
        for (;;) {{
            $bs64 = $rd.ReadLine()
            if ($bs64 -eq $null) {{ break }}
            $bs = [System.Convert]::FromBase64String($bs64)
            $wr.Write($bs, 0, $bs.Length)
        }}
    }} finally {{
        $rd.Close()
        $wr.Close()
    }}
    Move-Item -Path "$path.tmp" -Destination $path -Force
}} else {{
    throw [System.IO.FileNotFoundException]::new("could not find path: $path")
}}
"""


def powershell(script: str) -> str:
    """Wraps a script into a `powershell.exe -EncodedCommand` line."""
    encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    return f"powershell.exe -EncodedCommand {encoded}"


def to_windows_path(path: str) -> str:
    return path.replace("/", "\\")


def quote(path: str) -> str:
    """Quotes a path as a PowerShell literal string."""
    return "'{}'".format(path.replace("'", "''"))


def chunk_size(path: str) -> int:
    """Bytes per appended line, keeping each command inside one envelope."""
    return ((8000 - len(path)) // 4) * 3


def connect(
    chain: DialerChain, hop: HostOption, timeout: float = HANDSHAKE_TIMEOUT
) -> tuple[Protocol, LocalForwarder | None]:
    """Builds the protocol client of a WinRM endpoint.

    With proxies in front of the endpoint the client talks to a loopback
    forwarder relaying through the chain. No request is sent yet.
    """
    address = hop.parse_address()
    host, port = address.host_port(5985)
    scheme = "https" if address.scheme == "https" else "http"

    forwarder = None
    if len(chain):
        forwarder = LocalForwarder(chain, (host, port))
        host, port = forwarder.address
    netloc = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"

    if hop.authn.agent:
        transport = "ntlm"
    elif scheme == "https":
        transport = "ssl"
    else:
        transport = "plaintext"

    logger.debug("connecting to %s://%s via %s", scheme, netloc, transport)
    try:
        protocol = Protocol(
            f"{scheme}://{netloc}/wsman",
            transport=transport,
            username=hop.authn.user,
            password=hop.authn.secret,
            server_cert_validation="ignore" if hop.insecure else "validate",
            operation_timeout_sec=OPERATION_TIMEOUT,
            read_timeout_sec=OPERATION_TIMEOUT + max(10, int(timeout)),
        )
    except (WinRMError, ValueError) as e:
        if forwarder is not None:
            forwarder.close()
        raise ConnectError(hop.address, e) from e

    protocol.max_env_sz = MAX_ENVELOPE_SIZE
    protocol.locale = LOCALE
    return protocol, forwarder


class Shell:
    """A remote shell bound to the context of one call."""

    def __init__(self, protocol: Protocol, ctx: Context, address: str) -> None:
        ctx.check()
        self.protocol = protocol
        self.ctx = ctx
        self.address = address
        try:
            self.shell_id = protocol.open_shell(codepage=CODEPAGE_UTF8)
        except _ERRORS as e:
            raise ConnectError(address, e) from e

        self._lock = threading.Lock()
        self._closed = False
        self._command_id: str | None = None
        self._handle = ctx.add_callback(self._terminate)

    def __enter__(self) -> "Shell":
        return self

    def __exit__(self, exc_type, *exc) -> None:
        if exc_type is None:
            self.close()
            return
        try:
            self.close()
        except _ERRORS as e:
            logger.debug("failed to close shell on %s: %s", self.address, e)

    def _failed(self, e: Exception) -> CourierError:
        if self.ctx.done():
            return self.ctx.err()
        return ConnectError(self.address, e)

    def _terminate(self, _) -> None:
        with self._lock:
            command_id = self._command_id
            if self._closed or command_id is None:
                return
        logger.debug("terminating command %s on %s", command_id, self.address)
        try:
            self.protocol.cleanup_command(self.shell_id, command_id)
        except _ERRORS as e:
            logger.debug("failed to terminate command: %s", e)

    def start(self, command: str, args: tuple[str, ...] | list[str] = ()) -> str:
        self.ctx.check()
        try:
            command_id = self.protocol.run_command(self.shell_id, command, list(args))
        except _ERRORS as e:
            raise self._failed(e) from e
        with self._lock:
            self._command_id = command_id
        return command_id

    def receive(self, command_id: str) -> tuple[bytes, int, bool]:
        """Polls the output of a command once.

        Returns:
            The output received, the exit code and whether the command is
            done.
        """
        while True:
            self.ctx.check()
            try:
                stdout, stderr, code, done = self.protocol.get_command_output_raw(
                    self.shell_id, command_id
                )
            except WinRMOperationTimeoutError:
                continue
            except _ERRORS as e:
                raise self._failed(e) from e
            return stdout + stderr, code, done

    def finish(self, command_id: str) -> None:
        with self._lock:
            if self._command_id == command_id:
                self._command_id = None
        self.protocol.cleanup_command(self.shell_id, command_id)

    def run(self, command: str, out=None) -> None:
        """Runs a command to completion and raises on non-zero exit."""
        command_id = self.start(command)
        output = b""
        try:
            done = False
            while not done:
                data, code, done = self.receive(command_id)
                output += data
        except BaseException:
            try:
                self.finish(command_id)
            except _ERRORS as e:
                logger.debug("failed to clean up command %s: %s", command_id, e)
            raise
        self.finish(command_id)

        if code != 0:
            raise ExitCodeError(code, output)
        if out is not None:
            out.write(output)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.ctx.remove_callback(self._handle)
        self.protocol.close_shell(self.shell_id)


class WinRMTerminal(Terminal):
    platform = PLATFORM

    def __init__(self, shell: Shell, cmd: str, args, pool: BytesPool) -> None:
        super().__init__(pool=pool)
        self.shell = shell
        self.command_id = shell.start(cmd, args)
        self._pending = b""
        self._done = False

    def write(self, data: bytes) -> int:
        self.shell.ctx.check()
        try:
            self.shell.protocol.send_command_input(self.shell.shell_id, self.command_id, data)
        except _ERRORS as e:
            raise self.shell._failed(e) from e
        return len(data)

    def readline(self) -> bytes:
        while b"\n" not in self._pending:
            if self._done:
                line, self._pending = self._pending, b""
                return line
            data, _, self._done = self.shell.receive(self.command_id)
            self._pending += data

        line, _, self._pending = self._pending.partition(b"\n")
        return line + b"\n"

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.shell.finish(self.command_id)
        finally:
            self.shell.close()


class Base64FileWriter:
    """Writes a remote file as base64 lines and decodes it on close.

    The file is finalized at most once. A writer whose writes failed, or
    whose context is done, leaves the partial file behind instead of
    decoding it.
    """

    def __init__(self, shell: Shell, path: str) -> None:
        self.shell = shell
        self.path = to_windows_path(path)
        self.failed = False
        self.finalized = False

    def __enter__(self) -> "Base64FileWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.failed = True
        self.close()

    def create(self) -> None:
        self.shell.run(
            powershell(f"New-Item -Force -ItemType File -Path {quote(self.path)}")
        )

    def write(self, data: bytes) -> int:
        line = base64.b64encode(data).decode("ascii")
        try:
            self.shell.run(f'echo {line} >> "{self.path}"')
        except BaseException:
            self.failed = True
            raise
        return len(data)

    def close(self) -> None:
        if self.finalized:
            return
        self.finalized = True

        if self.failed or self.shell.ctx.done():
            logger.debug("discarding partial remote file %s", self.path)
            return

        try:
            self.shell.run(powershell(FINALIZE_SCRIPT.format(path=quote(self.path))))
        except CourierError as e:
            raise FinalizeError(self.path, e) from e
        except _ERRORS as e:
            raise FinalizeError(self.path, e) from e


@dataclass(frozen=True)
class RemoteStat:
    name: str
    mtime: datetime | None = None
    is_dir: bool = False
    size: int = 0


def parse_stat(document: bytes | str, path: str = "") -> RemoteStat:
    """Parses the `ConvertTo-Xml` rendering of a file's properties."""
    try:
        root = ElementTree.fromstring(document)
    except ElementTree.ParseError as e:
        raise RemotePathError(path, f"failed to unmarshal file info: {e}") from None

    objects = root.findall("Object")
    if len(objects) != 1 or not objects[0].findall("Property"):
        raise RemotePathError(path, "failed to unmarshal file info: no object or no properties")

    name, mtime, is_dir, size = path, None, False, 0
    for prop in objects[0].findall("Property"):
        key, value = prop.get("Name"), (prop.text or "").strip()
        try:
            if key == "FullName":
                name = value
            elif key == "LastWriteTimeUtc":
                mtime = datetime.strptime(value, "%Y/%m/%d %H:%M:%S").replace(
                    tzinfo=timezone.utc
                )
            elif key == "Attributes":
                is_dir = "Directory" in value
            elif key == "Length":
                size = int(value) if value else 0
        except ValueError as e:
            raise RemotePathError(path, f"failed to parse file info: {e}") from None

    return RemoteStat(name, mtime, is_dir, size)


class FileTransport:
    """File operations emulated with commands on one shell."""

    def __init__(self, shell: Shell) -> None:
        self.shell = shell

    def close(self) -> None:
        self.shell.close()

    def mkdir_all(self, path: str) -> None:
        if not path:
            raise RemotePathError(path, "blank path")
        path = to_windows_path(path)
        try:
            self.shell.run(
                powershell(f"New-Item -Force -ItemType Directory -Path {quote(path)}")
            )
        except ExitCodeError as e:
            raise RemotePathError(path, f"failed to create directory: {e}") from e

    def stat(self, path: str) -> RemoteStat:
        if not path:
            raise RemotePathError(path, "blank path")
        path = to_windows_path(path)
        script = (
            f"Get-ItemProperty -Path {quote(path)} | "
            "Select-Object -Property FullName,LastWriteTimeUtc,Attributes,Length | "
            "ConvertTo-Xml -NoTypeInformation -As String"
        )
        buf = io.BytesIO()
        try:
            self.shell.run(powershell(script), buf)
        except ExitCodeError as e:
            raise RemotePathError(path, f"failed to stat file: {e}") from e
        return parse_stat(buf.getvalue(), path)

    def upload(self, src: BinaryIO, to: str, pool: BytesPool) -> None:
        with Base64FileWriter(self.shell, to) as w:
            w.create()
            pool.copy(w, src, chunk_size(to))


class WinRMFile(io.RawIOBase):
    """A remote file handle; reading its content is not supported."""

    def __init__(self, ft: FileTransport, path: str) -> None:
        self.ft = ft
        self.name = path

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        raise UnsupportedOperationError("reading remote files over WinRM is not supported")

    def stat(self) -> RemoteStat:
        return self.ft.stat(self.name)

    def close(self) -> None:
        if self.closed:
            return
        try:
            self.ft.close()
        finally:
            super().close()


class WinRMDirectory(RemoteDirectory):
    def __init__(self, root: str, ft: FileTransport) -> None:
        self.root = root
        self.ft = ft

    def open(self, name: str) -> BinaryIO:
        raise UnsupportedOperationError("reading remote files over WinRM is not supported")

    def listdir(self, name: str = ".") -> list[str]:
        raise UnsupportedOperationError("listing remote directories over WinRM is not supported")

    def stat(self, name: str = ".") -> RemoteStat:
        path = self.root if name in ("", ".") else f"{self.root}/{name}"
        return self.ft.stat(path)

    def close(self) -> None:
        self.ft.close()


class WinRMHost(Host):
    """A Windows host reached over WinRM, possibly through proxies."""

    platform = PLATFORM

    def __init__(
        self,
        options: HostOptions,
        pool: BytesPool = default_pool,
        timeout: float = HANDSHAKE_TIMEOUT,
        ctx: Context | None = None,
    ) -> None:
        if options.authn.type != AuthnType.WINRM:
            raise ConfigurationError(f"invalid authn type for WinRM: {options.authn.type}")
        super().__init__(options.address, pool)

        self.chain = build_chain(options.proxies, timeout=timeout, ctx=ctx)
        try:
            self.protocol, self.forwarder = connect(self.chain, options, timeout)
        except BaseException:
            self.chain.close()
            raise

    def _close(self) -> None:
        try:
            self.protocol.transport.close_session()
            if self.forwarder is not None:
                self.forwarder.close()
        finally:
            self.chain.close()

    def open_shell(self, ctx: Context) -> Shell:
        logger.debug("creating new shell at %s", self.address)
        return Shell(self.protocol, ctx, self.address)

    def state(self, ctx: Context) -> HostStatus:
        with self.shell(ctx) as t:
            code = t.execute_with_output(
                powershell(
                    "Get-WmiObject Win32_Processor -Property Architecture | "
                    "Select-Object -ExpandProperty Architecture"
                )
            )
            version = t.execute_with_output(
                powershell(
                    "Get-WmiObject Win32_OperatingSystem -Property Version | "
                    "Select-Object -ExpandProperty Version"
                )
            )

        arch = ARCHITECTURES.get(code.decode().strip().lower(), "")
        return HostStatus(True, PLATFORM, arch, version.decode().strip().lower())

    def _run(self, ctx: Context, cmd: str, args: tuple[str, ...]) -> bytes:
        if not cmd:
            raise BlankCommandError()

        buf = io.BytesIO()
        with self.open_shell(ctx) as s:
            s.run(codec.encode_exec_input(self.platform, cmd, args), buf)
        return buf.getvalue()

    def execute(self, ctx: Context, cmd: str, *args: str) -> None:
        self._run(ctx, cmd, args)

    def execute_with_output(self, ctx: Context, cmd: str, *args: str) -> bytes:
        return self._run(ctx, cmd, args)

    def shell(self, ctx: Context, *cmd_args: str) -> WinRMTerminal:
        cmd, *args = cmd_args or ("powershell.exe",)
        s = self.open_shell(ctx)
        try:
            return WinRMTerminal(s, cmd, args, self.pool)
        except BaseException:
            s.close()
            raise

    def _transport(self, ctx: Context) -> FileTransport:
        return FileTransport(self.open_shell(ctx))

    def upload_file(self, ctx: Context, src: BinaryIO, to: str) -> None:
        if src is None:
            raise ConfigurationError("nil local file reader")
        if not to:
            raise RemotePathError(to, "blank remote file path")

        logger.debug("transmitting file to %s:%s", self.address, to)
        ft = self._transport(ctx)
        try:
            ft.upload(src, to, self.pool)
        finally:
            ft.close()

    def upload_directory(self, ctx: Context, src: Traversable, to: str) -> None:
        if src is None:
            raise ConfigurationError("nil local directory reader")
        if not to:
            raise RemotePathError(to, "blank remote directory path")

        logger.debug("transmitting %s to %s:%s", src, self.address, to)
        ft = self._transport(ctx)
        try:
            ft.mkdir_all(to)
            for path, entry in walk(src):
                ctx.check()
                remote = f"{to}/{path}"
                if entry.is_dir():
                    ft.mkdir_all(remote)
                    continue
                with entry.open("rb") as rd:
                    ft.upload(rd, remote, self.pool)
        finally:
            ft.close()

    def download_file(self, ctx: Context, src: str) -> BinaryIO:
        if not src:
            raise RemotePathError(src, "blank remote file path")

        ft = self._transport(ctx)
        try:
            if ft.stat(src).is_dir:
                raise RemotePathError(src, "remote path is not a file")
        except BaseException:
            ft.close()
            raise
        return WinRMFile(ft, src)  # type: ignore[return-value]

    def download_directory(self, ctx: Context, src: str) -> WinRMDirectory:
        if not src:
            raise RemotePathError(src, "blank remote directory path")

        ft = self._transport(ctx)
        try:
            if not ft.stat(src).is_dir:
                raise RemotePathError(src, "remote path is not a directory")
        except BaseException:
            ft.close()
            raise
        return WinRMDirectory(src, ft)
