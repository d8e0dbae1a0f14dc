"""The capability every remote host implementation offers."""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from importlib.resources.abc import Traversable
from logging import getLogger
from typing import BinaryIO

from ..context import Context
from ..exceptions import BlankCommandError, CourierError
from ..pool import BytesPool, default_pool
from . import codec
from .types import HostStatus

logger = getLogger("courier.target.host")


class Terminal(ABC):
    """An interactive shell session on a host.

    Commands are written to the shell's stdin; the combined stdout and
    stderr is read back line by line until the echo marker of the command
    shows up.
    """

    platform = "linux"

    def __init__(self, echo: str | None = None, pool: BytesPool = default_pool) -> None:
        self.echo = echo or codec.new_echo_marker()
        self.pool = pool
        self.closed = False

    def __enter__(self) -> "Terminal":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Writes raw bytes to the shell's stdin."""

    @abstractmethod
    def readline(self) -> bytes:
        """Reads one line of output; returns b"" once the stream ended."""

    @abstractmethod
    def close(self) -> None:
        """Ends the shell and releases its session."""

    def execute(self, cmd: str, *args: str) -> None:
        self._execute(None, cmd, args)

    def execute_with_output(self, cmd: str, *args: str) -> bytes:
        with self.pool.buffer() as buf:
            self._execute(buf, cmd, args)
            return buf.getvalue()

    def _execute(self, out, cmd: str, args: tuple[str, ...]) -> None:
        if not cmd:
            raise BlankCommandError()

        command = codec.encode_shell_input(self.platform, cmd, list(args), self.echo)
        self.write(command.encode())

        first = True
        while True:
            raw = self.readline()
            if not raw:
                raise CourierError("shell exited before {!r} finished".format(cmd))

            line = raw.decode("utf-8", "replace").rstrip("\r\n")
            if codec.decode_shell_output(line, self.echo):
                return

            if out is not None:
                if not first:
                    out.write(b"\n")
                out.write(line.encode())
                first = False


class RemoteDirectory(ABC):
    """Read access to a remote directory tree, kept open until closed."""

    def __enter__(self) -> "RemoteDirectory":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @abstractmethod
    def open(self, name: str) -> BinaryIO:
        """Opens a file relative to the directory for reading."""

    @abstractmethod
    def listdir(self, name: str = ".") -> list[str]:
        """Lists the entries of a subdirectory."""

    @abstractmethod
    def close(self) -> None: ...


class Host(ABC):
    """A live, authenticated connection to one machine.

    A host is owned by whoever created it and must be closed exactly
    once. It is not meant to be shared between threads; every shell and
    every transfer opens its own session on the connection.
    """

    platform = "linux"

    def __init__(self, address: str, pool: BytesPool = default_pool) -> None:
        self.address = address
        self.pool = pool
        self.closed = False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} object address={self.address}>"

    def __enter__(self) -> "Host":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        logger.debug("closing connection to %s", self.address)
        self._close()

    @abstractmethod
    def _close(self) -> None: ...

    @abstractmethod
    def state(self, ctx: Context) -> HostStatus:
        """Probes operating system, architecture and version."""

    @abstractmethod
    def execute(self, ctx: Context, cmd: str, *args: str) -> None:
        """Runs a command to completion, raising on non-zero exit."""

    @abstractmethod
    def execute_with_output(self, ctx: Context, cmd: str, *args: str) -> bytes:
        """Runs a command and returns its combined stdout and stderr."""

    @abstractmethod
    def shell(self, ctx: Context, *cmd_args: str) -> Terminal:
        """Starts an interactive shell, the platform default when not given."""

    @abstractmethod
    def upload_file(self, ctx: Context, src: BinaryIO, to: str) -> None: ...

    @abstractmethod
    def upload_directory(self, ctx: Context, src: Traversable, to: str) -> None: ...

    @abstractmethod
    def download_file(self, ctx: Context, src: str) -> BinaryIO:
        """Opens a remote file; closing it releases the transfer session."""

    @abstractmethod
    def download_directory(self, ctx: Context, src: str) -> RemoteDirectory: ...


def walk(root: Traversable, prefix: str = "") -> Iterator[tuple[str, Traversable]]:
    """Yields `(relative posix path, entry)` pairs, parents before children."""
    for entry in sorted(root.iterdir(), key=lambda e: e.name):
        path = f"{prefix}{entry.name}"
        yield path, entry
        if entry.is_dir():
            yield from walk(entry, path + "/")
