"""Encoding of commands and decoding of their exit status.

One-shot executions quote their arguments for the remote platform.
Commands written into an interactive shell instead get a suffix that
prints the shell's last exit status followed by an echo marker, so the
status can be found again in the combined output stream::

    uname -s; echo $?#1f2e3d4c#;

is answered by the remote shell with ``Linux`` and ``0#1f2e3d4c#``.
Output lines that happen to end with the marker are indistinguishable
from the status line; markers are random per terminal to make that
unlikely.
"""

import secrets
import shlex
from subprocess import list2cmdline

from ..exceptions import ExitCodeError

# PowerShell renders `$?` as a boolean
_SUCCESS = ("0", "True")


def is_windows(platform: str) -> bool:
    return platform.lower() == "windows"


def new_echo_marker() -> str:
    return "#{}#".format(secrets.token_hex(4))


def encode_exec_input(platform: str, cmd: str, args: list[str] | tuple[str, ...] = ()) -> str:
    """Quotes a command line for a one-shot remote execution."""
    argv = [cmd, *args]
    if is_windows(platform):
        return list2cmdline(argv)
    return shlex.join(argv)


def encode_shell_input(
    platform: str, cmd: str, args: list[str] | tuple[str, ...], echo: str
) -> str:
    """Builds the line written to an interactive shell.

    The command and its arguments are trusted and joined as they are.
    """
    if is_windows(platform):
        tail = "; Write-Output $?{}`r`n\n".format(echo)
    else:
        tail = "; echo $?{};\n".format(echo)

    return " ".join([cmd, *args]) + tail


def decode_shell_output(line: str, echo: str) -> bool:
    """Checks whether `line` is the status line of the running command.

    The status before the marker is ``0`` from a POSIX shell. PowerShell
    prints its `$?` as ``True`` or ``False``, so ``True`` counts as
    success too; every other status, ``False`` included, is a failure.

    Returns:
        False for ordinary output, True when the line carries the echo
        marker and the command succeeded.

    Raises:
        ExitCodeError: The line carries the echo marker and a non-zero
            status.
    """
    if not line.endswith(echo):
        return False

    code = line[: len(line) - len(echo)]
    if code in _SUCCESS:
        return True

    raise ExitCodeError(code)
