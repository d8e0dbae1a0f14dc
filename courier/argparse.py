"""An argument parser that reports failures by raising."""

import argparse
import sys


class ArgsParseFailure(RuntimeError):
    """Parsing stopped, either on an error or after printing help."""

    def __init__(self, status: int = 0) -> None:
        self.status = status
        super().__init__(status)


class ArgumentParser(argparse.ArgumentParser):
    """Writes to the given `sys_` module and never exits the interpreter."""

    def __init__(self, *a, sys_=sys, **kw) -> None:
        self.sys = sys_
        super().__init__(*a, **kw)

    def print_help(self, file=None) -> None:
        super().print_help(self.sys.stdout)

    def print_usage(self, file=None) -> None:
        super().print_usage(self.sys.stdout)

    def exit(self, status: int = 0, message: str | None = None) -> None:  # type: ignore
        if message:
            self._print_message(message, self.sys.stderr)
        raise ArgsParseFailure(status)
