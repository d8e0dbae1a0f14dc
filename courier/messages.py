"""Messages reported to the user of the command line tool."""

from abc import ABC


class UserMessage(BaseException, ABC):
    """Base class of messages printed instead of a traceback."""

    message = ""

    def __str__(self) -> str:
        return self.message

    def __eq__(self, x: object) -> bool:
        return str(self) == str(x)

    def __hash__(self) -> int:
        return hash(str(self))


class ErrorMessage(UserMessage, RuntimeError):
    """Something went wrong while doing what the user asked for."""


class UserError(UserMessage, RuntimeError):
    """The user asked for something that cannot be done."""


class ManifestError(UserError, ValueError):
    def __init__(self, path, reason: str) -> None:
        self.path = path
        self.reason = reason
        self.message = "{!s}: {!s}".format(path, reason)


class NoDeploymentStateError(UserError):
    def __init__(self, name: str) -> None:
        self.name = name
        self.message = "no deployment {!r} has been applied".format(name)


class UnsupportedRuntimeError(UserError, ValueError):
    def __init__(self, runtime_class: str, os: str) -> None:
        self.runtime_class = runtime_class
        self.os = os
        self.message = "runtime class {!r} does not support {!r}".format(
            runtime_class, os
        )
