"""Errors raised by the remote execution layer and the rollout engine."""


class CourierError(Exception):
    """Base class of every error raised by courier."""


class ConnectError(CourierError):
    """Dialing, handshaking or authenticating against a host failed."""

    def __init__(self, address: str, reason: str | BaseException) -> None:
        self.address = address
        self.reason = reason
        super().__init__(address, reason)

    def __str__(self) -> str:
        return "failed to connect {!s}: {!s}".format(self.address, self.reason)


class ProxyDialError(ConnectError):
    """A hop of a proxy chain could not be dialed."""

    def __init__(
        self, index: int, scheme: str, address: str, reason: str | BaseException
    ) -> None:
        self.index = index
        self.scheme = scheme
        super().__init__(address, reason)

    def __str__(self) -> str:
        return "failed to dial proxy #{} ({!s}) {!s}: {!s}".format(
            self.index, self.scheme or "ssh", self.address, self.reason
        )


class ConfigurationError(CourierError, ValueError):
    """Invalid options detected before any I/O is attempted."""


class UnknownAuthnTypeError(ConfigurationError):
    def __init__(self, authn_type: str) -> None:
        self.authn_type = authn_type
        super().__init__("unknown host authn type: {!r}".format(authn_type))


class UnknownProxySchemeError(ConfigurationError):
    def __init__(self, scheme: str) -> None:
        self.scheme = scheme
        super().__init__("unknown proxy scheme: {!r}".format(scheme))


class BlankCommandError(ConfigurationError):
    def __init__(self) -> None:
        super().__init__("blank command")


class InvalidAddressError(ConfigurationError):
    def __init__(self, address: str, reason: str = "") -> None:
        self.address = address
        msg = "invalid address {!r}".format(address)
        if reason:
            msg += ": " + reason
        super().__init__(msg)


class EncryptedKeyError(ConfigurationError):
    def __init__(self) -> None:
        super().__init__("encrypted private key is not supported")


class ExitCodeError(CourierError):
    """A remote command finished with a non-zero exit status."""

    def __init__(self, code: str | int, output: bytes = b"") -> None:
        self.code = str(code)
        self.output = output
        super().__init__(self.code)

    def __str__(self) -> str:
        return "exit code {!s}".format(self.code)


class Cancelled(CourierError):
    """The operation's context was cancelled."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "context cancelled"


class DeadlineExceeded(Cancelled):
    def __str__(self) -> str:
        return "context deadline exceeded"


class SiblingCancelled(Cancelled):
    """Cancelled because another task of the same fan-out failed.

    This is never the authoritative failure of a phase; the error that
    triggered the cancellation is.
    """

    def __str__(self) -> str:
        return "cancelled due to sibling failure"


class RemotePathError(CourierError):
    """A remote path is blank, missing or of the wrong type."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(path, reason)

    def __str__(self) -> str:
        return "{!s}: {!r}".format(self.reason, self.path)


class FinalizeError(CourierError):
    """A remote file written in chunks could not be restored.

    The remote path may hold partial or still-encoded content.
    """

    def __init__(self, path: str, reason: str | BaseException) -> None:
        self.path = path
        self.reason = reason
        super().__init__(path, reason)

    def __str__(self) -> str:
        return "failed to finalize remote file {!r}: {!s}".format(
            self.path, self.reason
        )


class UnsupportedOperationError(CourierError, NotImplementedError):
    """The protocol offers no way to perform the operation."""


class DeploymentError(CourierError):
    """A phase of a deployment failed on at least one target."""

    def __init__(
        self, phase: str, cause: BaseException, host: str | None = None
    ) -> None:
        self.phase = phase
        self.cause = cause
        self.host = host
        super().__init__(phase, cause, host)

    def __str__(self) -> str:
        if self.host is None:
            return "cannot {!s}: {!s}".format(self.phase, self.cause)
        return "cannot {!s}: {!s}: {!s}".format(self.phase, self.host, self.cause)
