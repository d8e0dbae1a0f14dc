"""Rolling an artifact out to a fleet of hosts.

A `Deployment` runs the service script of its runtime class on every
target. `apply()` uploads the runtime bundle and the artifact's launch
files, runs ``setup`` and then starts the service, either on all targets
at once (recreate) or in consecutive batches (rolling). When the
artifact changed since the previous apply, targets are stopped before
being started again.

Each phase runs one thread per target; the first failure cancels the
other targets of the phase and ends the operation.
"""

from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from importlib.resources.abc import Traversable
from logging import getLogger
import math
from pathlib import Path
import secrets
import tempfile
import threading

from .context import Context, ErrorGroup
from .exceptions import DeploymentError, ExitCodeError
from .pool import BytesPool, default_pool
from .target import Host, HostAuthn, HostOptions, new_host
from .target.dialer import HANDSHAKE_TIMEOUT

logger = getLogger("courier.deployment")

RUNTIME_DIR = "/var/local/courier/runtime"
ARTIFACT_DIR = "/var/local/courier/artifact"

DEFAULT_MAX_SURGE = 0.3
MIN_MAX_SURGE = 0.1

WINDOWS_SCRIPT_RUNNER = (
    "powershell.exe",
    "-NoProfile",
    "-NonInteractive",
    "-ExecutionPolicy",
    "Bypass",
    "-File",
)

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3


def fnv1a64(data: bytes) -> int:
    h = _FNV_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV_PRIME) & 0xFFFFFFFFFFFFFFFF
    return h


def new_deployment_id(uri: str) -> str:
    """Derives an identifier from the artifact reference plus randomness."""
    return "{:016x}{}".format(fnv1a64(uri.encode()), secrets.token_hex(32))


class StrategyType(StrEnum):
    RECREATE = "recreate"
    ROLLING = "rolling"


@dataclass(frozen=True)
class Strategy:
    type: StrategyType = StrategyType.RECREATE
    max_surge: float = DEFAULT_MAX_SURGE

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", StrategyType(self.type))


@dataclass(frozen=True)
class ArtifactRefer:
    uri: str
    authn: HostAuthn | None = None
    insecure: bool = False


@dataclass(frozen=True)
class Artifact:
    refer: ArtifactRefer
    command: str = ""
    ports: tuple[int, ...] = ()
    envs: dict[str, str | None] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()
    digest: str = ""

    def same_identity(self, other: "Artifact | None") -> bool:
        """Compares the reference URI only; other attributes do not count."""
        return other is not None and other.refer.uri == self.refer.uri


@dataclass(frozen=True)
class DeploymentTarget:
    host: HostOptions
    os: str = "linux"
    arch: str = ""
    runtime_class: str = "docker"

    @property
    def identity(self) -> str:
        return self.host.address

    @property
    def is_windows(self) -> bool:
        return self.os.lower() == "windows"

    def command(self) -> str:
        suffix = "ps1" if self.is_windows else "sh"
        return f"{RUNTIME_DIR}/{self.runtime_class}/{self.os}/service.{suffix}"

    def invocation(self, verb: str, *args: str) -> tuple[str, list[str]]:
        """The command line running `verb` of the service script."""
        if self.is_windows:
            runner, *flags = WINDOWS_SCRIPT_RUNNER
            return runner, [*flags, self.command(), verb, *args]
        return self.command(), [verb, *args]


def batch_size(max_surge: float, count: int) -> int:
    """Targets per rolling batch, `max(1, round(max_surge * count))`.

    Rounds half away from zero; a `max_surge` below 0.1 falls back to the
    default of 0.3.
    """
    if max_surge < MIN_MAX_SURGE:
        max_surge = DEFAULT_MAX_SURGE
    return max(1, int(math.floor(max_surge * count + 0.5)))


def rolling_batches(
    targets: Sequence[DeploymentTarget], max_surge: float
) -> list[list[DeploymentTarget]]:
    size = batch_size(max_surge, len(targets))
    return [list(targets[i : i + size]) for i in range(0, len(targets), size)]


@dataclass(frozen=True)
class TargetDiff:
    released: list[DeploymentTarget]
    retained: list[DeploymentTarget]
    added: list[DeploymentTarget]


def diff_targets(
    old: Iterable[DeploymentTarget], new: Iterable[DeploymentTarget]
) -> TargetDiff:
    """Compares two target sets by host address, keeping declared order."""
    old, new = list(old), list(new)
    old_ids = {t.identity for t in old}
    new_ids = {t.identity for t in new}
    return TargetDiff(
        released=[t for t in old if t.identity not in new_ids],
        retained=[t for t in new if t.identity in old_ids],
        added=[t for t in new if t.identity not in old_ids],
    )


def targets_changed(
    old: Iterable[DeploymentTarget], new: Iterable[DeploymentTarget]
) -> bool:
    return sorted(t.identity for t in old) != sorted(t.identity for t in new)


Connector = Callable[..., Host]


class HostSet:
    """The host connections of one top-level call, opened on first use."""

    def __init__(
        self,
        connect: Connector = new_host,
        pool: BytesPool = default_pool,
        timeout: float = HANDSHAKE_TIMEOUT,
    ) -> None:
        self.connect = connect
        self.pool = pool
        self.timeout = timeout
        self._lock = threading.Lock()
        self._hosts: dict[str, Host] = {}

    def get(self, target: DeploymentTarget, ctx: Context) -> Host:
        """Returns the connection to `target`, connecting on first use."""
        ctx.check()
        with self._lock:
            host = self._hosts.get(target.identity)
        if host is not None:
            return host

        logger.debug("connecting to %s", target.identity)
        host = self.connect(target.host, self.pool, self.timeout, ctx)
        with self._lock:
            existing = self._hosts.setdefault(target.identity, host)
        if existing is not host:
            host.close()
        return existing

    def close(self) -> None:
        with self._lock:
            hosts = list(self._hosts.values())
            self._hosts.clear()
        for host in hosts:
            try:
                host.close()
            except Exception as e:
                logger.warning("failed to close connection to %s: %s", host.address, e)


class Deployment:
    """One artifact deployed with one runtime class onto a list of targets."""

    def __init__(
        self,
        id: str,
        runtime: Traversable,
        artifact: Artifact,
        targets: Sequence[DeploymentTarget],
        strategy: Strategy = Strategy(),
        connect: Connector = new_host,
        connect_timeout: float = HANDSHAKE_TIMEOUT,
        tempdir: str | None = None,
        pool: BytesPool = default_pool,
    ) -> None:
        self.id = id
        self.runtime = runtime
        self.artifact = artifact
        self.targets = list(targets)
        self.strategy = strategy
        self.connect = connect
        self.connect_timeout = connect_timeout
        self.tempdir = tempdir
        self.pool = pool

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} object id={self.id} targets={len(self.targets)}>"

    def with_targets(self, targets: Sequence[DeploymentTarget]) -> "Deployment":
        return Deployment(
            self.id,
            self.runtime,
            self.artifact,
            targets,
            self.strategy,
            self.connect,
            self.connect_timeout,
            self.tempdir,
            self.pool,
        )

    @contextmanager
    def _hosts(self) -> Iterator[HostSet]:
        hosts = HostSet(self.connect, self.pool, self.connect_timeout)
        try:
            yield hosts
        finally:
            hosts.close()

    def apply(self, ctx: Context, previous: Artifact | None = None) -> None:
        """Sets the targets up and (re)starts the service on them.

        Args:
            ctx: Context of the whole operation.
            previous: The artifact of the last successful apply, None for
                the first one.
        """
        changed = not self.artifact.same_identity(previous)
        logger.info(
            "applying deployment %s to %d targets (%s, artifact %s)",
            self.id,
            len(self.targets),
            self.strategy.type,
            "changed" if changed else "unchanged",
        )

        with self._hosts() as hosts:
            self._setup(ctx, hosts)

            if self.strategy.type == StrategyType.ROLLING:
                size = batch_size(self.strategy.max_surge, len(self.targets))
                if size != len(self.targets):
                    batches = rolling_batches(self.targets, self.strategy.max_surge)
                    for i, batch in enumerate(batches, 1):
                        logger.info("rolling batch %d/%d", i, len(batches))
                        if changed:
                            self._execute(ctx, hosts, batch, "stop", self.id)
                        self._execute(ctx, hosts, batch, "start", self.id)
                    return

            if changed:
                self._execute(ctx, hosts, self.targets, "stop", self.id)
            self._execute(ctx, hosts, self.targets, "start", self.id)

    def update(self, ctx: Context, previous: "Deployment") -> None:
        """Releases targets dropped since `previous`, then applies.

        Targets kept from `previous` are only started again, unless the
        artifact changed.
        """
        diff = diff_targets(previous.targets, self.targets)
        if diff.released:
            logger.info(
                "releasing %s", ", ".join(t.identity for t in diff.released)
            )
            previous.with_targets(diff.released).release(ctx)
        self.apply(ctx, previous.artifact)

    def release(self, ctx: Context) -> None:
        with self._hosts() as hosts:
            self._execute(ctx, hosts, self.targets, "cleanup", self.id)

    def setup(self, ctx: Context) -> None:
        with self._hosts() as hosts:
            self._setup(ctx, hosts)

    def start(self, ctx: Context) -> None:
        with self._hosts() as hosts:
            self._execute(ctx, hosts, self.targets, "start", self.id)

    def stop(self, ctx: Context) -> None:
        with self._hosts() as hosts:
            self._execute(ctx, hosts, self.targets, "stop", self.id)

    def cleanup(self, ctx: Context) -> None:
        self.release(ctx)

    def _fan_out(
        self,
        ctx: Context,
        phase: str,
        targets: Sequence[DeploymentTarget],
        fn: Callable[[DeploymentTarget, Context], object],
    ) -> None:
        group = ErrorGroup(ctx, phase)
        for t in targets:
            group.submit(partial(fn, t), t.identity)
        try:
            group.wait()
        except Exception as e:
            raise DeploymentError(phase, e, group.failed) from e

    def _execute(
        self,
        ctx: Context,
        hosts: HostSet,
        targets: Sequence[DeploymentTarget],
        verb: str,
        *args: str,
    ) -> None:
        def run(t: DeploymentTarget, ctx: Context) -> None:
            cmd, argv = t.invocation(verb, *args)
            try:
                hosts.get(t, ctx).execute_with_output(ctx, cmd, *argv)
            except ExitCodeError as e:
                logger.error(
                    "cannot execute %s on %s: %s",
                    verb,
                    t.identity,
                    e.output.decode("utf-8", "replace"),
                )
                raise

        logger.debug("executing %s on %d targets", verb, len(targets))
        self._fan_out(ctx, verb, targets, run)

    def _setup(self, ctx: Context, hosts: HostSet) -> None:
        def upload_runtime(t: DeploymentTarget, ctx: Context) -> None:
            host = hosts.get(t, ctx)
            host.upload_directory(ctx, self.runtime, RUNTIME_DIR)
            if t.os == "linux":
                try:
                    host.execute_with_output(
                        ctx, "chmod", "a+x", f"{RUNTIME_DIR}/{t.runtime_class}/linux/service.sh"
                    )
                except ExitCodeError as e:
                    logger.error(
                        "cannot change service permission: %s",
                        e.output.decode("utf-8", "replace"),
                    )
                    raise

        self._fan_out(ctx, "upload runtime", self.targets, upload_runtime)

        with tempfile.TemporaryDirectory(prefix="courier-", dir=self.tempdir) as tmp:
            staged = Path(tmp)
            stage_artifact(self.artifact, staged)

            def upload_artifact(t: DeploymentTarget, ctx: Context) -> None:
                hosts.get(t, ctx).upload_directory(ctx, staged, f"{ARTIFACT_DIR}/{self.id}")

            self._fan_out(ctx, "upload artifact", self.targets, upload_artifact)

        args = [self.id, self.artifact.refer.uri, self.artifact.digest]
        authn = self.artifact.refer.authn
        if authn is not None:
            args += [str(authn.type), authn.user, authn.secret]
        self._execute(ctx, hosts, self.targets, "setup", *args)


def stage_artifact(artifact: Artifact, directory: Path) -> None:
    """Writes the launch files read by the service scripts."""
    (directory / "command").write_text(artifact.command)

    ports = sorted(int(p) for p in artifact.ports if p is not None)
    (directory / "ports").write_text("".join(f"{p}\n" for p in ports))

    envs = sorted(
        f"{k}=" if v is None else f"{k}={v}" for k, v in artifact.envs.items()
    )
    (directory / "envs").write_text("".join(f"{e}\n" for e in envs))

    volumes = sorted(v for v in artifact.volumes if v)
    (directory / "volumes").write_text("".join(f"{v}\n" for v in volumes))
