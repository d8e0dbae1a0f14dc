"""The main entry point for the courier application."""

from argparse import Namespace
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from importlib.resources.abc import Traversable
import logging
import sys
import tempfile
from typing import Literal

from .argparse import ArgsParseFailure
from .args import get_parser
from .artifact import ReferError, ReferOptions, new_refer
from .colorlog import create_logger
from .config import Config
from .context import Context
from .deployment import Artifact, Deployment, new_deployment_id, targets_changed
from .exceptions import ConfigurationError, CourierError
from .manifest import Manifest, load_manifest
from .messages import NoDeploymentStateError, UnsupportedRuntimeError, UserMessage
from .runtime import builtin_source, external_source, get_classes
from .runtime.classes import has_os
from .state import DeploymentState, StateStore
from .target import new_host

logger = logging.getLogger("courier.main")


def main() -> int:
    """The main entry point for the courier application.

    Returns:
        The exit code of the application.
    """
    log = create_logger("courier")

    p = get_parser(sys)
    try:
        args = p.parse_args(sys.argv[1:])
    except ArgsParseFailure as e:
        return e.status

    if args.debug:
        log.setLevel(level=logging.DEBUG)

    cfg = Config(args.config)
    cfg.merge_args(args)

    return run_courier(cfg, log, args)


def run_courier(config: Config, log: logging.Logger, args: Namespace) -> Literal[0, 1]:
    """Runs the command given on the command line.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        manifest = load_manifest(args.manifest, config.max_surge)
        COMMANDS[args.command](config, manifest)
    except (CourierError, UserMessage) as e:
        log.error(e)
        return 1
    except KeyboardInterrupt:
        log.warning("interrupted")
        return 1
    return 0


def _timeout(config: Config, manifest: Manifest, name: str) -> float:
    return manifest.timeouts.get(name, getattr(config, f"{name}_timeout"))


@contextmanager
def runtime_source(config: Config, manifest: Manifest) -> Iterator[Traversable]:
    """Yields the runtime bundle of the manifest, removing clones afterwards."""
    options = manifest.runtime.source
    if options is None:
        yield builtin_source()
        return

    with tempfile.TemporaryDirectory(prefix="courier-", dir=config.local_tempdir) as tmp:
        yield external_source(options, tmp)


def check_runtime(source: Traversable, manifest: Manifest) -> None:
    classes = get_classes(source)
    for t in manifest.targets:
        if not has_os(classes, t.runtime_class, t.os):
            raise UnsupportedRuntimeError(t.runtime_class, t.os)


def resolve_digest(artifact: Artifact) -> Artifact:
    """Fills the digest in when the manifest does not pin one.

    An unobservable reference is not fatal, the artifact is then deployed
    by its URI alone.
    """
    if artifact.digest:
        return artifact

    refer = artifact.refer
    try:
        status = new_refer(ReferOptions(refer.uri, refer.authn, refer.insecure)).state()
    except (ReferError, ConfigurationError) as e:
        logger.warning("cannot observe artifact %s: %s", refer.uri, e)
        return artifact

    logger.info("resolved %s to %s", refer.uri, status.digest)
    return replace(artifact, digest=status.digest)


def do_apply(config: Config, manifest: Manifest) -> None:
    store = StateStore(config.state_dir)
    previous = store.load(manifest.name)
    artifact = resolve_digest(manifest.artifact)

    with runtime_source(config, manifest) as source:
        check_runtime(source, manifest)

        def deployment(id, artifact, targets) -> Deployment:
            return Deployment(
                id,
                source,
                artifact,
                targets,
                manifest.strategy,
                connect_timeout=config.connect_timeout,
                tempdir=str(config.local_tempdir),
            )

        if previous is None:
            d = deployment(new_deployment_id(artifact.refer.uri), artifact, manifest.targets)
            logger.info("creating deployment %s", d.id)
            with Context(timeout=_timeout(config, manifest, "create")) as ctx:
                d.apply(ctx)
        else:
            d = deployment(previous.id, artifact, manifest.targets)
            old = deployment(previous.id, previous.artifact, previous.targets)
            if targets_changed(old.targets, d.targets) or not artifact.same_identity(
                old.artifact
            ):
                logger.info("updating deployment %s", d.id)
            else:
                logger.info("restarting deployment %s", d.id)
            with Context(timeout=_timeout(config, manifest, "update")) as ctx:
                d.update(ctx, old)

    store.save(
        manifest.name,
        DeploymentState(d.id, manifest.runtime.runtime_class, artifact, d.targets),
    )
    logger.info("deployment %s applied to %d targets", d.id, len(d.targets))


def do_release(config: Config, manifest: Manifest) -> None:
    store = StateStore(config.state_dir)
    previous = store.load(manifest.name)
    if previous is None:
        raise NoDeploymentStateError(manifest.name)

    with runtime_source(config, manifest) as source:
        d = Deployment(
            previous.id,
            source,
            previous.artifact,
            previous.targets,
            connect_timeout=config.connect_timeout,
            tempdir=str(config.local_tempdir),
        )
        with Context(timeout=_timeout(config, manifest, "delete")) as ctx:
            d.release(ctx)

    store.remove(manifest.name)
    logger.info("deployment %s released", previous.id)


def do_state(config: Config, manifest: Manifest) -> None:
    previous = StateStore(config.state_dir).load(manifest.name)
    if previous is None:
        sys.stdout.write("deployment: not applied\n")
    else:
        sys.stdout.write(
            "deployment: {} ({})\n".format(previous.id, previous.artifact.refer.uri)
        )

    for t in manifest.targets:
        try:
            with Context(timeout=config.connect_timeout * 2) as ctx, new_host(
                t.host, timeout=config.connect_timeout, ctx=ctx
            ) as host:
                st = host.state(ctx)
        except CourierError as e:
            logger.warning("cannot observe %s: %s", t.identity, e)
            continue
        sys.stdout.write(
            "{}\t{}\t{}\t{}\n".format(t.identity, st.os, st.arch, st.version)
        )


def do_runtimes(config: Config, manifest: Manifest) -> None:
    with runtime_source(config, manifest) as source:
        classes = get_classes(source)
    for name in sorted(classes):
        sys.stdout.write("{}: {}\n".format(name, ", ".join(sorted(classes[name]))))


COMMANDS: dict[str, Callable[[Config, Manifest], None]] = {
    "apply": do_apply,
    "release": do_release,
    "state": do_state,
    "runtimes": do_runtimes,
}
