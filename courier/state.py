"""Persisted state of applied deployments.

Every applied manifest leaves a ``<name>.yaml`` in the state directory
holding the deployment id, the artifact and the targets it was applied
to. The next apply compares against it to decide between create and
update. Files are created with mode 0600 as they carry credentials.
"""

from dataclasses import dataclass
import io
from logging import getLogger
import os
from pathlib import Path
from shutil import move
from tempfile import mkstemp
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .deployment import Artifact, DeploymentTarget
from .exceptions import ConfigurationError
from .manifest import parse_artifact, parse_targets
from .messages import ErrorMessage
from .target.types import HostAuthn, HostOption

logger = getLogger("courier.state")


class StateError(ErrorMessage):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.message = "corrupt deployment state {!s}: {!s}".format(path, reason)


@dataclass(frozen=True)
class DeploymentState:
    id: str
    runtime_class: str
    artifact: Artifact
    targets: list[DeploymentTarget]


def _dump_authn(authn: HostAuthn | None) -> dict[str, Any] | None:
    if authn is None:
        return None
    return {
        "type": str(authn.type),
        "user": authn.user,
        "secret": authn.secret,
        "agent": authn.agent,
    }


def _dump_hop(hop: HostOption) -> dict[str, Any]:
    return {
        "address": hop.address,
        "authn": _dump_authn(hop.authn),
        "insecure": hop.insecure,
    }


def dump_state(state: DeploymentState) -> dict[str, Any]:
    a = state.artifact
    return {
        "id": state.id,
        "runtime": state.runtime_class,
        "artifact": {
            "refer": {
                "uri": a.refer.uri,
                "authn": _dump_authn(a.refer.authn),
                "insecure": a.refer.insecure,
            },
            "digest": a.digest,
            "command": a.command,
            "ports": list(a.ports),
            "envs": dict(a.envs),
            "volumes": list(a.volumes),
        },
        "targets": [
            {
                "host": {
                    **_dump_hop(t.host),
                    "proxies": [_dump_hop(p) for p in t.host.proxies],
                },
                "os": t.os,
                "arch": t.arch,
            }
            for t in state.targets
        ],
    }


def load_state(data: Any) -> DeploymentState:
    if not isinstance(data, dict) or not data.get("id"):
        raise ConfigurationError("no deployment id")
    runtime_class = str(data.get("runtime", "docker"))
    return DeploymentState(
        id=str(data["id"]),
        runtime_class=runtime_class,
        artifact=parse_artifact(data.get("artifact")),
        targets=parse_targets(data.get("targets"), runtime_class),
    )


class StateStore:
    """YAML files in `directory`, one per deployment name."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path(self, name: str) -> Path:
        return self.directory / f"{name}.yaml"

    def load(self, name: str) -> DeploymentState | None:
        """Returns None when `name` has never been applied.

        Raises:
            StateError: The state file exists but cannot be used.
        """
        path = self.path(name)
        try:
            with path.open() as f:
                data = YAML(typ="safe").load(f)
        except FileNotFoundError:
            return None
        except (OSError, YAMLError) as e:
            raise StateError(path, str(e)) from None

        try:
            return load_state(data)
        except ConfigurationError as e:
            raise StateError(path, str(e)) from None

    def save(self, name: str, state: DeploymentState) -> None:
        path = self.path(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        buf = io.StringIO()
        yaml = YAML(typ="safe")
        yaml.default_flow_style = False
        yaml.dump(dump_state(state), buf)

        fd, fname = mkstemp(dir=path.parent, prefix=f".{name}-")
        with os.fdopen(fd, "w") as f:
            f.write(buf.getvalue())
        move(fname, path)
        logger.debug("saved state of %s to %s", name, path)

    def remove(self, name: str) -> None:
        try:
            self.path(name).unlink()
        except FileNotFoundError:
            logger.debug("no state of %s to remove", name)
