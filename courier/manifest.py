"""The YAML manifest declaring what to deploy where.

::

    runtime:
      class: docker
      # git URL of an external bundle, the builtin one when omitted
      source: https://github.com/example/runtimes//bundle?ref=v1
    artifact:
      refer:
        uri: nginx:1.25
        authn: {type: basic, user: me, secret: s3cret}
      command: nginx -g "daemon off;"
      ports: [80]
      envs: {TZ: UTC}
      volumes: [/data:/data]
    targets:
      - host:
          address: 10.0.0.5
          authn: {type: ssh, user: root, secret: ...}
          proxies:
            - address: socks5://10.0.0.1
              authn: {type: proxy}
        os: linux
        arch: amd64
    strategy:
      type: rolling
      rolling: {max_surge: 0.3}
    timeouts: {create: 600, update: 600, delete: 600}
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .deployment import Artifact, ArtifactRefer, DeploymentTarget, Strategy, StrategyType
from .exceptions import ConfigurationError
from .messages import ManifestError
from .runtime import SourceOptions
from .target.types import AuthnType, HostAuthn, HostOption, HostOptions

OPERATING_SYSTEMS = ("linux", "windows")
REFER_AUTHN_TYPES = (AuthnType.BASIC, AuthnType.BEARER)
TIMEOUTS = ("create", "update", "delete")


@dataclass(frozen=True)
class RuntimeSpec:
    runtime_class: str = "docker"
    source: SourceOptions | None = None


@dataclass(frozen=True)
class Manifest:
    name: str
    runtime: RuntimeSpec
    artifact: Artifact
    targets: list[DeploymentTarget]
    strategy: Strategy = Strategy()
    timeouts: dict[str, float] = field(default_factory=dict)


def _mapping(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where}: expected a mapping")
    return value


def _list(value: Any, where: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"{where}: expected a list")
    return value


def _authn(
    raw: Any, where: str, default: AuthnType, optional: bool = False
) -> HostAuthn | None:
    raw = _mapping(raw, where)
    if not raw and optional:
        return None
    return HostAuthn(
        type=raw.get("type", default),
        user=str(raw.get("user", "") or ""),
        secret=str(raw.get("secret", "") or ""),
        agent=bool(raw.get("agent", False)),
    )


def _host(raw: Any, where: str) -> HostOptions:
    raw = _mapping(raw, where)
    address = str(raw.get("address", "") or "")
    if not address:
        raise ConfigurationError(f"{where}.address: no address specified")

    proxies = []
    for i, p in enumerate(_list(raw.get("proxies"), f"{where}.proxies")):
        p = _mapping(p, f"{where}.proxies[{i}]")
        proxies.append(
            HostOption(
                address=str(p.get("address", "") or ""),
                authn=_authn(p.get("authn"), f"{where}.proxies[{i}].authn", AuthnType.PROXY),
                insecure=bool(p.get("insecure", False)),
            )
        )

    options = HostOptions(
        address=address,
        authn=_authn(raw.get("authn"), f"{where}.authn", AuthnType.SSH),
        insecure=bool(raw.get("insecure", False)),
        proxies=tuple(proxies),
    )
    options.parse_address()
    for p in options.proxies:
        p.parse_address()
    return options


def parse_targets(raw: Any, runtime_class: str = "docker") -> list[DeploymentTarget]:
    targets = []
    seen = set()
    for i, t in enumerate(_list(raw, "targets")):
        t = _mapping(t, f"targets[{i}]")
        host = _host(t.get("host"), f"targets[{i}].host")
        if host.address in seen:
            raise ConfigurationError(f"targets[{i}]: duplicate address {host.address}")
        seen.add(host.address)

        os = str(t.get("os", "linux")).lower()
        if os not in OPERATING_SYSTEMS:
            raise ConfigurationError(f"targets[{i}].os: unsupported {os!r}")
        targets.append(
            DeploymentTarget(host, os, str(t.get("arch", "") or ""), runtime_class)
        )
    return targets


def parse_artifact(raw: Any) -> Artifact:
    raw = _mapping(raw, "artifact")
    refer = _mapping(raw.get("refer"), "artifact.refer")
    uri = str(refer.get("uri", "") or "")
    if not uri:
        raise ConfigurationError("artifact.refer.uri: no reference specified")

    authn = _authn(refer.get("authn"), "artifact.refer.authn", AuthnType.BASIC, True)
    if authn is not None and authn.type not in REFER_AUTHN_TYPES:
        raise ConfigurationError(f"artifact.refer.authn.type: {authn.type} not allowed")

    try:
        ports = tuple(int(p) for p in _list(raw.get("ports"), "artifact.ports"))
    except (TypeError, ValueError):
        raise ConfigurationError("artifact.ports: expected integers") from None
    for p in ports:
        if not 0 < p < 65536:
            raise ConfigurationError(f"artifact.ports: {p} out of range")

    envs = {
        str(k): None if v is None else str(v)
        for k, v in _mapping(raw.get("envs"), "artifact.envs").items()
    }

    return Artifact(
        refer=ArtifactRefer(uri, authn, bool(refer.get("insecure", False))),
        command=str(raw.get("command", "") or ""),
        ports=ports,
        envs=envs,
        volumes=tuple(str(v) for v in _list(raw.get("volumes"), "artifact.volumes")),
        digest=str(raw.get("digest", "") or ""),
    )


def _runtime(raw: Any) -> RuntimeSpec:
    raw = _mapping(raw, "runtime")
    source = None
    if url := raw.get("source"):
        source = SourceOptions(
            str(url),
            _authn(raw.get("authn"), "runtime.authn", AuthnType.BASIC, True),
            bool(raw.get("insecure", False)),
        )
    return RuntimeSpec(str(raw.get("class", "docker")), source)


def _strategy(raw: Any, max_surge: float) -> Strategy:
    raw = _mapping(raw, "strategy")
    try:
        type_ = StrategyType(raw.get("type", StrategyType.RECREATE))
    except ValueError:
        raise ConfigurationError(f"strategy.type: unknown strategy {raw.get('type')!r}") from None
    rolling = _mapping(raw.get("rolling"), "strategy.rolling")
    try:
        surge = float(rolling.get("max_surge", max_surge))
    except (TypeError, ValueError):
        raise ConfigurationError("strategy.rolling.max_surge: expected a number") from None
    if surge > 1:
        raise ConfigurationError("strategy.rolling.max_surge: must not exceed 1")
    return Strategy(type_, surge)


def parse_manifest(data: Any, name: str, max_surge: float = 0.3) -> Manifest:
    data = _mapping(data, "manifest")
    runtime = _runtime(data.get("runtime"))

    targets = parse_targets(data.get("targets"), runtime.runtime_class)
    if not targets:
        raise ConfigurationError("targets: at least one target is required")

    timeouts = {}
    for k, v in _mapping(data.get("timeouts"), "timeouts").items():
        if k not in TIMEOUTS:
            raise ConfigurationError(f"timeouts.{k}: unknown timeout")
        try:
            timeouts[k] = float(v)
        except (TypeError, ValueError):
            raise ConfigurationError(f"timeouts.{k}: expected seconds") from None

    return Manifest(
        name=name,
        runtime=runtime,
        artifact=parse_artifact(data.get("artifact")),
        targets=targets,
        strategy=_strategy(data.get("strategy"), max_surge),
        timeouts=timeouts,
    )


def load_manifest(path: Path, max_surge: float = 0.3) -> Manifest:
    """Reads and validates a manifest file.

    Raises:
        ManifestError: The file cannot be read or is invalid.
    """
    try:
        with path.open() as f:
            data = YAML(typ="safe").load(f)
    except (OSError, YAMLError) as e:
        raise ManifestError(path, str(e)) from None

    try:
        return parse_manifest(data, path.stem, max_surge)
    except ConfigurationError as e:
        raise ManifestError(path, str(e)) from None
