"""Where runtime bundles come from: the packaged one or a git repository."""

from dataclasses import dataclass
from importlib.resources import files
from importlib.resources.abc import Traversable
from logging import getLogger
from pathlib import Path
import subprocess
import tempfile
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from ..exceptions import ConfigurationError, CourierError
from ..target.types import HostAuthn

logger = getLogger("courier.runtime.source")


class SourceError(CourierError):
    """A runtime bundle could not be fetched."""


@dataclass(frozen=True)
class SourceOptions:
    """An external bundle as ``<git url>[//<subpath>][?ref=<branch or tag>]``."""

    source: str
    authn: HostAuthn | None = None
    insecure: bool = False


def builtin_source() -> Traversable:
    return files("courier.runtime") / "builtin"


def split_source(source: str) -> tuple[str, str, str]:
    """Splits an external source into clone URL, subpath and ref."""
    u = urlsplit(source)
    if not u.scheme or not u.netloc:
        raise ConfigurationError(f"invalid external source URL: {source!r}")

    path, _, subpath = u.path.partition("//")
    query = parse_qsl(u.query, keep_blank_values=True)
    ref = ""
    for key, value in query:
        if key == "ref":
            ref = value
    query = [(k, v) for k, v in query if k != "ref"]

    url = urlunsplit((u.scheme, u.netloc, path, urlencode(query), u.fragment))
    return url, subpath.strip("/"), ref


def _clone_url(url: str, authn: HostAuthn | None) -> str:
    if authn is None or authn.type != "basic":
        return url
    u = urlsplit(url)
    netloc = "{}:{}@{}".format(
        quote(authn.user, safe=""), quote(authn.secret, safe=""), u.hostname or ""
    )
    if u.port:
        netloc += f":{u.port}"
    return urlunsplit((u.scheme, netloc, u.path, u.query, u.fragment))


def external_source(options: SourceOptions, tempdir: str | None = None) -> Path:
    """Clones the bundle repository shallowly into a temporary directory.

    Raises:
        SourceError: git failed, or the subpath does not exist.
    """
    url, subpath, ref = split_source(options.source)

    cmd = ["git"]
    if options.insecure:
        cmd += ["-c", "http.sslVerify=false"]
    if options.authn is not None and options.authn.type == "bearer":
        cmd += ["-c", f"http.extraHeader=Authorization: Bearer {options.authn.secret}"]
    cmd += ["clone", "--depth", "1"]
    if ref:
        # --branch takes tags as well
        cmd += ["--branch", ref]

    dest = Path(tempfile.mkdtemp(prefix="courier-", dir=tempdir))
    cmd += [_clone_url(url, options.authn), str(dest)]

    logger.debug("cloning %s (ref %s) into %s", url, ref or "HEAD", dest)
    try:
        out = subprocess.run(
            cmd, check=True, capture_output=True, text=True, stdin=subprocess.DEVNULL
        )
    except FileNotFoundError as e:
        raise SourceError(f"failed to clone git external source: {e}") from e
    except subprocess.CalledProcessError as e:
        raise SourceError(
            f"failed to clone git external source {url}: {e.stderr.strip()}"
        ) from e
    for line in out.stderr.splitlines():
        logger.debug(line)

    root = dest / subpath if subpath else dest
    if not root.is_dir():
        raise SourceError(f"no such subpath in git external source: {subpath!r}")
    return root
