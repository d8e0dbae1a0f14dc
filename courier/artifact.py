"""Resolving artifact references to their digest.

An artifact is either a file behind an HTTP(S) URL or a container
image. `new_refer()` picks the resolver by the shape of the reference.
"""

from dataclasses import dataclass
import hashlib
from logging import getLogger
import re
from urllib.parse import urlsplit

import requests
from requests.auth import HTTPBasicAuth
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from . import __version__
from .exceptions import ConfigurationError, CourierError
from .pool import BytesPool, default_pool
from .target.types import HostAuthn

logger = getLogger("courier.artifact")

# Suppress insecure request warnings for references marked insecure.
urllib3.disable_warnings(category=InsecureRequestWarning)

USER_AGENT = f"courier/{__version__}"
TIMEOUT = 30

REFER_HTTP = "http"
REFER_CONTAINER_IMAGE = "container_image"

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

MANIFEST_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.v1+prettyjws",
    ]
)

_REPOSITORY = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[0-9a-fA-F]{32,}$")
_CHALLENGE = re.compile(r'(\w+)="([^"]*)"')


class ReferError(CourierError):
    """An artifact reference cannot be observed right now."""


@dataclass(frozen=True)
class ReferStatus:
    accessible: bool = False
    digest: str = ""
    type: str = ""
    length: int = 0


@dataclass(frozen=True)
class ReferOptions:
    uri: str
    authn: HostAuthn | None = None
    insecure: bool = False

    def kind(self) -> str:
        """Returns `http`, `container_image` or "" when unrecognized."""
        if "://" in self.uri:
            scheme = urlsplit(self.uri).scheme.lower()
            return REFER_HTTP if scheme in ("http", "https") else ""
        try:
            ImageReference.parse(self.uri)
        except ConfigurationError:
            return ""
        return REFER_CONTAINER_IMAGE


def _session(options: ReferOptions) -> requests.Session:
    s = requests.Session()
    s.headers["User-Agent"] = USER_AGENT
    s.verify = not options.insecure
    authn = options.authn
    if authn is not None:
        if authn.type == "basic":
            s.auth = HTTPBasicAuth(authn.user, authn.secret)
        elif authn.type == "bearer":
            s.headers["Authorization"] = f"Bearer {authn.secret}"
    return s


class HTTPRefer:
    """A file behind an HTTP(S) URL, identified by the SHA-256 of its body."""

    def __init__(self, options: ReferOptions, pool: BytesPool = default_pool) -> None:
        self.options = options
        self.pool = pool

    def state(self) -> ReferStatus:
        url = self.options.uri
        logger.debug("Requesting GET on %s", url)
        try:
            with _session(self.options) as s, s.get(url, stream=True, timeout=TIMEOUT) as rsp:
                if rsp.status_code != 200:
                    raise ReferError(f"unexpected status code: {rsp.status_code}")

                digest = hashlib.sha256()
                length = 0
                for chunk in rsp.iter_content(chunk_size=self.pool.size):
                    digest.update(chunk)
                    length += len(chunk)
                content_type = rsp.headers.get("Content-Type", "")
        except requests.exceptions.RequestException as e:
            raise ReferError(f"failed to do request: {e}") from e

        return ReferStatus(True, "sha256:" + digest.hexdigest(), content_type, length)


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    reference: str

    @classmethod
    def parse(cls, raw: str) -> "ImageReference":
        """Parses `[registry/]repository[:tag][@digest]` leniently."""
        if not raw or raw != raw.strip():
            raise ConfigurationError(f"invalid image reference: {raw!r}")

        name, _, digest = raw.partition("@")
        tag = ""
        slash = name.rfind("/")
        colon = name.rfind(":")
        if colon > slash:
            name, tag = name[:colon], name[colon + 1 :]

        registry, _, repository = name.partition("/")
        if not repository or not (
            "." in registry or ":" in registry or registry == "localhost"
        ):
            registry, repository = DEFAULT_REGISTRY, name
        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = "library/" + repository

        if not _REPOSITORY.match(repository):
            raise ConfigurationError(f"invalid image repository: {raw!r}")
        if tag and not _TAG.match(tag):
            raise ConfigurationError(f"invalid image tag: {raw!r}")
        if digest and not _DIGEST.match(digest):
            raise ConfigurationError(f"invalid image digest: {raw!r}")

        return cls(registry, repository, digest or tag or DEFAULT_TAG)

    @property
    def api(self) -> str:
        host = "registry-1.docker.io" if self.registry == DEFAULT_REGISTRY else self.registry
        return f"https://{host}/v2"


class ImageRefer:
    """A container image, identified by its manifest digest."""

    def __init__(self, options: ReferOptions) -> None:
        self.options = options
        self.ref = ImageReference.parse(options.uri)

    def _token(self, s: requests.Session, challenge: str) -> str:
        params = dict(_CHALLENGE.findall(challenge))
        realm = params.pop("realm", "")
        if not realm:
            raise ReferError(f"unsupported authentication challenge: {challenge}")
        if "scope" not in params:
            params["scope"] = f"repository:{self.ref.repository}:pull"

        logger.debug("Requesting token from %s", realm)
        rsp = s.get(realm, params=params, timeout=TIMEOUT)
        if not rsp.ok:
            raise ReferError(f"failed to fetch token: status code {rsp.status_code}")
        body = rsp.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise ReferError("failed to fetch token: no token in response")
        return token

    def state(self) -> ReferStatus:
        url = f"{self.ref.api}/{self.ref.repository}/manifests/{self.ref.reference}"
        headers = {"Accept": MANIFEST_TYPES}

        logger.debug("Requesting HEAD on %s", url)
        try:
            with _session(self.options) as s:
                rsp = s.head(url, headers=headers, timeout=TIMEOUT)
                challenge = rsp.headers.get("WWW-Authenticate", "")
                if rsp.status_code == 401 and challenge.lower().startswith("bearer "):
                    headers["Authorization"] = "Bearer " + self._token(s, challenge)
                    rsp = s.head(url, headers=headers, timeout=TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise ReferError(f"failed to head: {e}") from e
        except ValueError as e:
            raise ReferError(f"failed to head: {e}") from e

        if rsp.status_code != 200:
            raise ReferError(f"failed to head: unexpected status code: {rsp.status_code}")

        digest = rsp.headers.get("Docker-Content-Digest", "")
        if not digest and self.ref.reference.startswith("sha256:"):
            digest = self.ref.reference

        return ReferStatus(
            True,
            digest,
            rsp.headers.get("Content-Type", ""),
            int(rsp.headers.get("Content-Length", 0) or 0),
        )


def new_refer(options: ReferOptions) -> HTTPRefer | ImageRefer:
    """Raises ConfigurationError for references of unknown kind."""
    kind = options.kind()
    if kind == REFER_HTTP:
        return HTTPRefer(options)
    if kind == REFER_CONTAINER_IMAGE:
        return ImageRefer(options)
    raise ConfigurationError(f"unknown refer type: {options.uri!r}")
