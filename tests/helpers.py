import threading
from io import StringIO

from courier.deployment import Artifact, ArtifactRefer, DeploymentTarget
from courier.exceptions import ExitCodeError
from courier.target.host import Host
from courier.target.types import HostAuthn, HostOptions, HostStatus


class SysFake:
    def __init__(self, argv=()):
        self.argv = list(argv)
        self.stdout = StringIO()
        self.stderr = StringIO()
        self.stdin = StringIO()


class CallLog(list):
    def __init__(self):
        super().__init__()
        self.lock = threading.Lock()

    def verbs(self, address=None):
        """The service verbs run, in order, optionally on one host only."""
        out = []
        for entry in self:
            if address is not None and entry[0] != address:
                continue
            for verb in ("setup", "start", "stop", "cleanup"):
                if verb in entry[1:]:
                    out.append((entry[0], verb))
        return out


class FakeHost(Host):
    """Records every command and transfer into a log shared by the fleet."""

    def __init__(self, options, log, failures=None):
        super().__init__(options.address)
        self.log = log
        self.failures = failures or {}
        self.uploads = []

    def _record(self, *entry):
        with self.log.lock:
            self.log.append(entry)

    def _close(self):
        self._record(self.address, "close")

    def state(self, ctx):
        return HostStatus(True, "linux", "amd64", "6.1.0")

    def execute(self, ctx, cmd, *args):
        self.execute_with_output(ctx, cmd, *args)

    def execute_with_output(self, ctx, cmd, *args):
        ctx.check()
        argv = (cmd, *args)
        verb = next((a for a in argv if a in self.failures), None)
        self._record(self.address, *argv)
        if verb is not None:
            raise ExitCodeError(self.failures[verb], b"boom")
        return b""

    def shell(self, ctx, *cmd_args):
        raise NotImplementedError

    def upload_file(self, ctx, src, to):
        self.uploads.append(to)

    def upload_directory(self, ctx, src, to):
        ctx.check()
        self.uploads.append(to)
        self._record(self.address, "upload", to)

    def download_file(self, ctx, src):
        raise NotImplementedError

    def download_directory(self, ctx, src):
        raise NotImplementedError


def make_target(address, os="linux"):
    return DeploymentTarget(
        HostOptions(address, HostAuthn("ssh", "root", "secret")), os, "amd64"
    )


def make_artifact(uri="nginx:1.25", **kw):
    return Artifact(ArtifactRefer(uri), **kw)
