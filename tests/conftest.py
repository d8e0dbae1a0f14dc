import pytest

from courier.context import Context

from helpers import CallLog, FakeHost


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def fake_connect(call_log):
    """A connector handing out `FakeHost`s; `.failures` maps address to {verb: code}."""
    failures = {}
    opened = []

    def connect(options, pool=None, timeout=None, ctx=None):
        host = FakeHost(options, call_log, failures.get(options.address))
        opened.append(host)
        return host

    connect.failures = failures
    connect.opened = opened
    return connect


@pytest.fixture
def ctx():
    with Context(timeout=30) as c:
        yield c


@pytest.fixture
def runtime_dir(tmp_path):
    root = tmp_path / "runtime"
    (root / "docker" / "linux").mkdir(parents=True)
    (root / "docker" / "linux" / "service.sh").write_text("#!/bin/sh\n")
    (root / "docker" / "windows").mkdir(parents=True)
    (root / "docker" / "windows" / "service.ps1").write_text("exit 0\n")
    (root / "lib").mkdir()
    (root / "lib" / "common.sh").write_text("")
    return root


@pytest.fixture
def config_file(tmp_path):
    cfg = tmp_path / "courier.cfg"
    cfg.write_text("")
    return cfg
