from argparse import Namespace
from pathlib import Path

import pytest

from courier import config


@pytest.fixture(autouse=True)
def data_dir(monkeypatch, tmp_path):
    monkeypatch.setattr("courier.xdg.x_save_data_path", lambda app: str(tmp_path / app))


def test_default_config(config_file, tmp_path):
    """
    Test default config
    """
    cfg = config.Config(config_file)
    assert cfg.connect_timeout == 15.0
    assert cfg.create_timeout == 600.0
    assert cfg.update_timeout == 600.0
    assert cfg.delete_timeout == 600.0
    assert cfg.max_surge == 0.3
    assert cfg.state_dir == tmp_path / "courier"


def test_override_config(config_file):
    """
    Test override config
    """
    config_file.write_text(
        "[courier]\n"
        "connect_timeout = 5\n"
        "state_dir = /srv/courier\n"
        "tempdir = /var/tmp\n"
        "[timeouts]\n"
        "create = 120  # two minutes\n"
        "[strategy]\n"
        "max_surge = 0.5\n"
    )
    cfg = config.Config(config_file)
    assert cfg.connect_timeout == 5.0
    assert cfg.create_timeout == 120.0
    assert cfg.update_timeout == 600.0
    assert cfg.max_surge == 0.5
    assert cfg.state_dir == Path("/srv/courier")
    assert cfg.local_tempdir == Path("/var/tmp")


def test_invalid_value_falls_back(config_file):
    config_file.write_text("[courier]\nconnect_timeout = soon\n")
    cfg = config.Config(config_file)
    assert cfg.connect_timeout == 15.0


def test_env_config(monkeypatch, tmp_path):
    cfg_file = tmp_path / "env.cfg"
    cfg_file.write_text("[strategy]\nmax_surge = 0.2\n")
    monkeypatch.setenv("COURIER_CONF", str(cfg_file))

    cfg = config.Config()
    assert cfg.configfiles == [cfg_file]
    assert cfg.max_surge == 0.2


def test_merge_args(config_file):
    """
    Test merge_args
    """
    cfg = config.Config(config_file)
    cfg.merge_args(Namespace(connect_timeout=3.0, timeout=60.0, state_dir=Path("/x")))
    assert cfg.connect_timeout == 3.0
    assert cfg.create_timeout == cfg.update_timeout == cfg.delete_timeout == 60.0
    assert cfg.state_dir == Path("/x")


def test_merge_args_keeps_unset(config_file):
    cfg = config.Config(config_file)
    cfg.merge_args(Namespace(connect_timeout=None, timeout=None))
    assert cfg.connect_timeout == 15.0


def test_set_option(config_file):
    cfg = config.Config(config_file)
    cfg.set_option("max_surge", 0.9)
    assert cfg.max_surge == 0.9
    with pytest.raises(config.InvalidOptionNameError):
        cfg.set_option("location", "x")
