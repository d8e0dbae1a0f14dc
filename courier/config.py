"""Handles the configuration for courier.

Options are read from ``$COURIER_CONF``, or from ``/etc/courier.cfg`` and
``~/.courierrc``, and may be overridden on the command line::

    [courier]
    connect_timeout = 15
    state_dir = ~/.local/share/courier
    tempdir = /var/tmp

    [timeouts]
    create = 600
    update = 600
    delete = 600

    [strategy]
    max_surge = 0.3
"""

from argparse import Namespace
from collections.abc import Callable
import configparser
from logging import getLogger
from os import getenv
from pathlib import Path
from typing import Any

from .xdg import save_data_path

logger = getLogger("courier.config")


class InvalidOptionNameError(RuntimeError):
    """Raised when setting an option that does not exist."""


class Config:
    """Read and store the variables from courier config files."""

    def __init__(self, path: Path | None = None) -> None:
        """Initializes the configuration object.

        Args:
            path: A config file replacing the default ones.
        """
        if path:
            self.configfiles = [path]
        elif _pth := getenv("COURIER_CONF"):
            self.configfiles = [Path(_pth).expanduser()]
        else:
            self.configfiles = [
                Path("/etc/courier.cfg"),
                Path("~/.courierrc").expanduser(),
            ]
        self.read()

        self._define_config_options()
        self._parse_config()

    def read(self) -> None:
        self.config = configparser.ConfigParser(inline_comment_prefixes=("#", ";"))
        try:
            self.config.read(self.configfiles)
        except configparser.Error as e:
            logger.error(e)

    def _parse_config(self) -> None:
        for attr, inipath, default, fixup, getter in self.data:
            try:
                val = self._get_option(inipath, getter)
            except Exception:
                val = default() if callable(default) else default

            setattr(self, attr, fixup(val))
            logger.debug('config.%s set to "%s"', attr, val)

    def _define_config_options(self) -> None:
        def normalizer(x: Any) -> Any:
            return x

        def expanduser(p: Path | str) -> Path:
            return Path(p).expanduser()

        getfloat = self.config.getfloat

        data: list[tuple[Any, ...]] = [
            # seconds to dial and authenticate one hop
            ("connect_timeout", ("courier", "connect_timeout"), 15.0, float, getfloat),
            ("create_timeout", ("timeouts", "create"), 600.0, float, getfloat),
            ("update_timeout", ("timeouts", "update"), 600.0, float, getfloat),
            ("delete_timeout", ("timeouts", "delete"), 600.0, float, getfloat),
            ("max_surge", ("strategy", "max_surge"), 0.3, float, getfloat),
            ("state_dir", ("courier", "state_dir"), save_data_path, expanduser),
            (
                "local_tempdir",
                ("courier", "tempdir"),
                lambda: Path(getenv("TMPDIR", "/tmp")),
                expanduser,
            ),
        ]

        def add_normalizer(x):
            return x if len(x) > 3 else x + (normalizer,)

        getter = self.config.get

        def add_getter(x):
            return x if len(x) > 4 else x + (getter,)

        self.data: list[tuple[str, tuple[str, ...], Any, Callable, Callable]] = [
            add_getter(add_normalizer(x)) for x in data
        ]

    def _has_option(self, opt: str) -> bool:
        return opt in (x[0] for x in self.data)

    def set_option(self, opt: str, val: Any) -> None:
        """Sets an option to a new value.

        Raises:
            InvalidOptionNameError: If `opt` is not a known option.
        """
        if not self._has_option(opt):
            raise InvalidOptionNameError(opt)

        setattr(self, opt, val)

    def _get_option(self, secopt, getter):
        try:
            return getter(*secopt)
        except (configparser.NoSectionError, configparser.NoOptionError):
            logger.debug("Config option {0}.{1} not found.".format(*secopt))
            raise
        except Exception:
            msg = "Config option {0}.{1} extraction from {2} failed."
            logger.error(msg.format(*secopt, self.configfiles))
            raise

    def merge_args(self, args: Namespace) -> None:
        """Applies command-line overrides."""
        if getattr(args, "connect_timeout", None):
            self.connect_timeout = args.connect_timeout

        if getattr(args, "timeout", None):
            self.create_timeout = args.timeout
            self.update_timeout = args.timeout
            self.delete_timeout = args.timeout

        if getattr(args, "state_dir", None):
            self.state_dir = args.state_dir
