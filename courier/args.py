"""Defines the command-line arguments for the courier tool."""

from pathlib import Path

from courier import __version__

from .argparse import ArgumentParser


def get_parser(sys) -> ArgumentParser:
    """Creates and configures the argument parser for the application.

    Args:
        sys: The `sys` module, used for stdout/stderr.

    Returns:
        A configured `ArgumentParser` instance.
    """
    parser = ArgumentParser(
        prog="courier", description="Roll artifacts out to fleets of hosts.", sys_=sys
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="Override default config path"
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=False,
        help="enable debugging output",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version="{}".format(__version__),
        help="print version and exit",
    )
    parser.add_argument(
        "-w",
        "--connect-timeout",
        type=float,
        dest="connect_timeout",
        help="override config courier.connect_timeout",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        help="override the create, update and delete timeouts",
    )
    parser.add_argument(
        "-s", "--state-dir", type=Path, dest="state_dir", help="override config courier.state_dir"
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)
    for name, help in (
        ("apply", "create or update the deployment of a manifest"),
        ("release", "clean the deployment of a manifest up and forget it"),
        ("state", "show the state of the hosts of a manifest"),
        ("runtimes", "list the runtime classes available to a manifest"),
    ):
        p = commands.add_parser(name, help=help, sys_=sys)
        p.add_argument("manifest", metavar="MANIFEST", type=Path, help="manifest file")

    return parser
