"""A logging formatter that adds color to the output."""

import logging

(BLACK, RED, GREEN, YELLOW, BLUE, MAGENTA, CYAN, WHITE) = list(range(8))

RESET_SEQ = "\033[0m"
COLOR_SEQ = "\033[1;{}m"

COLORS = {
    "WARNING": YELLOW,
    "INFO": GREEN,
    "DEBUG": BLUE,
    "CRITICAL": RED,
    "ERROR": RED,
}


class ColorFormatter(logging.Formatter):
    """A logging formatter that adds color to the level name.

    Debug records additionally carry the module and function that
    emitted them, which helps following a fan-out across threads.
    """

    def __init__(self, msg) -> None:
        logging.Formatter.__init__(self, msg)

    def formatColor(self, record: logging.LogRecord) -> str:
        """Formats the log level name with ANSI color codes.

        Args:
            record: The record whose level name is colorized.

        Returns:
            The colorized log level name.
        """
        levelname = record.levelname
        colored = (
            "\033[2K"
            + COLOR_SEQ.format(30 + COLORS.get(levelname, WHITE))
            + levelname.lower()
            + RESET_SEQ
        )
        if levelname == "DEBUG":
            colored += " [{!s}:{!s}]".format(record.name, record.funcName)
            if record.threadName != "MainThread":
                colored += " ({!s})".format(record.threadName)
        return colored

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        if self._fmt and self._fmt.find("%(levelname)") >= 0:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = self.formatColor(record)

        return logging.Formatter.format(self, record)


def create_logger(name: str, level: str | int = "INFO") -> logging.Logger:
    """Creates a logger with a colorized output.

    Args:
        name: The name of the logger.
        level: The logging level.

    Returns:
        A configured `logging.Logger` instance.
    """
    out = logging.getLogger(name) if name else logging.getLogger()
    out.setLevel(level)
    handler = logging.StreamHandler()
    formatter = ColorFormatter("%(levelname)s: %(message)s")
    handler.setFormatter(formatter)
    out.addHandler(handler)
    return out
