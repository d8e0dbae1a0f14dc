"""Where courier keeps the state of the deployments it manages."""

from pathlib import Path

from xdg.BaseDirectory import save_data_path as x_save_data_path  # type: ignore

app = "courier"


def save_data_path(*args: str) -> Path:
    """Returns a path below the user's data directory, creating the directory.

    Args:
        *args: Path components joined to the data directory.
    """
    return Path(x_save_data_path(app)).joinpath(*args)
