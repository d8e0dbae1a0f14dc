"""Enumeration of the runtime classes a bundle provides."""

from importlib.resources.abc import Traversable

# shared helpers of the service scripts, not a runtime class
RESERVED = "lib"

Classes = dict[str, set[str]]


def get_classes(source: Traversable) -> Classes:
    """Maps every runtime class of a bundle to its operating systems.

    A bundle is laid out as ``<class>/<os>/service.{sh,ps1}``; empty
    classes are skipped.
    """
    classes: Classes = {}
    for entry in source.iterdir():
        if not entry.is_dir() or entry.name == RESERVED:
            continue
        systems = {os.name for os in entry.iterdir() if os.is_dir()}
        if systems:
            classes[entry.name] = systems
    return classes


def has_os(classes: Classes, runtime_class: str, os: str) -> bool:
    return os in classes.get(runtime_class, ())
