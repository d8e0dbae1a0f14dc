"""Runtime bundles: the service scripts installed on every target."""

from .classes import Classes, get_classes
from .source import SourceError, SourceOptions, builtin_source, external_source

__all__ = [
    "Classes",
    "SourceError",
    "SourceOptions",
    "builtin_source",
    "external_source",
    "get_classes",
]
