__all__ = ["main", "deployment", "target"]

__version__ = "0.3.0"
