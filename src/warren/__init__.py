"""warren: local-first exploration canvases."""

__version__ = "0.1.0"
