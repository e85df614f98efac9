"""Command line interface for pluginhost."""

from .main import cli, main

__all__ = ["cli", "main"]
