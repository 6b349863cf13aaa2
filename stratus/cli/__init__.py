"""Command-line interface for stratus."""

from stratus.cli.main import cli

__all__ = ["cli"]
