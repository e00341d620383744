"""Command line interface."""

from concord.cli.main import app
from concord.cli import commands  # noqa: F401  registers additional commands

__all__ = ["app"]
