"""Command-line interface."""

from goalflow.cli.main import app

__all__ = ["app"]
