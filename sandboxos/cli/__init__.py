"""CLI application setup using Typer.

Provides the command-line interface for running programs in the sandbox.
"""

from sandboxos.cli.main import app

__all__ = ["app"]
