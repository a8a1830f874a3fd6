"""Command line interface of the extension manager"""

from extensionmanager.cli.main import cli, main

__all__ = ["cli", "main"]
