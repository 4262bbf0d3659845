"""CLI command modules for isbnscout."""

from isbnscout.cli.commands.sync import add_sync_parser, cmd_sync

__all__ = ["add_sync_parser", "cmd_sync"]
