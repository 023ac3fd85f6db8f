"""Chat command parsing, handling and routing."""

from .parser import CommandParser, InvalidCommandError
from .router import CommandRouter, UnknownCommandError

__all__ = ["CommandParser", "CommandRouter", "InvalidCommandError", "UnknownCommandError"]
