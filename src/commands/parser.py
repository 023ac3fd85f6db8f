"""Extract ``@<bot> <command> [args...]`` mentions from comment text."""

import re

from src.models.commands import Command, CommandName


class InvalidCommandError(ValueError):
    """A mention named a command outside the supported set."""


class CommandParser:
    """Parses bot commands out of free-text comments."""

    def __init__(self, bot_name: str = "sherlock") -> None:
        self.bot_name = bot_name
        mention = rf"@{re.escape(bot_name)}"
        self._mention = re.compile(rf"{mention}\b", re.IGNORECASE)
        # Arguments run to the end of the line or the next mention
        self._pattern = re.compile(
            rf"{mention}\s+(\w+)([^\n]*?)(?={mention}\b|$)",
            re.IGNORECASE | re.MULTILINE,
        )

    def parse_comment(self, body: str) -> list[Command]:
        """Return every command in the comment, in order of appearance."""
        commands = []
        for match in self._pattern.finditer(body or ""):
            name = match.group(1).strip().lower()
            args = tuple(match.group(2).split())
            commands.append(Command(name=name, args=args))
        return commands

    def is_command_comment(self, body: str) -> bool:
        return bool(self._mention.search(body or ""))

    def validate_command(self, command: Command) -> CommandName:
        """Return the command kind, or raise for names outside the closed set."""
        try:
            return CommandName(command.name)
        except ValueError:
            raise InvalidCommandError(
                f"unknown command: {command.name}. "
                f"Use '@{self.bot_name} help' for available commands"
            ) from None

    def help_message(self) -> str:
        bot = self.bot_name
        return (
            f"## @{bot} Commands\n\n"
            "Available commands:\n\n"
            f"- **@{bot} review** - Re-run the code review for this PR\n"
            f"- **@{bot} explain** - Explain the code at a file and line\n"
            f"- **@{bot} fix** - Generate suggested fixes for issues\n"
            f"- **@{bot} security** - Run a security-focused scan\n"
            f"- **@{bot} performance** - Analyze performance implications\n"
            f"- **@{bot} help** - Show this help message\n\n"
            "Examples:\n"
            f"- `@{bot} review`\n"
            f"- `@{bot} explain src/utils.ts:45`\n"
            f"- `@{bot} fix src/utils.ts`\n"
        )
