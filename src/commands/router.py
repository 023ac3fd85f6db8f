"""Exhaustive dispatch from command kind to handler."""

import logging
from collections.abc import Mapping

from src.commands.handlers import CommandHandler
from src.models.commands import Command, CommandContext, CommandName

logger = logging.getLogger(__name__)


class UnknownCommandError(LookupError):
    """No handler exists for the command name."""


class CommandRouter:
    """Routes a parsed command to the handler registered for its kind."""

    def __init__(self, handlers: Mapping[CommandName, CommandHandler]) -> None:
        missing = set(CommandName) - set(handlers)
        if missing:
            names = ", ".join(sorted(name.value for name in missing))
            raise ValueError(f"missing command handlers: {names}")
        self._handlers = dict(handlers)

    async def route(self, command: Command, ctx: CommandContext) -> str:
        try:
            kind = CommandName(command.name)
        except ValueError:
            raise UnknownCommandError(f"unknown command: {command.name}") from None

        logger.info(
            f"Routing command '{kind.value}' for {ctx.repo.full_name}#{ctx.pr.number}"
        )
        return await self._handlers[kind].handle(command, ctx)
