"""Command and query handlers."""

from natrix.handlers.command import CommandHandler, CommandResult
from natrix.handlers.query import QueryHandler

__all__ = ["CommandHandler", "CommandResult", "QueryHandler"]
