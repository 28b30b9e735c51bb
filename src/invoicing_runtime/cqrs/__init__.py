"""Typed command/query dispatch."""

from invoicing_runtime.cqrs.bus import CqrsBus
from invoicing_runtime.cqrs.command import Command, CommandHandler, Query

__all__ = ["Command", "CommandHandler", "CqrsBus", "Query"]
