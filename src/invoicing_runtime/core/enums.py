"""Enumerations used across the runtime."""

from enum import Enum


class Lifetime(str, Enum):
    SINGLETON = "singleton"  # One instance per container
    TRANSIENT = "transient"  # New instance on every resolution


class CommandKind(str, Enum):
    COMMAND = "command"
    QUERY = "query"


class TransportKind(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
