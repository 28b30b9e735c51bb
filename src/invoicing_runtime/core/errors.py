"""Custom exception hierarchy for the invoicing runtime."""


class InvoicingRuntimeError(Exception):
    """Base exception for all runtime errors."""


# --- Configuration ---
class ConfigError(InvoicingRuntimeError):
    """Invalid or missing configuration."""


# --- Container ---
class ContainerError(InvoicingRuntimeError):
    """Dependency container misconfiguration."""


class UnboundTokenError(ContainerError, LookupError):
    """No binding exists for the requested token."""

    def __init__(self, token: object):
        self.token = token
        super().__init__(f"No binding registered for token {token_name(token)}")


class DuplicateBindingError(ContainerError):
    """Token already bound and strict registration was requested."""

    def __init__(self, token: object):
        self.token = token
        super().__init__(f"Token {token_name(token)} is already bound")


class CyclicDependencyError(ContainerError):
    """The dependency graph of a binding contains a cycle."""

    def __init__(self, path: list[object]):
        self.path = list(path)
        super().__init__(
            "Cyclic dependency detected: "
            + " -> ".join(token_name(t) for t in self.path)
        )


class AsyncFactoryError(ContainerError):
    """A coroutine factory was resolved through the synchronous path."""

    def __init__(self, token: object):
        self.token = token
        super().__init__(
            f"Factory for {token_name(token)} is asynchronous; resolve it with aget()"
        )


# --- Command dispatch ---
class DispatchError(InvoicingRuntimeError):
    """Command dispatcher error."""


class NoHandlerRegisteredError(DispatchError):
    """No handler is registered for the command type."""

    def __init__(self, command_type: type):
        self.command_type = command_type
        super().__init__(f"No handler registered for command {command_type.__name__}")


class DuplicateHandlerError(DispatchError):
    """A second handler was registered for the same command type."""

    def __init__(self, command_type: type, existing: object, new: object):
        self.command_type = command_type
        super().__init__(
            f"Command {command_type.__name__} already handled by "
            f"{token_name(existing)}, refusing {token_name(new)}"
        )


# --- Events ---
class EventError(InvoicingRuntimeError):
    """Event bus or handler registry error."""


class PermanentDeliveryError(EventError):
    """Delivery can never succeed; transports must not retry it."""


class NoEventHandlerError(PermanentDeliveryError, LookupError):
    """No handler import entry exists for the event name."""

    def __init__(self, event_name: str):
        self.event_name = event_name
        super().__init__(f"No handler found for event {event_name!r}")


class EventValidationError(PermanentDeliveryError):
    """Event payload failed schema validation."""

    def __init__(self, event_name: str, detail: str):
        self.event_name = event_name
        self.detail = detail
        super().__init__(f"Event validation failed for {event_name!r}: {detail}")


# --- Async utilities ---
class BackoffError(InvoicingRuntimeError):
    """Backoff runner error."""


class RetriesExhaustedError(BackoffError):
    """The operation never became ready within max_attempts."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Max attempts reached ({attempts})")


class DeferredAlreadySettledError(InvoicingRuntimeError):
    """A deferred handle was settled or failed more than once."""


def token_name(token: object) -> str:
    """Human-readable name for a DI token or handler reference."""
    if isinstance(token, str):
        return repr(token)
    return getattr(token, "__qualname__", None) or repr(token)
