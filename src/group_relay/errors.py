"""Error taxonomy for the relay."""

from __future__ import annotations

__all__ = [
    "ConfigInvalid",
    "PersistenceFailure",
    "RuleCompileError",
    "SendFailed",
    "TargetNotFound",
]


class ConfigInvalid(ValueError):
    """Configuration is missing or cannot be parsed. Fatal at startup."""


class RuleCompileError(ValueError):
    """A single rule could not be compiled and is dropped."""

    def __init__(self, rule_name: str, reason: str) -> None:
        super().__init__(f"Rule '{rule_name}' is invalid: {reason}")
        self.rule_name = rule_name
        self.reason = reason


class TargetNotFound(LookupError):
    """The directory has no conversation matching the target name."""

    def __init__(self, target: str) -> None:
        super().__init__(f"Target conversation not found: {target}")
        self.target = target


class SendFailed(RuntimeError):
    """The chat gateway rejected or failed to deliver a message."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PersistenceFailure(OSError):
    """Processed keys could not be written to durable storage."""
