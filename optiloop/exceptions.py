"""Custom exception hierarchy for optiloop."""

from __future__ import annotations

from typing import Any


class OptiloopError(Exception):
    """Base for all optiloop errors."""


class EventValidationError(OptiloopError):
    """An event or payload failed schema validation. Nothing was written."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class StreamBackendError(OptiloopError):
    """The durable stream backend could not complete an operation."""


class FederationSignatureError(OptiloopError):
    """A federation event carried a signature that does not verify."""


class MigrationError(OptiloopError):
    """A schema migration could not be applied. The store keeps its previous version."""


class ConfigurationError(OptiloopError):
    """Required configuration is missing or inconsistent."""


class PolicyViolationError(OptiloopError):
    """Action blocked by the policy oracle."""


class LoopStateError(OptiloopError):
    """Invalid control loop state transition."""
