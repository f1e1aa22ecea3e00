"""Error taxonomy raised by the billing reconciliation engine."""

from __future__ import annotations

from typing import Any, Mapping


class BillingError(RuntimeError):
    """Base error carrying diagnostic context about the failed reconciliation."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {key: value for key, value in context.items() if value is not None}

    def add_context(self, **context: Any) -> "BillingError":
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"


class ConfigurationError(BillingError):
    """Raised when required settings are absent or malformed."""


class MissingLinkageError(BillingError):
    """Raised when a policy has no subscription or schedule where one is required."""


class MissingMetadataError(BillingError):
    """Raised when a processor object lacks correlation metadata."""


class InvalidStateError(BillingError):
    """Raised when a policy or processor object is in the wrong state for the operation."""


class InvalidFrequencyError(InvalidStateError):
    """Raised for billing frequencies the processor cannot represent."""


class MissingBillingDayError(InvalidStateError):
    """Raised when a calculation needs a billing day and the policy has none."""


class UpstreamCallError(BillingError):
    """Wraps a failed call to the payment or policy service."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        params: Mapping[str, Any] | None = None,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, operation=operation, status_code=status_code, **context)
        self.operation = operation
        self.params = dict(params or {})
        self.status_code = status_code


__all__ = [
    "BillingError",
    "ConfigurationError",
    "InvalidFrequencyError",
    "InvalidStateError",
    "MissingBillingDayError",
    "MissingLinkageError",
    "MissingMetadataError",
    "UpstreamCallError",
]
