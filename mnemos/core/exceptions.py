"""
Core exception hierarchy for Mnemos.

Provides standardized exception types with categorization for retry logic.
Read-path components degrade on RetryableError subclasses; write-path
components let every error propagate.
"""

from typing import Any, Optional


# =============================================================================
# Base Exceptions
# =============================================================================


class MnemosError(Exception):
    """Base exception for all Mnemos errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RetryableError(MnemosError):
    """
    Transient errors that should be retried.

    Examples: Rate limits, timeouts, temporary network issues.
    """

    pass


class PermanentError(MnemosError):
    """
    Errors that won't be fixed by retrying.

    Examples: Invalid input, unknown ids, invariant violations.
    """

    pass


# =============================================================================
# Initialization Errors
# =============================================================================


class InitializationError(PermanentError):
    """Raised when a critical component fails to initialize."""

    def __init__(self, component: str, message: str, details: Optional[dict[str, Any]] = None):
        self.component = component
        super().__init__(f"[{component}] {message}", details)


# =============================================================================
# Domain Errors
# =============================================================================


class NotFoundError(PermanentError):
    """Raised when a memory id or user has no matching record."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found: {identifier}",
            {"resource": resource, "id": identifier},
        )


class InvalidInputError(PermanentError):
    """Raised for malformed ids, dimension mismatches and disallowed filter values."""

    pass


class InvariantViolationError(PermanentError):
    """
    Raised when a write would break a store invariant.

    Examples: versioning a record that is no longer latest, or leaving a
    forgotten record outside the cold tier. Never retried or auto-repaired.
    """

    pass


# =============================================================================
# Dependency Errors
# =============================================================================


class DependencyError(MnemosError):
    """Base exception for failures of remote dependencies."""

    def __init__(
        self,
        dependency: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.dependency = dependency
        super().__init__(f"[{dependency}] {message}", details)


class DependencyTimeoutError(DependencyError, RetryableError):
    """Raised when a remote round trip exceeds its time budget."""

    pass


class DependencyFailureError(DependencyError, RetryableError):
    """Raised when a remote dependency fails for a reason other than timeout."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details)


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitBreakerOpenError(RetryableError):
    """Raised when circuit breaker is open and blocking requests."""

    def __init__(self, service: str, recovery_time: float):
        self.service = service
        self.recovery_time = recovery_time
        super().__init__(
            f"Circuit breaker open for {service}. Recovery in {recovery_time:.1f}s",
            {"service": service, "recovery_time": recovery_time},
        )
