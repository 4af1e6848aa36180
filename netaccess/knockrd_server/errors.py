"""
Error types for the knockrd server.

This module defines every exception raised by the store, the cache,
the sinks and the reconciler:
- KnockrdError: Base exception
- TransientIOError: Network failure or timeout (retry or redeliver)
- ConflictError: Optimistic lock rejected by a list-based sink
- ValidationError: Input that cannot be interpreted (e.g. not an address)
- ConfigurationError: Invalid configuration, fatal at startup
- ProvisioningError: Access store could not be provisioned
- SinkError: One sink failed for one or more of its targets
- ReconciliationError: One or more sinks failed for a batch

Invariants:
    - All errors inherit from KnockrdError
    - Provider error codes are kept in details["code"] when available
    - "Not found" on the access store is a normal result, never an error
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class KnockrdError(Exception):
    """Base exception for all knockrd errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KNOCKRD_ERROR"
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class TransientIOError(KnockrdError):
    """A store or sink call failed in a way that may succeed on retry.

    Raised when:
    - A call exceeds its timeout
    - The endpoint is unreachable
    - The provider throttles the request
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(message, code="TRANSIENT_IO", details={"operation": operation})
        self.operation = operation


class ConflictError(KnockrdError):
    """A conditional write was rejected because the target changed.

    The list-based sink raises this when the version token presented on
    write no longer matches. The update is dropped for the invocation.
    """

    def __init__(self, message: str, target_id: Optional[str] = None) -> None:
        super().__init__(message, code="CONFLICT", details={"target_id": target_id})
        self.target_id = target_id


class ValidationError(KnockrdError):
    """Input could not be interpreted."""

    def __init__(self, message: str, value: Any = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"value": value})
        self.value = value


class ConfigurationError(KnockrdError):
    """Configuration is missing or invalid."""

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"setting": setting})
        self.setting = setting


class ProvisioningError(KnockrdError):
    """The access store table could not be created or configured."""

    def __init__(self, message: str, table_name: Optional[str] = None) -> None:
        super().__init__(message, code="PROVISIONING_ERROR", details={"table_name": table_name})
        self.table_name = table_name


class SinkError(KnockrdError):
    """A sink failed to apply a batch.

    Attributes:
        sink: Sink category name ("ip_set", "security_group", "consul_kv")
        failures: Mapping of target identifier to the exception raised for it
    """

    def __init__(self, sink: str, failures: Dict[str, Exception]) -> None:
        summary = ", ".join(f"{target}: {exc}" for target, exc in failures.items())
        super().__init__(
            f"{sink} sink failed ({summary})",
            code="SINK_ERROR",
            details={"sink": sink, "targets": sorted(failures)},
        )
        self.sink = sink
        self.failures = failures


class ReconciliationError(KnockrdError):
    """One or more sinks failed while reconciling a batch.

    The whole batch is reported as failed so the upstream delivery
    mechanism redelivers it.

    Attributes:
        errors: Mapping of sink category name to the exception it raised
    """

    def __init__(self, errors: Dict[str, Exception]) -> None:
        super().__init__(
            f"{len(errors)} sink(s) failed: {', '.join(sorted(errors))}",
            code="RECONCILIATION_ERROR",
            details={"sinks": sorted(errors)},
        )
        self.errors = errors
