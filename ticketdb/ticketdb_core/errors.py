"""
Error types for the TicketDB core.

This module defines every exception the engine raises:
- TicketDbError: Base exception
- ValidationError: A value fails its field's type/range/shape rule
- AccessDeniedError: The access gate denied an operation
- NotFoundError: Referenced entity, field, type or ACL does not exist
- ConflictError: Optimistic concurrency check on last_mod_at failed
- ConstraintViolation: The storage substrate rejected a write
- ConsistencyViolation: A reverse relation could not be kept symmetric
- TransactionError: A mutation was rolled back for a fatal reason

Invariants:
    - All errors inherit from TicketDbError
    - Expected errors (validation, access, not found, conflict) are raised
      only after the enclosing transaction has been rolled back
    - ConstraintViolation and ConsistencyViolation never reach callers of the
      WriteCoordinator directly; they are wrapped in TransactionError
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class TicketDbError(Exception):
    """Base exception for all TicketDB errors.

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
        self.code = code or "TICKETDB_ERROR"
        self.details = details or {}


class ValidationError(TicketDbError):
    """A field value failed validation.

    Raised when:
    - Required field is missing or set to None
    - Field value has the wrong type or is out of range
    - An array value has duplicates or invalid counts
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class NotFoundError(TicketDbError):
    """Resource not found.

    Raised when:
    - Entity doesn't exist (or was deleted)
    - Field or entity type is not in the catalog
    - ACL doesn't exist
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: Any,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class AccessDeniedError(TicketDbError):
    """Access denied.

    Raised when the actor's groups do not grant the required permission
    bits on the ACL guarding the entity.
    """

    def __init__(
        self,
        message: str,
        actor_id: int,
        acl_id: int,
        required_permission: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="ACCESS_DENIED",
            details={
                "actor_id": actor_id,
                "acl_id": acl_id,
                "required_permission": required_permission,
            },
        )
        self.actor_id = actor_id
        self.acl_id = acl_id
        self.required_permission = required_permission


class ConflictError(TicketDbError):
    """Concurrent modification detected.

    The caller supplied an expected last-modified timestamp that no longer
    matches the entity.
    """

    def __init__(
        self,
        entity_id: int,
        expected_last_mod: int,
        actual_last_mod: Optional[int],
    ) -> None:
        super().__init__(
            f"Entity {entity_id} was modified concurrently "
            f"(expected last_mod_at={expected_last_mod}, found {actual_last_mod})",
            code="CONFLICT",
            details={
                "entity_id": entity_id,
                "expected_last_mod": expected_last_mod,
                "actual_last_mod": actual_last_mod,
            },
        )
        self.entity_id = entity_id
        self.expected_last_mod = expected_last_mod
        self.actual_last_mod = actual_last_mod


class ConstraintViolation(TicketDbError):
    """A uniqueness or foreign-key rule of the storage substrate was violated."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, code="CONSTRAINT_VIOLATION", details={"table": table})
        self.table = table


class ConsistencyViolation(TicketDbError):
    """A relation and its reverse could not be updated symmetrically."""

    def __init__(
        self,
        message: str,
        source_id: Optional[int] = None,
        field_id: Optional[int] = None,
        target_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONSISTENCY_VIOLATION",
            details={
                "source_id": source_id,
                "field_id": field_id,
                "target_id": target_id,
            },
        )
        self.source_id = source_id
        self.field_id = field_id
        self.target_id = target_id


class TransactionError(TicketDbError):
    """Transaction failed and was rolled back.

    Raised when:
    - The storage substrate rejected a write (ConstraintViolation)
    - A reverse relation could not be kept symmetric (ConsistencyViolation)

    The original error is available as ``__cause__``. Nothing of the
    operation was committed, so the whole operation may be retried.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details={"operation": operation, "retryable": retryable},
        )
        self.operation = operation
        self.retryable = retryable


class CatalogError(TicketDbError):
    """The field catalog is inconsistent."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, code="CATALOG_ERROR", details={"errors": errors or []})
        self.errors = errors or []


class CatalogFrozenError(CatalogError):
    """Raised when attempting to modify a frozen catalog."""

    pass


class DuplicateRegistrationError(CatalogError):
    """Raised when attempting to register a duplicate field or type."""

    pass
