"""
TicketDB core - record storage and mutation engine for a ticket tracker.

This package implements the engine underneath a ticket-tracking application:
- Entities as a small fixed core record plus configurable typed fields
- One SQLite value table per storage kind
- An append-only changelog of every mutation, used for audit and history
- Symmetric relation / reverse-relation fields with counts
- Entity-level ACLs gating every read and write

Architecture:
    ReadProjector      WriteCoordinator
          │                  │
          ├──── AccessGate ──┤
          │                  ├── RelationMaintainer
          │                  ├── ChangeLog
          └──── ValueStore ──┘
                     │
              FieldCatalog / SQLite

Invariants:
    - Every mutation is one transaction; failures leave no trace
    - Every changed field has exactly one changelog entry
    - Relation links and their reverse links always agree
    - field_id and type_id are immutable once assigned
"""

from .apply import (
    AccessDecision,
    AccessGate,
    OperationContext,
    Permission,
    ReadProjector,
    StaticGroupResolver,
    WriteCoordinator,
)
from .clock import ManualClock, SystemClock
from .config import EngineConfig
from .engine import Engine, setup_logging
from .errors import (
    AccessDeniedError,
    ConflictError,
    ConsistencyViolation,
    ConstraintViolation,
    NotFoundError,
    TicketDbError,
    TransactionError,
    ValidationError,
)
from .schema import EntityTypeDef, FieldCatalog, FieldDefinition, StorageKind, field

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "EngineConfig",
    "setup_logging",
    "FieldCatalog",
    "FieldDefinition",
    "EntityTypeDef",
    "StorageKind",
    "field",
    "AccessDecision",
    "AccessGate",
    "Permission",
    "StaticGroupResolver",
    "OperationContext",
    "WriteCoordinator",
    "ReadProjector",
    "SystemClock",
    "ManualClock",
    "TicketDbError",
    "ValidationError",
    "NotFoundError",
    "AccessDeniedError",
    "ConflictError",
    "ConstraintViolation",
    "ConsistencyViolation",
    "TransactionError",
]
