"""
Apply module for TicketDB - gated mutation and projection.

This module handles:
- Access gating of every read and write against entity ACLs
- Orchestration of mutations (value write, changelog, reverse sync)
- Current and historical projection of entity field values

Invariants:
    - Every mutation is one SQLite transaction; nothing is half-applied
    - Access denial and validation failure have no side effects
    - Readers never block writers (SQLite WAL mode)

How to change safely:
    - Keep all writes behind WriteCoordinator
    - Verify reverse symmetry and changelog completeness in tests for
      every new operation
"""

from .acl import AccessDecision, AccessGate, GroupResolver, Permission, StaticGroupResolver
from .coordinator import OperationContext, WriteCoordinator
from .projector import ReadProjector

__all__ = [
    "AccessDecision",
    "AccessGate",
    "GroupResolver",
    "Permission",
    "StaticGroupResolver",
    "OperationContext",
    "WriteCoordinator",
    "ReadProjector",
]
