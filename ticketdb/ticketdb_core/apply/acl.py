"""
Access gating for TicketDB.

This module decides whether an actor may perform an operation on an entity:
- Group resolution (actor -> group ids) through a GroupResolver
- Permission evaluation of an ACL's entries against those groups
- Raising AccessDeniedError for the coordinator and projector

Invariants:
    - Granted bits are the OR of the entries of all the actor's groups
    - Access is allowed iff every required bit is granted
    - The gate never writes; a denial has no side effects
    - Checks run before any value row, changelog entry or relation is touched

How to change safely:
    - New permission bits must be added to Permission, never renumbered
    - Group resolution is an external concern; keep it behind GroupResolver
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Optional, Protocol

from ..errors import AccessDeniedError
from ..store.acls import AclStore, Permission

logger = logging.getLogger(__name__)

__all__ = [
    "AccessDecision",
    "AccessGate",
    "GroupResolver",
    "Permission",
    "StaticGroupResolver",
]


class AccessDecision(Enum):
    """Result of an access check."""

    ALLOWED = "allowed"
    DENIED = "denied"

    @property
    def allowed(self) -> bool:
        return self is AccessDecision.ALLOWED


class GroupResolver(Protocol):
    """Resolves an actor to the ids of the groups it belongs to."""

    def groups_for(self, actor_id: int) -> frozenset[int]: ...


class StaticGroupResolver:
    """In-memory group memberships.

    Example:
        >>> resolver = StaticGroupResolver({7: [1, 2]})
        >>> resolver.groups_for(7)
        frozenset({1, 2})
    """

    def __init__(self, memberships: Optional[Mapping[int, Iterable[int]]] = None) -> None:
        self._memberships: dict[int, set[int]] = {
            actor_id: set(groups) for actor_id, groups in (memberships or {}).items()
        }

    def add_member(self, actor_id: int, group_id: int) -> None:
        self._memberships.setdefault(actor_id, set()).add(group_id)

    def remove_member(self, actor_id: int, group_id: int) -> None:
        self._memberships.get(actor_id, set()).discard(group_id)

    def groups_for(self, actor_id: int) -> frozenset[int]:
        return frozenset(self._memberships.get(actor_id, ()))


class AccessGate:
    """Evaluates ACLs for actors.

    Thread safety:
        The gate holds no mutable state of its own; ACLs are read through
        the caller's connection.
    """

    def __init__(self, groups: GroupResolver, acl_store: Optional[AclStore] = None) -> None:
        self._groups = groups
        self._acls = acl_store or AclStore()

    @staticmethod
    def evaluate(
        entries: Mapping[int, int],
        group_ids: frozenset[int],
        required: Permission,
    ) -> AccessDecision:
        """Pure permission evaluation.

        Args:
            entries: ACL entries, group id -> permission bits
            group_ids: The actor's groups
            required: Bits that must all be granted

        Returns:
            ALLOWED if every required bit is granted by some group
        """
        granted = 0
        for gid in group_ids:
            granted |= entries.get(gid, 0)
        if granted & required == required:
            return AccessDecision.ALLOWED
        return AccessDecision.DENIED

    def groups_for(self, actor_id: int) -> frozenset[int]:
        return self._groups.groups_for(actor_id)

    def check(
        self,
        conn: sqlite3.Connection,
        actor_id: int,
        acl_id: int,
        required: Permission,
    ) -> AccessDecision:
        """Check an actor against a stored ACL.

        Raises:
            NotFoundError: If the ACL does not exist
        """
        acl = self._acls.require(conn, acl_id)
        decision = self.evaluate(acl.entries, self.groups_for(actor_id), required)
        if not decision.allowed:
            logger.debug(
                "Access denied",
                extra={
                    "actor_id": actor_id,
                    "acl_id": acl_id,
                    "required": int(required),
                },
            )
        return decision

    def require(
        self,
        conn: sqlite3.Connection,
        actor_id: int,
        acl_id: int,
        required: Permission,
    ) -> None:
        """Check and raise if denied.

        Raises:
            AccessDeniedError: If access is denied
            NotFoundError: If the ACL does not exist
        """
        if not self.check(conn, actor_id, acl_id, required).allowed:
            label = required.name or str(int(required))
            raise AccessDeniedError(
                f"Access denied: actor {actor_id} lacks {label} on ACL {acl_id}",
                actor_id=actor_id,
                acl_id=acl_id,
                required_permission=label,
            )
