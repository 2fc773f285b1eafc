"""
Access control list persistence.

An ACL maps group ids to ORed permission bits. Entities reference exactly
one ACL; ACLs are shared across entities and changed independently of them.

Invariants:
    - Permission bit values are persisted and must never change
    - replace_entries() swaps the whole entry set; there is no partial update
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from .database import constraint_guard

logger = logging.getLogger(__name__)


class Permission(IntFlag):
    """Permission bits of an ACL entry."""

    NONE = 0
    READ = 0x01
    UPDATE = 0x02
    CREATE = 0x04
    DELETE = 0x08
    MAIL = 0x10

    def letters(self) -> str:
        """Short form used in generated ACL names, e.g. 'CRU'."""
        order = (
            (Permission.CREATE, "C"),
            (Permission.READ, "R"),
            (Permission.UPDATE, "U"),
            (Permission.DELETE, "D"),
            (Permission.MAIL, "M"),
        )
        return "".join(letter for flag, letter in order if flag in self)


ALL_PERMISSIONS = (
    Permission.READ | Permission.UPDATE | Permission.CREATE | Permission.DELETE | Permission.MAIL
)


@dataclass(frozen=True)
class AccessControlList:
    """An ACL and its group entries.

    Attributes:
        acl_id: ACL identifier
        name: Descriptive name
        entries: group id -> Permission bits
    """

    acl_id: int
    name: str
    entries: Mapping[int, Permission] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "acl_id": self.acl_id,
            "name": self.name,
            "entries": {str(gid): int(bits) for gid, bits in self.entries.items()},
        }


def descriptive_name(entries: Mapping[int, int]) -> str:
    """Name such as 'group 1: CRUD; group 2: R' for an unnamed ACL."""
    return "; ".join(f"group {gid}: {Permission(bits).letters()}" for gid, bits in entries.items())


def _check_entries(entries: Mapping[int, int]) -> dict[int, Permission]:
    errors = []
    checked = {}
    for gid, bits in entries.items():
        if isinstance(gid, bool) or not isinstance(gid, int):
            errors.append(f"Invalid group id {gid!r}")
            continue
        if isinstance(bits, bool) or not isinstance(bits, int) or bits & ~int(ALL_PERMISSIONS):
            errors.append(f"Invalid permission bits {bits!r} for group {gid}")
            continue
        checked[gid] = Permission(bits)
    if errors:
        raise ValidationError("Invalid access control list", field_name="acl", errors=errors)
    return checked


class AclStore:
    """Reads and writes of ACLs within a caller's transaction."""

    def create(
        self,
        conn: sqlite3.Connection,
        entries: Mapping[int, int],
        name: Optional[str] = None,
    ) -> AccessControlList:
        checked = _check_entries(entries)
        name = name or descriptive_name(checked)
        with constraint_guard("acls"):
            cursor = conn.execute("INSERT INTO acls (name) VALUES (?)", (name,))
            acl_id = cursor.lastrowid
            self._insert_entries(conn, acl_id, checked)
        logger.debug("Created ACL", extra={"acl_id": acl_id, "acl_name": name})
        return AccessControlList(acl_id=acl_id, name=name, entries=checked)

    def get(self, conn: sqlite3.Connection, acl_id: int) -> Optional[AccessControlList]:
        row = conn.execute("SELECT * FROM acls WHERE aid = ?", (acl_id,)).fetchone()
        if row is None:
            return None
        entries = {
            entry["gid"]: Permission(entry["bits"])
            for entry in conn.execute(
                "SELECT gid, bits FROM acl_entries WHERE aid = ? ORDER BY gid", (acl_id,)
            )
        }
        return AccessControlList(acl_id=row["aid"], name=row["name"], entries=entries)

    def require(self, conn: sqlite3.Connection, acl_id: int) -> AccessControlList:
        acl = self.get(conn, acl_id)
        if acl is None:
            raise NotFoundError(f"ACL {acl_id} not found", "acl", acl_id)
        return acl

    def replace_entries(
        self,
        conn: sqlite3.Connection,
        acl_id: int,
        entries: Mapping[int, int],
        name: Optional[str] = None,
    ) -> AccessControlList:
        """Replace all entries (and the name) of an existing ACL."""
        self.require(conn, acl_id)
        checked = _check_entries(entries)
        name = name or descriptive_name(checked)
        with constraint_guard("acl_entries"):
            conn.execute("UPDATE acls SET name = ? WHERE aid = ?", (name, acl_id))
            conn.execute("DELETE FROM acl_entries WHERE aid = ?", (acl_id,))
            self._insert_entries(conn, acl_id, checked)
        logger.info(f"Replaced entries of ACL {acl_id} ({name})")
        return AccessControlList(acl_id=acl_id, name=name, entries=checked)

    @staticmethod
    def _insert_entries(conn: sqlite3.Connection, acl_id: int, entries: Mapping[int, int]) -> None:
        conn.executemany(
            "INSERT INTO acl_entries (aid, gid, bits) VALUES (?, ?, ?)",
            [(acl_id, gid, int(bits)) for gid, bits in entries.items()],
        )
