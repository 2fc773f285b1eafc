"""
Unit tests for access control.

Tests cover:
- Permission bits and letters
- Pure permission evaluation
- Stored ACLs (create, replace, lookup)
- Gate checks against stored ACLs
"""

import pytest

from tests.helpers import EDITOR, READER, READERS, STRANGER, USERS
from ticketdb.ticketdb_core.apply.acl import (
    AccessDecision,
    AccessGate,
    Permission,
    StaticGroupResolver,
)
from ticketdb.ticketdb_core.errors import AccessDeniedError, NotFoundError, ValidationError
from ticketdb.ticketdb_core.store.acls import (
    ALL_PERMISSIONS,
    AccessControlList,
    AclStore,
    descriptive_name,
)


class TestPermission:
    """Tests for permission bits."""

    def test_bit_values(self):
        """Bit values are persisted and must stay fixed."""
        assert int(Permission.READ) == 0x01
        assert int(Permission.UPDATE) == 0x02
        assert int(Permission.CREATE) == 0x04
        assert int(Permission.DELETE) == 0x08
        assert int(Permission.MAIL) == 0x10
        assert int(ALL_PERMISSIONS) == 0x1F

    def test_letters(self):
        assert ALL_PERMISSIONS.letters() == "CRUDM"
        assert (Permission.READ | Permission.UPDATE).letters() == "RU"
        assert Permission.NONE.letters() == ""

    def test_descriptive_name(self):
        assert descriptive_name({1: 0x07, 2: 0x01}) == "group 1: CRU; group 2: R"


class TestEvaluate:
    """Tests for AccessGate.evaluate."""

    def test_bits_are_ored_across_groups(self):
        """Granted bits are the OR over all of the actor's groups."""
        entries = {1: Permission.READ, 2: Permission.UPDATE}
        required = Permission.READ | Permission.UPDATE
        assert AccessGate.evaluate(entries, frozenset({1, 2}), required) is AccessDecision.ALLOWED
        assert AccessGate.evaluate(entries, frozenset({1}), required) is AccessDecision.DENIED

    def test_no_groups_denied(self):
        entries = {1: ALL_PERMISSIONS}
        assert not AccessGate.evaluate(entries, frozenset(), Permission.READ).allowed

    def test_unlisted_group_denied(self):
        entries = {1: ALL_PERMISSIONS}
        assert not AccessGate.evaluate(entries, frozenset({3}), Permission.READ).allowed


class TestStaticGroupResolver:
    """Tests for in-memory group membership."""

    def test_membership_changes(self):
        resolver = StaticGroupResolver({1: [10]})
        resolver.add_member(1, 11)
        resolver.add_member(2, 10)
        resolver.remove_member(1, 10)
        resolver.remove_member(3, 10)
        assert resolver.groups_for(1) == frozenset({11})
        assert resolver.groups_for(2) == frozenset({10})
        assert resolver.groups_for(3) == frozenset()


class TestAclStore:
    """Tests for stored ACLs."""

    def test_create_and_get(self, database):
        store = AclStore()
        with database.transaction() as conn:
            acl = store.create(conn, {USERS: 0x1F, READERS: 0x01})
        with database.connect() as conn:
            loaded = store.get(conn, acl.acl_id)
        assert loaded == acl
        assert loaded.name == "group 1: CRUDM; group 2: R"
        assert AccessGate.evaluate(loaded.entries, frozenset({READERS}), Permission.READ) == AccessDecision.ALLOWED
        assert AccessGate.evaluate(loaded.entries, frozenset({READERS}), Permission.UPDATE) == AccessDecision.DENIED

    def test_explicit_name(self, database):
        with database.transaction() as conn:
            acl = AclStore().create(conn, {USERS: 0x01}, name="staff")
        assert acl.name == "staff"

    def test_invalid_bits_rejected(self, database):
        with pytest.raises(ValidationError) as exc_info:
            with database.transaction() as conn:
                AclStore().create(conn, {USERS: 0x20})
        assert exc_info.value.errors == ["Invalid permission bits 32 for group 1"]

    def test_replace_entries(self, database):
        store = AclStore()
        with database.transaction() as conn:
            acl = store.create(conn, {USERS: 0x1F})
        with database.transaction() as conn:
            replaced = store.replace_entries(conn, acl.acl_id, {READERS: 0x03})
        with database.connect() as conn:
            loaded = store.require(conn, acl.acl_id)
        assert loaded == replaced
        assert dict(loaded.entries) == {READERS: Permission.READ | Permission.UPDATE}

    def test_require_missing(self, database):
        with database.connect() as conn:
            assert AclStore().get(conn, 404) is None
            with pytest.raises(NotFoundError):
                AclStore().require(conn, 404)

    def test_to_dict(self):
        acl = AccessControlList(acl_id=3, name="x", entries={1: Permission.READ})
        assert acl.to_dict() == {"acl_id": 3, "name": "x", "entries": {"1": 1}}


class TestAccessGate:
    """Tests for gate checks against stored ACLs."""

    @pytest.fixture
    def gate(self):
        return AccessGate(StaticGroupResolver({EDITOR: [USERS], READER: [READERS]}))

    @pytest.fixture
    def acl_id(self, database):
        with database.transaction() as conn:
            return AclStore().create(conn, {USERS: 0x1F, READERS: 0x01}).acl_id

    def test_check(self, database, gate, acl_id):
        with database.connect() as conn:
            assert gate.check(conn, EDITOR, acl_id, Permission.UPDATE).allowed
            assert gate.check(conn, READER, acl_id, Permission.READ).allowed
            assert not gate.check(conn, READER, acl_id, Permission.UPDATE).allowed
            assert not gate.check(conn, STRANGER, acl_id, Permission.READ).allowed

    def test_require_raises(self, database, gate, acl_id):
        with database.connect() as conn:
            with pytest.raises(AccessDeniedError) as exc_info:
                gate.require(conn, READER, acl_id, Permission.DELETE)
        assert exc_info.value.actor_id == READER
        assert exc_info.value.acl_id == acl_id
        assert exc_info.value.required_permission == "DELETE"

    def test_missing_acl(self, database, gate):
        with database.connect() as conn:
            with pytest.raises(NotFoundError):
                gate.check(conn, EDITOR, 404, Permission.READ)
