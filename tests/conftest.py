"""
Shared test fixtures for TicketDB.

See tests/helpers.py for the test catalog, actors and groups.
"""

import tempfile

import pytest

from tests.helpers import EDITOR, READER, READERS, USERS, build_catalog
from ticketdb.ticketdb_core.apply.acl import StaticGroupResolver
from ticketdb.ticketdb_core.clock import ManualClock
from ticketdb.ticketdb_core.config import EngineConfig, StorageConfig
from ticketdb.ticketdb_core.engine import Engine
from ticketdb.ticketdb_core.store.database import Database


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def database(data_dir):
    """Initialized database without WAL mode."""
    db = Database(f"{data_dir}/ticketdb.db", wal_mode=False)
    db.initialize()
    return db


@pytest.fixture
def groups():
    return StaticGroupResolver({EDITOR: [USERS], READER: [READERS]})


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine(data_dir, catalog, groups):
    """Started engine on a temporary database."""
    config = EngineConfig(storage=StorageConfig(data_dir=data_dir, wal_mode=False))
    eng = Engine(config, catalog, groups)
    eng.start()
    return eng


@pytest.fixture
def open_acl(engine):
    """ACL granting everything to USERS and READ to READERS."""
    with engine.database.transaction() as conn:
        acl = engine.acls.create(conn, {USERS: 0x1F, READERS: 0x01}, name="open")
    return acl.acl_id


@pytest.fixture
def readonly_acl(engine):
    """ACL granting only READ to USERS."""
    with engine.database.transaction() as conn:
        acl = engine.acls.create(conn, {USERS: 0x01}, name="readonly")
    return acl.acl_id
