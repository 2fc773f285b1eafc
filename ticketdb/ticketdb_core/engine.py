"""
TicketDB engine composition root.

Wires the storage layer, the access gate, the write coordinator and the read
projector from an EngineConfig.

Usage:
    config = EngineConfig.from_env()
    setup_logging(config.observability)
    engine = Engine.from_config(config, groups=StaticGroupResolver({7: [1]}))
    engine.start()

    ctx = OperationContext(actor_id=7)
    ticket = await engine.coordinator.create_entity(ctx, type_id=1, acl_id=1, field_values={...})
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Optional

import json_log_formatter

from .apply.acl import AccessGate, GroupResolver
from .apply.coordinator import WriteCoordinator
from .apply.projector import ReadProjector
from .config import EngineConfig, ObservabilityConfig
from .schema.catalog import FieldCatalog, load_catalog
from .store.acls import AccessControlList, AclStore
from .store.changelog import ChangeLog
from .store.database import Database
from .store.entities import EntityStore
from .store.relations import RelationMaintainer

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Engine:
    """TicketDB engine.

    Owns one instance of every component and shares the catalog, database
    and ACL store between them.

    Attributes:
        config: Engine configuration
        catalog: Frozen field catalog
        database: SQLite database handle
        changelog: Changelog reader/appender
        gate: Access gate
        coordinator: The only entry point for mutations
        projector: The entry point for gated reads
    """

    def __init__(
        self,
        config: EngineConfig,
        catalog: FieldCatalog,
        groups: GroupResolver,
        database: Optional[Database] = None,
    ) -> None:
        if not catalog.frozen:
            raise ValueError("Field catalog must be frozen before the engine is built")

        self.config = config
        self.catalog = catalog
        self.database = database or Database.from_config(config.storage)
        self.changelog = ChangeLog(self.database, page_size=config.changelog.page_size)
        self.acls = AclStore()
        self.entities = EntityStore()
        self.gate = AccessGate(groups, self.acls)
        self.relations = RelationMaintainer(catalog)
        self.coordinator = WriteCoordinator(
            self.database,
            catalog,
            self.gate,
            self.changelog,
            relations=self.relations,
            entities=self.entities,
        )
        self.projector = ReadProjector(
            self.database, catalog, self.gate, self.changelog, entities=self.entities
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        groups: GroupResolver,
        catalog: Optional[FieldCatalog] = None,
    ) -> Engine:
        """Build an engine, loading the catalog from CATALOG_PATH if not given.

        Raises:
            ValueError: If no catalog is given and CATALOG_PATH is not set
        """
        if catalog is None:
            if not config.catalog.catalog_path:
                raise ValueError("CATALOG_PATH must be set when no catalog is given")
            catalog = load_catalog(config.catalog.catalog_path)
        return cls(config, catalog, groups)

    def start(self) -> None:
        """Create the database layout if needed."""
        self.config.log_config()
        self.database.initialize()
        logger.info(
            "TicketDB engine started",
            extra={
                "db_path": str(self.database.path),
                "catalog_fingerprint": self.catalog.fingerprint,
            },
        )

    async def create_acl(
        self, entries: Mapping[int, int], name: Optional[str] = None
    ) -> AccessControlList:
        """Create an ACL. ACL administration is not gated here."""
        with self.database.transaction() as conn:
            return self.acls.create(conn, entries, name)

    async def replace_acl(
        self, acl_id: int, entries: Mapping[int, int], name: Optional[str] = None
    ) -> AccessControlList:
        """Replace all entries of an ACL."""
        with self.database.transaction() as conn:
            return self.acls.replace_entries(conn, acl_id, entries, name)

    async def get_acl(self, acl_id: int) -> AccessControlList:
        with self.database.connect() as conn:
            return self.acls.require(conn, acl_id)
