"""
Test catalog and identities shared by the TicketDB tests.

The test catalog models a small parts tracker:

    kit  (type 1): title, priority, estimate, price, external_id, status,
                   contains, tags, serial, see_also
    part (type 2): title, priority, price, contained_in, tags

title has a sub-facet field (title_note) that is visible wherever title is.

Actors and groups:
    EDITOR (7) in USERS (1)   -> CRUD + MAIL on the open ACL
    READER (8) in READERS (2) -> READ on the open ACL
    STRANGER (9) in no group
"""

from ticketdb.ticketdb_core.schema.catalog import FieldCatalog
from ticketdb.ticketdb_core.schema.types import EntityTypeDef, field

EDITOR = 7
READER = 8
STRANGER = 9
USERS = 1
READERS = 2

KIT = 1
PART = 2

TITLE = 1
PRIORITY = 2
ESTIMATE = 3
PRICE = 4
EXTERNAL_ID = 5
STATUS = 6
CONTAINS = 7
CONTAINED_IN = 8
TAGS = 9
SERIAL = 10
SEE_ALSO = 11
TITLE_NOTE = 12


def build_catalog() -> FieldCatalog:
    catalog = FieldCatalog()
    for definition in (
        field(TITLE, "title", "text", required=True, sortable=True, max_length=200),
        field(PRIORITY, "priority", "int", sortable=True, ordering=2),
        field(ESTIMATE, "estimate", "float", ordering=3),
        field(PRICE, "price", "amount", ordering=4),
        field(EXTERNAL_ID, "external_id", "uuid", ordering=5),
        field(STATUS, "status", "category", ordering=6),
        field(CONTAINS, "contains", "relation", array=True, counted=True, reverse_of=CONTAINED_IN, ordering=7),
        field(CONTAINED_IN, "contained_in", "relation", array=True, counted=True, reverse_of=CONTAINS, ordering=8),
        field(TAGS, "tags", "category", array=True, ordering=9),
        field(SERIAL, "serial", "text", create_only=True, ordering=10),
        field(SEE_ALSO, "see_also", "relation", ordering=11),
        field(TITLE_NOTE, "title_note", "text", parent_field_id=TITLE, ordering=1.5),
    ):
        catalog.register_field(definition)
    catalog.register_entity_type(
        EntityTypeDef(
            type_id=KIT,
            name="kit",
            field_ids=(TITLE, PRIORITY, ESTIMATE, PRICE, EXTERNAL_ID, STATUS, CONTAINS, TAGS, SERIAL, SEE_ALSO),
        )
    )
    catalog.register_entity_type(
        EntityTypeDef(type_id=PART, name="part", field_ids=(TITLE, PRIORITY, PRICE, CONTAINED_IN, TAGS))
    )
    catalog.freeze()
    return catalog
