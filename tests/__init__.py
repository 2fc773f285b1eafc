"""
TicketDB Test Suite.

This package contains:
- unit/: Unit tests (catalog, value stores, changelog, relations, ACLs, config)
- integration/: Integration tests (coordinator and projector on SQLite)
"""
