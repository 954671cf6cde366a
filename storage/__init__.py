"""
Storage Package.

This package manages all data persistence for the fleet monitor.

Modules:
- database: Engine and session management
- models/: ORM models
- repositories/: Data access layer
"""

from storage.database import Database, get_database_url


__all__ = [
    "Database",
    "get_database_url",
]
