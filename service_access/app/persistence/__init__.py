"""
Persistence package.

Versioned document storage addressed by (collection, key). Every write is
conditioned on the version the writer last read, so concurrent writers
cannot silently overwrite each other.

Modules of interest:
- store: Interface and the in-memory implementation.
- postgres: asyncpg-backed implementation.
"""
