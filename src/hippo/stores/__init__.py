"""Data stores for the Hippo memory service."""

from hippo.stores.postgres_store import PostgresStore

__all__ = ["PostgresStore"]
