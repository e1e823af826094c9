"""PostgreSQL object store for ThreatVault.

Persists STIX revisions in a single JSONB table using asyncpg with
connection pooling. Uniqueness of ``(stix_id, modified)`` is enforced by
the database, and batch inserts run in one transaction.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Union

import asyncpg
from asyncpg import Connection, Pool

from threatvault.core.exceptions import DuplicateVersionError, StoreError
from threatvault.core.models import VersionedObject, Workspace
from threatvault.core.stix import VersionKey, make_key, parse_timestamp
from threatvault.core.types import WorkflowState

from .base import ObjectStore, TypeFilter, matches_filters, normalize_types

logger = logging.getLogger(__name__)


# =============================================================================
# Database Schema SQL
# =============================================================================

STIX_OBJECTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS vault.stix_objects (
    row_id BIGSERIAL PRIMARY KEY,

    -- Revision identity
    stix_id TEXT NOT NULL,
    modified TIMESTAMP WITH TIME ZONE NOT NULL,
    stix_type VARCHAR(100) NOT NULL,

    -- Payload and mutable metadata
    stix JSONB NOT NULL,
    workspace JSONB NOT NULL DEFAULT '{}',

    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,

    CONSTRAINT unique_stix_version UNIQUE (stix_id, modified)
);

CREATE INDEX IF NOT EXISTS idx_stix_objects_stix_id ON vault.stix_objects(stix_id, modified DESC);
CREATE INDEX IF NOT EXISTS idx_stix_objects_type ON vault.stix_objects(stix_type);
"""

REFERENCES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS vault.citation_references (
    source_name TEXT PRIMARY KEY,
    reference JSONB NOT NULL,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
"""

SELECT_COLUMNS = "stix_id, modified, stix, workspace"


class PostgresObjectStore(ObjectStore):
    """PostgreSQL-backed versioned object store.

    Usage:
        async with PostgresObjectStore(database_url) as store:
            await store.insert_many(objects)
            latest = await store.retrieve_latest(stix_id)
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        min_connections: int = 2,
        max_connections: int = 10,
        pool: Optional[Pool] = None,
        **pool_kwargs,
    ):
        super().__init__()
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool_kwargs = pool_kwargs
        self._pool = pool
        self._initialized = False

    @classmethod
    async def create(
        cls,
        database_url: Optional[str] = None,
        min_connections: int = 2,
        max_connections: int = 10,
        **pool_kwargs
    ) -> 'PostgresObjectStore':
        """Create and open a store with its own connection pool.

        Args:
            database_url: PostgreSQL connection string (or from DATABASE_URL env)
            min_connections: Minimum pool connections
            max_connections: Maximum pool connections
            **pool_kwargs: Additional arguments for asyncpg.create_pool

        Returns:
            Opened PostgresObjectStore
        """
        store = cls(database_url, min_connections, max_connections, **pool_kwargs)
        await store.open()
        return store

    async def open(self) -> None:
        if self._pool is None:
            if not self.database_url:
                raise ValueError(
                    "Database URL required. Provide database_url or set DATABASE_URL env var"
                )
            logger.info(
                f"Creating connection pool (min={self.min_connections}, max={self.max_connections})"
            )
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_connections,
                max_size=self.max_connections,
                **self._pool_kwargs
            )
        await self.initialize_schema()
        await super().open()

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Connection pool closed")
        await super().close()

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[Connection]:
        """Acquire a connection from the pool."""
        self._require_open()
        async with self._pool.acquire() as conn:
            yield conn

    async def initialize_schema(self) -> None:
        """Create the schema and table if they don't exist."""
        if self._initialized:
            return

        async with self._pool.acquire() as conn:
            await conn.execute("CREATE SCHEMA IF NOT EXISTS vault")
            await conn.execute(STIX_OBJECTS_TABLE_SQL)
            await conn.execute(REFERENCES_TABLE_SQL)

        self._initialized = True
        logger.info("Object store schema initialized")

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert_many(
        self,
        objects: Sequence[VersionedObject],
        references: Sequence[Dict[str, Any]] = (),
    ) -> None:
        if not objects and not references:
            return

        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    for obj in objects:
                        if obj.key is None:
                            raise StoreError(
                                f"Object {obj.stix.get('id')} has no id or version timestamp"
                            )
                        await conn.execute(
                            """
                            INSERT INTO vault.stix_objects (stix_id, modified, stix_type, stix, workspace)
                            VALUES ($1, $2, $3, $4, $5)
                            """,
                            obj.stix_id,
                            obj.modified_at,
                            obj.stix_type,
                            json.dumps(obj.stix),
                            json.dumps(obj.workspace.to_dict()),
                        )
                    for reference in references:
                        await conn.execute(
                            """
                            INSERT INTO vault.citation_references (source_name, reference)
                            VALUES ($1, $2)
                            ON CONFLICT (source_name)
                            DO UPDATE SET reference = EXCLUDED.reference, updated_at = CURRENT_TIMESTAMP
                            """,
                            reference["source_name"],
                            json.dumps(reference),
                        )
            except asyncpg.UniqueViolationError as e:
                duplicate = _find_duplicate(objects, str(e))
                raise DuplicateVersionError(duplicate.stix_id, duplicate.modified) from e
            except asyncpg.PostgresError as e:
                logger.error(f"Failed to insert batch of {len(objects)} revisions: {e}")
                raise StoreError(f"Failed to insert revisions: {e}") from e

        logger.debug(f"Inserted {len(objects)} revisions and {len(references)} references")

    async def update_workspace(self, stix_id: str, modified: str, workspace: Workspace) -> bool:
        async with self._acquire() as conn:
            result = await conn.execute(
                """
                UPDATE vault.stix_objects SET workspace = $3
                WHERE stix_id = $1 AND modified = $2
                """,
                stix_id,
                parse_timestamp(modified),
                json.dumps(workspace.to_dict()),
            )
        return result != "UPDATE 0"

    # =========================================================================
    # Reads
    # =========================================================================

    async def retrieve_versions(self, stix_id: str) -> List[VersionedObject]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SELECT_COLUMNS} FROM vault.stix_objects
                WHERE stix_id = $1
                ORDER BY modified DESC
                """,
                stix_id,
            )
        return [self._row_to_object(row) for row in rows]

    async def retrieve_version(self, stix_id: str, modified: str) -> Optional[VersionedObject]:
        instant = parse_timestamp(modified)
        if instant is None:
            return None
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {SELECT_COLUMNS} FROM vault.stix_objects
                WHERE stix_id = $1 AND modified = $2
                """,
                stix_id,
                instant,
            )
        return self._row_to_object(row) if row else None

    async def retrieve_references(self, source_names: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        names = list(source_names)
        if not names:
            return {}
        async with self._acquire() as conn:
            rows = await conn.fetch(
                "SELECT source_name, reference FROM vault.citation_references WHERE source_name = ANY($1::text[])",
                names,
            )
        return {
            row["source_name"]: json.loads(row["reference"]) if isinstance(row["reference"], str) else row["reference"]
            for row in rows
        }

    async def retrieve_by_attack_id(self, attack_id: str) -> Optional[VersionedObject]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {SELECT_COLUMNS} FROM vault.stix_objects
                WHERE workspace->>'attack_id' = $1
                ORDER BY modified DESC
                LIMIT 1
                """,
                attack_id,
            )
        return self._row_to_object(row) if row else None

    async def retrieve_versions_bulk(
        self, pairs: Iterable[Sequence[str]]
    ) -> Dict[VersionKey, VersionedObject]:
        ids, instants = [], []
        for stix_id, modified in pairs:
            key = make_key(stix_id, modified)
            if key is not None:
                ids.append(key[0])
                instants.append(key[1])
        if not ids:
            return {}

        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SELECT_COLUMNS} FROM vault.stix_objects s
                JOIN unnest($1::text[], $2::timestamptz[]) AS k(stix_id, modified)
                  ON s.stix_id = k.stix_id AND s.modified = k.modified
                """,
                ids,
                instants,
            )
        found = {}
        for row in rows:
            obj = self._row_to_object(row)
            found[obj.key] = obj
        return found

    async def find(
        self,
        object_type: TypeFilter = None,
        *,
        latest_only: bool = True,
        include_revoked: bool = True,
        include_deprecated: bool = True,
        domain: Optional[str] = None,
        state: Optional[Union[str, WorkflowState]] = None,
        query: Optional[Dict[str, Any]] = None,
    ) -> List[VersionedObject]:
        types = normalize_types(object_type)
        distinct = "DISTINCT ON (stix_id)" if latest_only else ""
        where = "WHERE stix_type = ANY($1::text[])" if types is not None else ""
        args = [sorted(types)] if types is not None else []

        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {distinct} {SELECT_COLUMNS} FROM vault.stix_objects
                {where}
                ORDER BY stix_id, modified DESC
                """,
                *args,
            )

        objects = [self._row_to_object(row) for row in rows]
        return [
            obj
            for obj in objects
            if matches_filters(
                obj,
                include_revoked=include_revoked,
                include_deprecated=include_deprecated,
                domain=domain,
                state=state,
                query=query,
            )
        ]

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _row_to_object(self, row) -> VersionedObject:
        """Convert database row to VersionedObject."""
        stix = row["stix"]
        workspace = row["workspace"]
        return VersionedObject(
            stix=json.loads(stix) if isinstance(stix, str) else stix,
            workspace=Workspace.from_dict(json.loads(workspace) if isinstance(workspace, str) else workspace),
        )


def _find_duplicate(objects: Sequence[VersionedObject], detail: str) -> VersionedObject:
    """Best-effort match of a unique violation back to the offending revision."""
    for obj in objects:
        if obj.stix_id in detail:
            return obj
    return objects[0]
