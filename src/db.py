"""
Database Manager - PostgreSQL schema and operations.

Stores desired-state objects, their observed status, credentials records
and the usage edges between them.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from errors import ConflictError
from migrate import run_migrations

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages PostgreSQL database operations for the provider."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Resource Methods ====================

    async def create_resource(
        self, name: str, kind: str, spec: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Create a new desired-state object, due for reconciliation now.

        Args:
            name: Object name, unique per kind
            kind: Resource kind (e.g. 'File')
            spec: Desired state
        """
        if spec is None:
            spec = {}

        async with self.pool.acquire() as conn:
            resource_id = await conn.fetchval(
                """
                INSERT INTO resources (name, kind, spec, next_reconcile_time)
                VALUES ($1, $2, $3, NOW())
                RETURNING id
                """,
                name,
                kind,
                json.dumps(spec),
            )

            logger.info(f"Created {kind} {name} with ID {resource_id}")
            return resource_id

    async def update_resource(self, resource_id: int, spec: Dict[str, Any]) -> int:
        """
        Replace a resource's desired state.

        Bumps generation and resource_version, so a status write racing this
        update fails with ConflictError.

        Returns:
            The new generation.

        Raises:
            ValueError: If the resource does not exist.
        """
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                """
                UPDATE resources
                SET spec = $1,
                    generation = generation + 1,
                    resource_version = resource_version + 1,
                    retry_count = 0,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $2
                RETURNING generation
                """,
                json.dumps(spec),
                resource_id,
            )

            if generation is None:
                raise ValueError(f"Resource {resource_id} not found")

            logger.info(f"Updated resource {resource_id} to generation {generation}")
            return generation

    async def delete_resource(self, resource_id: int) -> bool:
        """
        Mark a resource for deletion (soft delete).

        A resource holding no finalizers has nothing to clean up and is
        removed straight away.

        Returns:
            True if the row was removed, False if it awaits finalization.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE resources
                SET deleted_at = COALESCE(deleted_at, NOW()),
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $1
                """,
                resource_id,
            )
            logger.info(f"Marked resource {resource_id} for deletion")

        return await self.hard_delete_resource(resource_id)

    async def get_resource(self, resource_id: int) -> Optional[Dict[str, Any]]:
        """Get a resource by ID, including one marked for deletion."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM resources WHERE id = $1",
                resource_id,
            )
            if not row:
                return None

            return self._parse_resource_row(row)

    async def get_resource_by_name(
        self, kind: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get a resource by kind and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM resources WHERE kind = $1 AND name = $2",
                kind,
                name,
            )
            if not row:
                return None

            return self._parse_resource_row(row)

    async def list_resources(
        self, kind: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """List resources with an optional kind filter."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM resources WHERE 1=1"
            params = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            param_count += 1
            query += f" ORDER BY created_at DESC LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    async def get_resources_needing_reconciliation(
        self, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get resources that are due, deletions first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM resources
                WHERE next_reconcile_time IS NOT NULL
                  AND next_reconcile_time <= NOW()
                ORDER BY
                    (deleted_at IS NULL),
                    next_reconcile_time ASC
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_resource_row(row) for row in rows]

    async def update_resource_status(
        self, resource_id: int, status: Dict[str, Any], resource_version: int
    ) -> int:
        """
        Write a resource's observed status.

        The write only applies if the stored resource_version still matches
        the one the caller read.

        Returns:
            The new resource_version.

        Raises:
            ConflictError: If the resource changed since it was read.
        """
        async with self.pool.acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE resources
                SET status = $1,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $2 AND resource_version = $3
                RETURNING resource_version
                """,
                json.dumps(status),
                resource_id,
                resource_version,
            )
            if new_version is None:
                raise ConflictError(resource_id, resource_version)
            return new_version

    async def update_connection_details(
        self, resource_id: int, details: Dict[str, str]
    ) -> None:
        """Store the connection details published by the external resource."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE resources
                SET connection_details = $1, updated_at = NOW()
                WHERE id = $2
                """,
                json.dumps(details),
                resource_id,
            )

    async def schedule_reconcile(
        self,
        resource_id: int,
        delay_seconds: Optional[float],
        retry_count: Optional[int] = None,
    ) -> None:
        """
        Record the outcome of a pass and when the next one is due.

        Args:
            resource_id: The resource ID
            delay_seconds: Seconds until the next pass, or None to park the
                resource until it is modified or triggered by hand
            retry_count: Consecutive failed passes so far (None keeps the
                stored count)
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE resources
                SET next_reconcile_time = CASE
                        WHEN $1::float8 IS NULL THEN NULL
                        ELSE NOW() + INTERVAL '1 second' * $1::float8
                    END,
                    last_reconcile_time = NOW(),
                    retry_count = COALESCE($2::int, retry_count)
                WHERE id = $3
                """,
                None if delay_seconds is None else float(delay_seconds),
                retry_count,
                resource_id,
            )

    async def mark_resource_for_reconciliation(self, resource_id: int):
        """Manually trigger reconciliation for a resource."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE resources
                SET next_reconcile_time = NOW()
                WHERE id = $1
                """,
                resource_id,
            )

    async def hard_delete_resource(self, resource_id: int) -> bool:
        """
        Permanently delete a resource from the database.

        Only succeeds if the resource has been soft-deleted (deleted_at set)
        and all finalizers have been removed. Its usage edge goes with it.

        Returns:
            True if the resource was deleted, False if not found,
            not soft-deleted, or finalizers remain
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM resources
                WHERE id = $1
                  AND deleted_at IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                resource_id,
            )
            if result:
                logger.info(f"Hard-deleted resource {resource_id}")
                return True
            return False

    async def add_finalizer(self, resource_id: int, finalizer: str) -> None:
        """
        Add a finalizer to a resource.

        No-op if the finalizer already exists.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE resources
                SET finalizers = CASE
                        WHEN NOT finalizers @> to_jsonb($2::text)
                        THEN finalizers || to_jsonb($2::text)
                        ELSE finalizers
                    END,
                    updated_at = NOW()
                WHERE id = $1
                """,
                resource_id,
                finalizer,
            )

    async def remove_finalizer(self, resource_id: int, finalizer: str) -> None:
        """Remove a finalizer from a resource."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE resources
                SET finalizers = COALESCE(
                        (SELECT jsonb_agg(elem)
                         FROM jsonb_array_elements(finalizers) AS elem
                         WHERE elem #>> '{}' != $2),
                        '[]'::jsonb
                    ),
                    updated_at = NOW()
                WHERE id = $1
                """,
                resource_id,
                finalizer,
            )

    async def get_finalizers(self, resource_id: int) -> List[str]:
        """
        Get the finalizers list for a resource.

        Returns:
            List of finalizer names, or empty list if resource not found
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "SELECT finalizers FROM resources WHERE id = $1",
                resource_id,
            )
            if result is None:
                return []
            return json.loads(result) if isinstance(result, str) else result

    def _parse_resource_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse a resource row from the database, converting JSON fields.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            A dictionary with the resource data, with JSON fields parsed
        """
        result = dict(row)
        for key in ("spec", "status", "connection_details"):
            value = result.get(key)
            if isinstance(value, str):
                result[key] = json.loads(value)
            else:
                result[key] = value or {}
        result["finalizers"] = (
            json.loads(result["finalizers"])
            if isinstance(result.get("finalizers"), str)
            else result.get("finalizers", []) or []
        )
        return result

    # ==================== Provider Config Methods ====================

    async def create_provider_config(
        self,
        name: str,
        address: str,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> int:
        """
        Create a credentials record.

        Args:
            name: Name objects reference it by
            address: 'host' or 'host:port' of the remote host
            username: Login principal
            password: Password secret
            private_key: PEM/OpenSSH private key secret
        """
        async with self.pool.acquire() as conn:
            config_id = await conn.fetchval(
                """
                INSERT INTO provider_configs (name, address, username, password, private_key)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                name,
                address,
                username,
                password,
                private_key,
            )

            logger.info(f"Created provider config {name} with ID {config_id}")
            return config_id

    async def update_provider_config(
        self,
        name: str,
        address: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> bool:
        """
        Update a credentials record. Fields left as None are kept.

        Returns:
            False if no such record exists.
        """
        async with self.pool.acquire() as conn:
            updates = []
            params = []
            param_count = 0

            for column, value in (
                ("address", address),
                ("username", username),
                ("password", password),
                ("private_key", private_key),
            ):
                if value is not None:
                    param_count += 1
                    updates.append(f"{column} = ${param_count}")
                    params.append(value)

            updates.append("updated_at = NOW()")
            param_count += 1
            params.append(name)

            query = (
                f"UPDATE provider_configs SET {', '.join(updates)} "
                f"WHERE name = ${param_count} RETURNING id"
            )
            result = await conn.fetchval(query, *params)
            if result is None:
                return False

            logger.info(f"Updated provider config {name}")
            return True

    async def get_provider_config(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a credentials record by name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM provider_configs WHERE name = $1",
                name,
            )
            if not row:
                return None
            return self._parse_provider_config_row(row)

    async def list_provider_configs(self, limit: int = 100) -> List[Dict[str, Any]]:
        """List credentials records."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM provider_configs ORDER BY name LIMIT $1",
                limit,
            )
            return [self._parse_provider_config_row(row) for row in rows]

    async def delete_provider_config(self, name: str) -> bool:
        """
        Delete a credentials record.

        Returns False if it does not exist or objects still use it.
        """
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM provider_config_usages
                WHERE provider_config_name = $1
                """,
                name,
            )
            if count > 0:
                logger.warning(
                    f"Cannot delete provider config {name}: "
                    f"{count} resources still use it"
                )
                return False

            try:
                result = await conn.fetchval(
                    "DELETE FROM provider_configs WHERE name = $1 RETURNING id",
                    name,
                )
            except asyncpg.ForeignKeyViolationError:
                logger.warning(
                    f"Cannot delete provider config {name}: a resource started using it"
                )
                return False

            if result is None:
                return False
            logger.info(f"Deleted provider config {name}")
            return True

    async def track_provider_config_usage(
        self, resource_id: int, provider_config_name: str
    ) -> None:
        """
        Record that a resource uses a credentials record.

        Idempotent. A record that does not exist is not tracked; the lookup
        that follows reports it as missing.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO provider_config_usages (resource_id, provider_config_name)
                SELECT $1, name FROM provider_configs WHERE name = $2
                ON CONFLICT (resource_id)
                DO UPDATE SET provider_config_name = EXCLUDED.provider_config_name
                """,
                resource_id,
                provider_config_name,
            )

    async def count_provider_config_usages(self, provider_config_name: str) -> int:
        """Count the resources using a credentials record."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM provider_config_usages
                WHERE provider_config_name = $1
                """,
                provider_config_name,
            )

    def _parse_provider_config_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        return dict(row)
