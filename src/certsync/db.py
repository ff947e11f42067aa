"""
Database Manager - PostgreSQL storage for certificate bindings.

Stores binding specs, their observed status and reconciliation history, and
acts as the trigger substrate: the controller polls it for bindings that are
due and claims them so a binding is never reconciled twice at once.
"""

import hashlib
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import asyncpg

from certsync.errors import StatusWriteConflict
from certsync.migrate import run_migrations

logger = logging.getLogger(__name__)

FINALIZER = "certsync"


class BindingPhase(Enum):
    """Lifecycle phase of a binding row."""

    PENDING = "pending"
    RECONCILING = "reconciling"
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"
    DELETING = "deleting"


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

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
            command_timeout=60,
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
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Binding CRUD ====================

    async def create_binding(
        self,
        name: str,
        namespace: str,
        spec: Dict[str, Any],
        finalizers: Optional[List[str]] = None,
    ) -> int:
        """
        Create a new certificate binding.

        Args:
            name: Binding name, unique within its namespace
            namespace: Binding namespace
            spec: Binding spec in wire (camelCase) form
            finalizers: Initial finalizers (defaults to the controller's own)

        Returns:
            The new binding ID.
        """
        if finalizers is None:
            finalizers = [FINALIZER]

        spec_hash = self._calculate_spec_hash(spec)

        async with self.pool.acquire() as conn:
            binding_id = await conn.fetchval(
                """
                INSERT INTO certificate_bindings (
                    name, namespace, spec, spec_hash, phase,
                    next_reconcile_time, finalizers
                )
                VALUES ($1, $2, $3, $4, $5, NOW(), $6)
                RETURNING id
                """,
                name,
                namespace,
                json.dumps(spec),
                spec_hash,
                BindingPhase.PENDING.value,
                json.dumps(finalizers),
            )

            logger.info(f"Created binding {namespace}/{name} with ID {binding_id}")
            return binding_id

    async def update_binding(self, binding_id: int, spec: Dict[str, Any]) -> int:
        """
        Replace a binding's spec.

        The generation only moves when the spec actually changed.

        Returns:
            The binding's generation after the update.

        Raises:
            ValueError: If the binding does not exist.
        """
        new_spec_hash = self._calculate_spec_hash(spec)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT spec_hash, generation FROM certificate_bindings
                WHERE id = $1 AND deleted_at IS NULL
                """,
                binding_id,
            )
            if not row:
                raise ValueError(f"Binding {binding_id} not found")

            if row["spec_hash"] == new_spec_hash:
                return row["generation"]

            new_generation = row["generation"] + 1
            await conn.execute(
                """
                UPDATE certificate_bindings
                SET spec = $1,
                    spec_hash = $2,
                    generation = $3,
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $4
                """,
                json.dumps(spec),
                new_spec_hash,
                new_generation,
                binding_id,
            )

            logger.info(f"Updated binding {binding_id} to generation {new_generation}")
            return new_generation

    async def delete_binding(self, binding_id: int):
        """Mark a binding for deletion (soft delete)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE certificate_bindings
                SET phase = $1,
                    deleted_at = NOW(),
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW()
                WHERE id = $2 AND deleted_at IS NULL
                """,
                BindingPhase.DELETING.value,
                binding_id,
            )

            logger.info(f"Marked binding {binding_id} for deletion")

    async def get_binding(self, binding_id: int) -> Optional[Dict[str, Any]]:
        """Get a binding by ID."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM certificate_bindings WHERE id = $1", binding_id
            )
            if not row:
                return None
            return self._parse_binding_row(row)

    async def get_binding_by_name(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get a live binding by namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM certificate_bindings
                WHERE namespace = $1 AND name = $2 AND deleted_at IS NULL
                """,
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_binding_row(row)

    async def list_bindings(
        self,
        namespace: Optional[str] = None,
        phase: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List bindings with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM certificate_bindings WHERE deleted_at IS NULL"
            params = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if phase:
                param_count += 1
                query += f" AND phase = ${param_count}"
                params.append(phase)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_binding_row(row) for row in rows]

    # ==================== Reconciliation substrate ====================

    async def get_bindings_needing_reconciliation(
        self, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get bindings that are due for a reconcile pass.

        A binding is due when it was never reconciled, its spec changed, its
        scheduled requeue time has passed, or it is being deleted. Bindings
        with a pass in flight are skipped.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM certificate_bindings
                WHERE (
                    -- Never reconciled
                    last_reconcile_time IS NULL
                    -- Spec changed
                    OR (generation > observed_generation AND deleted_at IS NULL)
                    -- Requeue time reached (includes deletion retries)
                    OR next_reconcile_time <= NOW()
                  )
                  AND phase != 'reconciling'
                ORDER BY
                    CASE phase
                        WHEN 'deleting' THEN 0
                        WHEN 'pending' THEN 1
                        WHEN 'failed' THEN 2
                        ELSE 3
                    END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_binding_row(row) for row in rows]

    async def claim_binding(self, binding_id: int) -> bool:
        """
        Move a binding into the reconciling phase.

        Returns:
            False if another pass already holds it.
        """
        async with self.pool.acquire() as conn:
            claimed = await conn.fetchval(
                """
                UPDATE certificate_bindings
                SET phase = $1, status_message = 'Starting reconciliation'
                WHERE id = $2 AND phase != $1
                RETURNING id
                """,
                BindingPhase.RECONCILING.value,
                binding_id,
            )
            return claimed is not None

    async def release_stale_claims(self) -> int:
        """Return bindings left in 'reconciling' by a crashed process to the queue."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE certificate_bindings
                SET phase = CASE WHEN deleted_at IS NULL THEN 'pending'
                                 ELSE 'deleting' END,
                    next_reconcile_time = NOW()
                WHERE phase = 'reconciling'
                """
            )
            count = int(result.split()[-1]) if result else 0
            if count:
                logger.info(f"Released {count} stale reconciliation claim(s)")
            return count

    async def update_binding_status(
        self, binding_id: int, status: Dict[str, Any], expected_version: int
    ) -> int:
        """
        Write a binding's status if nobody else wrote the binding meanwhile.

        Args:
            binding_id: The binding ID
            status: Status in wire (camelCase) form
            expected_version: resource_version the status was derived from

        Returns:
            The new resource_version.

        Raises:
            StatusWriteConflict: If resource_version no longer matches.
        """
        async with self.pool.acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE certificate_bindings
                SET status = $1,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $2 AND resource_version = $3
                RETURNING resource_version
                """,
                json.dumps(status),
                binding_id,
                expected_version,
            )
            if new_version is None:
                raise StatusWriteConflict(binding_id, expected_version)
            return new_version

    async def update_binding_phase(
        self,
        binding_id: int,
        phase: BindingPhase,
        message: Optional[str] = None,
        observed_generation: Optional[int] = None,
        requeue_after: Optional[float] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        """
        Record the end of a pass: phase, schedule and retry bookkeeping.

        Args:
            binding_id: The binding ID
            phase: Phase to move to
            message: Human-readable status message
            observed_generation: Generation the pass reconciled
            requeue_after: Seconds until the next pass (None keeps the schedule)
            retry_count: New binding-level retry counter (None keeps it)
        """
        async with self.pool.acquire() as conn:
            updates = ["phase = $1", "status_message = $2", "updated_at = NOW()"]
            params: List[Any] = [phase.value, message]
            param_count = 2

            if phase != BindingPhase.RECONCILING:
                updates.append("last_reconcile_time = NOW()")

            if observed_generation is not None:
                param_count += 1
                updates.append(f"observed_generation = ${param_count}")
                params.append(observed_generation)

            if requeue_after is not None:
                param_count += 1
                updates.append(
                    f"next_reconcile_time = NOW() + "
                    f"INTERVAL '1 second' * ${param_count}::float8"
                )
                params.append(float(requeue_after))

            if retry_count is not None:
                param_count += 1
                updates.append(f"retry_count = ${param_count}")
                params.append(retry_count)

            param_count += 1
            params.append(binding_id)

            query = (
                f"UPDATE certificate_bindings SET {', '.join(updates)} "
                f"WHERE id = ${param_count}"
            )
            await conn.execute(query, *params)

    async def record_reconciliation(
        self,
        binding_id: int,
        success: bool,
        phase: str,
        error_message: Optional[str] = None,
        destinations_synced: int = 0,
        destinations_failed: int = 0,
        duration_seconds: Optional[float] = None,
        trigger_reason: Optional[str] = None,
        source_changed: bool = False,
    ):
        """Record a reconcile pass in history."""
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                "SELECT generation FROM certificate_bindings WHERE id = $1",
                binding_id,
            )
            if generation is None:
                # Hard-deleted during the pass
                return

            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    binding_id, generation, success, phase, error_message,
                    destinations_synced, destinations_failed,
                    duration_seconds, trigger_reason, source_changed
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                binding_id,
                generation,
                success,
                phase,
                error_message,
                destinations_synced,
                destinations_failed,
                duration_seconds,
                trigger_reason,
                source_changed,
            )

    async def requeue_failed_bindings(
        self,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ):
        """
        Push failed bindings whose retry time passed onto a backoff schedule.

        Args:
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            jitter_factor: Jitter factor ±X to spread retries out
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE certificate_bindings
                SET next_reconcile_time = NOW() + (
                    INTERVAL '1 second' * LEAST(
                        $1 * POWER(2, LEAST(retry_count, 10)),
                        $2
                    ) * (1 + (random() * 2 - 1) * $3)
                )
                WHERE phase = 'failed'
                  AND (next_reconcile_time IS NULL OR next_reconcile_time < NOW())
                """,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def mark_binding_for_reconciliation(self, binding_id: int):
        """Manually trigger reconciliation for a binding."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE certificate_bindings
                SET next_reconcile_time = NOW()
                WHERE id = $1
                """,
                binding_id,
            )

    async def get_reconciliation_history(
        self, binding_id: int, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a binding, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE binding_id = $1
                ORDER BY reconcile_time DESC
                LIMIT $2
                """,
                binding_id,
                limit,
            )

            return [dict(row) for row in rows]

    # ==================== Finalizers ====================

    async def hard_delete_binding(self, binding_id: int) -> bool:
        """
        Permanently delete a binding.

        Only succeeds once the binding is soft-deleted and has no finalizers.
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM certificate_bindings
                WHERE id = $1
                  AND deleted_at IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                binding_id,
            )
            if result:
                logger.info(f"Hard-deleted binding {binding_id}")
                return True
            return False

    async def remove_finalizer(self, binding_id: int, finalizer: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE certificate_bindings
                SET finalizers = COALESCE(
                        (SELECT jsonb_agg(elem)
                         FROM jsonb_array_elements(finalizers) AS elem
                         WHERE elem #>> '{}' != $2),
                        '[]'::jsonb
                    ),
                    updated_at = NOW()
                WHERE id = $1
                """,
                binding_id,
                finalizer,
            )

    async def get_finalizers(self, binding_id: int) -> List[str]:
        """Finalizers of a binding, or an empty list if it is gone."""
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "SELECT finalizers FROM certificate_bindings WHERE id = $1",
                binding_id,
            )
            if result is None:
                return []
            return json.loads(result) if isinstance(result, str) else result

    # ==================== Helpers ====================

    def _parse_binding_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Convert a binding row into a plain dict with JSON columns decoded.

        asyncpg returns jsonb columns as strings unless a codec is set.
        """
        result = dict(row)
        for key, default in (("spec", {}), ("status", {}), ("finalizers", [])):
            value = result.get(key)
            if isinstance(value, str):
                result[key] = json.loads(value)
            elif value is None:
                result[key] = default
        return result

    def _calculate_spec_hash(self, spec: Dict[str, Any]) -> str:
        """Calculate a hash of the binding spec for change detection."""
        spec_string = json.dumps(spec, sort_keys=True)
        return hashlib.sha256(spec_string.encode()).hexdigest()
