"""
Certificate Controller - Main reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles each binding's
desired destinations with the certificate material its source provides.
A pass resolves the source, validates it, dispatches to every destination,
aggregates the outcome into status and returns a next-action directive that
the polling loops turn into a schedule.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from certsync import status as status_ops
from certsync.config import ControllerConfig
from certsync.db import FINALIZER, BindingPhase, DatabaseManager
from certsync.dispatcher import DestinationDispatcher
from certsync.errors import (
    ConfigurationError,
    SourceError,
    SourceUnavailable,
    StatusWriteConflict,
    ValidationError,
)
from certsync.material import validate_material
from certsync.metrics import SyncMetrics
from certsync.models import (
    BindingStatus,
    CertificateBinding,
    SyncPolicy,
    SyncState,
    parse_duration,
)
from certsync.plugins.registry import PluginRegistry
from certsync.source import SourceResolver

logger = logging.getLogger(__name__)


class NextAction(Enum):
    """What the trigger substrate should do after a pass."""

    DONE = "done"
    REQUEUE_AFTER = "requeue_after"
    REQUEUE_ON_ERROR = "requeue_on_error"


@dataclass
class ReconcileResult:
    """Outcome of a single reconcile pass."""

    action: NextAction
    requeue_after: Optional[float] = None
    ready: bool = False
    reason: str = ""
    message: str = ""
    status: Optional[BindingStatus] = None
    dispatched: bool = False
    source_changed: bool = False


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Polls the database for due bindings, claims them, runs a pass for each
    and records the outcome. Bindings are reconciled in parallel up to
    max_concurrent_reconciles; a binding is never reconciled twice at once.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: PluginRegistry,
        source_resolver: SourceResolver,
        config: Optional[ControllerConfig] = None,
        metrics: Optional[SyncMetrics] = None,
        dispatcher: Optional[DestinationDispatcher] = None,
    ):
        self.db = db_manager
        self.registry = registry
        self.source_resolver = source_resolver
        self.config = config or ControllerConfig()
        self.metrics = metrics
        self.dispatcher = dispatcher or DestinationDispatcher(
            registry, metrics, self.config.max_parallel_destinations
        )
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False

    async def start(self):
        """Start the reconciliation and requeue loops."""
        logger.info("Starting certificate controller")
        self.running = True

        await self.db.release_stale_claims()

        reconcile_task = asyncio.create_task(self._reconciliation_loop())
        requeue_task = asyncio.create_task(self._requeue_loop())

        try:
            await asyncio.gather(reconcile_task, requeue_task)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller loops after their current iteration."""
        logger.info("Stopping certificate controller")
        self.running = False

    async def _reconciliation_loop(self):
        """Main reconciliation loop - picks up bindings that are due."""
        while self.running:
            try:
                rows = await self.db.get_bindings_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )

                if rows:
                    logger.info(f"Found {len(rows)} bindings needing reconciliation")
                    await asyncio.gather(
                        *(self._reconcile_binding(row) for row in rows),
                        return_exceptions=True,
                    )

                await asyncio.sleep(self.reconcile_interval)

            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(10)

    async def _requeue_loop(self):
        """Puts failed bindings whose retry time lapsed back on a backoff schedule."""
        while self.running:
            try:
                await self.db.requeue_failed_bindings(
                    base_delay=self.config.backoff_base_delay,
                    max_delay=self.config.backoff_max_delay,
                    jitter_factor=self.config.backoff_jitter_factor,
                )
                await asyncio.sleep(30)
            except Exception as e:
                logger.error(f"Error in requeue loop: {e}", exc_info=True)
                await asyncio.sleep(10)

    def _determine_trigger_reason(self, row: Dict[str, Any]) -> str:
        """Determine why this reconciliation was triggered."""
        if row.get("deleted_at") is not None:
            return "deletion"
        elif row.get("last_reconcile_time") is None:
            return "initial"
        elif row.get("generation", 0) > row.get("observed_generation", 0):
            return "spec_change"
        elif row.get("phase") in (
            BindingPhase.FAILED.value,
            BindingPhase.DEGRADED.value,
        ):
            return "retry"
        else:
            return "scheduled"

    async def _reconcile_binding(self, row: Dict[str, Any]):
        """
        Claim, reconcile and reschedule a single binding row.

        Never raises: every failure ends in a phase and a schedule.
        """
        async with self.semaphore:
            binding_id = row["id"]
            identity = f"{row.get('namespace')}/{row.get('name')}"
            start_time = time.monotonic()
            trigger_reason = self._determine_trigger_reason(row)
            retry_count = row.get("retry_count", 0) or 0

            if not await self.db.claim_binding(binding_id):
                logger.debug(f"Binding {identity} already being reconciled")
                return

            try:
                binding = CertificateBinding.from_row(row)

                if row.get("deleted_at") is not None:
                    await self._finalize(binding, start_time, trigger_reason)
                    return

                logger.info(f"Reconciling binding {identity} ({trigger_reason})")
                result = await self.reconcile(binding)
                phase, requeue_after, new_retry_count = self._schedule(
                    binding, result
                )

                await self.db.update_binding_phase(
                    binding_id,
                    phase,
                    message=result.message,
                    observed_generation=binding.generation,
                    requeue_after=requeue_after,
                    retry_count=new_retry_count,
                )

                destinations = result.status.destinations if result.status else []
                synced = sum(1 for d in destinations if d.state == SyncState.SYNCED)
                await self.db.record_reconciliation(
                    binding_id=binding_id,
                    success=result.ready,
                    phase=phase.value,
                    error_message=None if result.ready else result.message,
                    destinations_synced=synced if result.dispatched else 0,
                    destinations_failed=(
                        len(destinations) - synced if result.dispatched else 0
                    ),
                    duration_seconds=time.monotonic() - start_time,
                    trigger_reason=trigger_reason,
                    source_changed=result.source_changed,
                )

            except Exception as e:
                logger.error(f"Error reconciling {identity}: {e}", exc_info=True)
                error_msg = f"Reconciliation error: {e}"
                await self.db.update_binding_phase(
                    binding_id,
                    BindingPhase.FAILED,
                    message=error_msg,
                    requeue_after=self._backoff_delay(retry_count + 1),
                    retry_count=retry_count + 1,
                )

    async def reconcile(self, binding: CertificateBinding) -> ReconcileResult:
        """
        Run one reconcile pass for a binding.

        Resolve the source, validate it, dispatch to destinations, aggregate
        and persist status. Binding-specific errors are turned into status
        and a next action; this method does not raise for them.

        Args:
            binding: The binding to reconcile (status is updated in place
                once persisted).

        Returns:
            The pass outcome with its next-action directive.
        """
        try:
            return await self._reconcile(binding)
        except Exception as e:
            logger.error(
                f"Unexpected error reconciling {binding.identity}: {e}", exc_info=True
            )
            message = f"Reconciliation error: {e}"
            status = status_ops.not_ready(
                binding, status_ops.REASON_RECONCILE_ERROR, message
            )
            try:
                await self._persist_status(binding, status)
            except Exception as persist_error:
                logger.error(
                    f"Could not record error status for {binding.identity}: "
                    f"{persist_error}"
                )
            return ReconcileResult(
                action=NextAction.REQUEUE_ON_ERROR,
                reason=status_ops.REASON_RECONCILE_ERROR,
                message=message,
                status=status,
            )

    async def _reconcile(self, binding: CertificateBinding) -> ReconcileResult:
        previous = binding.status
        policy = binding.spec.sync_policy

        # Step 1: resolve the source material
        try:
            self._check_spec(binding)
            material = await self.source_resolver.resolve(binding)
        except SourceUnavailable as e:
            logger.info(f"Binding {binding.identity}: {e.message}, requeueing")
            status = status_ops.source_unavailable(binding, e.message)
            await self._persist_status(binding, status)
            return ReconcileResult(
                action=NextAction.REQUEUE_AFTER,
                requeue_after=self.config.source_requeue_delay,
                ready=status.ready,
                reason=status_ops.REASON_SOURCE_UNAVAILABLE,
                message=e.message,
                status=status,
            )
        except ConfigurationError as e:
            logger.error(f"Binding {binding.identity} misconfigured: {e.message}")
            status = status_ops.not_ready(
                binding, status_ops.REASON_CONFIGURATION_ERROR, e.message
            )
            await self._persist_status(binding, status)
            return ReconcileResult(
                action=NextAction.REQUEUE_AFTER,
                requeue_after=self.config.error_requeue_delay,
                reason=status_ops.REASON_CONFIGURATION_ERROR,
                message=e.message,
                status=status,
            )
        except SourceError as e:
            logger.error(f"Binding {binding.identity} source error: {e.message}")
            status = status_ops.not_ready(
                binding, status_ops.REASON_RECONCILE_ERROR, e.message
            )
            await self._persist_status(binding, status)
            return ReconcileResult(
                action=NextAction.REQUEUE_ON_ERROR,
                reason=status_ops.REASON_RECONCILE_ERROR,
                message=e.message,
                status=status,
            )

        # Step 2: validate before trusting the material
        try:
            validate_material(material)
        except ValidationError as e:
            logger.error(
                f"Certificate validation failed for binding {binding.identity}: "
                f"{e.message}"
            )
            if self.metrics is not None:
                self.metrics.record_validation_failure(
                    binding.namespace, binding.name, e.reason
                )
            status = status_ops.not_ready(
                binding, status_ops.REASON_VALIDATION_FAILED, e.message
            )
            await self._persist_status(binding, status)
            return self._retry_result(
                binding.retry_count + 1,
                policy,
                status_ops.REASON_VALIDATION_FAILED,
                e.message,
                status,
            )

        source_hash = material.content_hash()
        source_changed = previous.source_hash != source_hash

        # runOnce: nothing to do while the last pass is still current
        if (
            policy.run_once
            and previous.ready
            and previous.observed_generation == binding.generation
            and not source_changed
        ):
            logger.info(
                f"Binding {binding.identity} is runOnce and source is unchanged, "
                f"skipping dispatch"
            )
            return ReconcileResult(
                action=NextAction.DONE,
                ready=True,
                reason=status_ops.REASON_ALL_SYNCED,
                message="Source unchanged since last successful sync",
                status=previous,
            )

        # Step 3: dispatch to every destination
        destinations = await self.dispatcher.dispatch(binding, material)
        destinations = status_ops.apply_retry_policy(
            destinations, previous.destinations, policy
        )

        # Step 4: aggregate
        status = status_ops.aggregate(binding, destinations, source_hash)

        # Step 5: persist
        await self._persist_status(binding, status)

        ready_condition = status.get_condition(status_ops.CONDITION_READY)
        result = self._next_action(binding, status)
        result.reason = ready_condition.reason
        result.message = ready_condition.message
        result.status = status
        result.dispatched = True
        result.source_changed = source_changed
        return result

    def _check_spec(self, binding: CertificateBinding) -> None:
        """Reject specs the API should already have refused."""
        names = [rule.name for rule in binding.spec.destination_rules]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Duplicate destination rule names: {', '.join(duplicates)}"
            )
        try:
            parse_duration(binding.spec.sync_policy.retry_interval)
        except ValueError as e:
            raise ConfigurationError(f"Invalid syncPolicy.retryInterval: {e}")

    def _next_action(
        self, binding: CertificateBinding, status: BindingStatus
    ) -> ReconcileResult:
        policy = binding.spec.sync_policy

        if status.ready:
            if policy.run_once:
                return ReconcileResult(action=NextAction.DONE, ready=True)
            return ReconcileResult(
                action=NextAction.REQUEUE_AFTER,
                requeue_after=self.config.resync_interval,
                ready=True,
            )

        retrying = [d for d in status.destinations if d.state == SyncState.RETRYING]
        failed = [d for d in status.destinations if d.state == SyncState.FAILED]

        if retrying:
            attempt = max(d.retry_count for d in retrying)
            return ReconcileResult(
                action=NextAction.REQUEUE_AFTER,
                requeue_after=status_ops.retry_delay(
                    policy,
                    attempt,
                    self.config.backoff_base_delay,
                    self.config.backoff_max_delay,
                ),
            )
        if failed and policy.max_retries > 0:
            # Retry budget spent; fall back to the periodic resync
            return ReconcileResult(
                action=NextAction.REQUEUE_AFTER,
                requeue_after=self.config.resync_interval,
            )
        if not failed:
            # Only pre-dispatch errors such as unknown destination types
            return ReconcileResult(
                action=NextAction.REQUEUE_AFTER,
                requeue_after=self.config.error_requeue_delay,
            )
        return ReconcileResult(action=NextAction.REQUEUE_ON_ERROR)

    def _retry_result(
        self,
        attempt: int,
        policy: SyncPolicy,
        reason: str,
        message: str,
        status: BindingStatus,
    ) -> ReconcileResult:
        """Bounded retry schedule for failures that block the whole pass."""
        if policy.max_retries <= 0:
            action, delay = NextAction.REQUEUE_ON_ERROR, None
        elif attempt <= policy.max_retries:
            action = NextAction.REQUEUE_AFTER
            delay = status_ops.retry_delay(
                policy,
                attempt,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
            )
        else:
            action, delay = NextAction.REQUEUE_AFTER, self.config.resync_interval

        return ReconcileResult(
            action=action,
            requeue_after=delay,
            reason=reason,
            message=message,
            status=status,
        )

    def _schedule(
        self, binding: CertificateBinding, result: ReconcileResult
    ) -> Tuple[BindingPhase, Optional[float], Optional[int]]:
        """Map a next action onto (phase, requeue_after, retry_count)."""
        if result.ready:
            # runOnce bindings still get a periodic source-change check
            return BindingPhase.READY, self.config.resync_interval, 0

        if result.reason == status_ops.REASON_SOURCE_UNAVAILABLE:
            return BindingPhase.PENDING, result.requeue_after, None

        retry_count = binding.retry_count + 1
        if result.action == NextAction.REQUEUE_ON_ERROR:
            return BindingPhase.FAILED, self._backoff_delay(retry_count), retry_count
        return BindingPhase.DEGRADED, result.requeue_after, retry_count

    def _backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff with jitter for requeue-on-error."""
        delay = min(
            self.config.backoff_base_delay * (2 ** min(retry_count, 10)),
            self.config.backoff_max_delay,
        )
        jitter = self.config.backoff_jitter_factor
        return delay * (1 + random.uniform(-jitter, jitter))

    async def _persist_status(
        self, binding: CertificateBinding, status: BindingStatus
    ) -> None:
        """
        Write status with optimistic concurrency.

        On conflict the binding's current resource_version is re-read and the
        same status is written again. Dispatch is never repeated.
        """
        expected_version = binding.resource_version
        attempts = self.config.status_write_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                binding.resource_version = await self.db.update_binding_status(
                    binding.id, status.to_dict(), expected_version
                )
                binding.status = status
                return
            except StatusWriteConflict:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Status write conflict for binding {binding.identity} "
                    f"(attempt {attempt}/{attempts}), re-reading"
                )
                row = await self.db.get_binding(binding.id)
                if row is None:
                    logger.info(f"Binding {binding.identity} is gone, dropping status")
                    return
                expected_version = row["resource_version"]

    async def _finalize(
        self, binding: CertificateBinding, start_time: float, trigger_reason: str
    ) -> None:
        """Clean up a deleted binding, then drop our finalizer and the row."""
        errors: List[str] = []

        try:
            if await self.source_resolver.delete_certificate(binding):
                logger.info(f"Deleted managed Certificate for {binding.identity}")
        except Exception as e:
            errors.append(f"certificate: {e}")

        if binding.spec.cleanup_on_delete and not binding.spec.dry_run:
            errors.extend(await self.dispatcher.remove(binding))

        if errors:
            message = f"Cleanup failed: {'; '.join(errors)}"
            logger.error(f"Failed to finalize binding {binding.identity}: {message}")
            await self.db.update_binding_phase(
                binding.id,
                BindingPhase.DELETING,
                message=message,
                requeue_after=self.config.error_requeue_delay,
            )
            await self.db.record_reconciliation(
                binding_id=binding.id,
                success=False,
                phase=BindingPhase.DELETING.value,
                error_message=message,
                duration_seconds=time.monotonic() - start_time,
                trigger_reason=trigger_reason,
            )
            return

        await self.db.remove_finalizer(binding.id, FINALIZER)
        remaining = await self.db.get_finalizers(binding.id)
        if not remaining:
            await self.db.hard_delete_binding(binding.id)
            logger.info(f"Finalized and deleted binding {binding.identity}")
        else:
            logger.info(
                f"Finalizer removed for {binding.identity}, waiting on: {remaining}"
            )
            await self.db.update_binding_phase(
                binding.id,
                BindingPhase.DELETING,
                message="Waiting on finalizers",
                requeue_after=self.config.error_requeue_delay,
            )

    async def trigger_reconciliation(self, binding_id: int):
        """Manually trigger reconciliation for a specific binding."""
        logger.info(f"Manually triggering reconciliation for binding {binding_id}")
        await self.db.mark_binding_for_reconciliation(binding_id)
