"""
Destination Dispatcher - delivers material to every destination rule.

Each rule is evaluated independently with bounded parallelism. A failure in
one destination is captured in that destination's status and never stops
the others; the returned list always matches the rule list one-to-one and
in order.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import List, Optional

from certsync.material import get_certificate_expiry
from certsync.metrics import SyncMetrics
from certsync.models import (
    CertificateBinding,
    DestinationRule,
    DestinationStatus,
    SecretMaterial,
    SyncState,
    utcnow,
)
from certsync.plugins.registry import PluginRegistry
from certsync.source import source_secret_ref

logger = logging.getLogger(__name__)

DRY_RUN_MESSAGE = "Dry Run: No action taken"


class DestinationDispatcher:
    """Fans material out to destination plugins looked up by type tag."""

    def __init__(
        self,
        registry: PluginRegistry,
        metrics: Optional[SyncMetrics] = None,
        max_parallel: int = 4,
    ):
        self.registry = registry
        self.metrics = metrics
        self.max_parallel = max(1, max_parallel)

    async def dispatch(
        self, binding: CertificateBinding, material: SecretMaterial
    ) -> List[DestinationStatus]:
        """
        Sync material to every destination rule of the binding.

        Args:
            binding: The binding being reconciled (rules and dry-run flag).
            material: Validated certificate material.

        Returns:
            One DestinationStatus per rule, in rule order.
        """
        expiry = get_certificate_expiry(material)
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run(rule: DestinationRule) -> DestinationStatus:
            async with semaphore:
                return await self._dispatch_one(binding, rule, material, expiry)

        results = await asyncio.gather(
            *(run(rule) for rule in binding.spec.destination_rules)
        )
        return list(results)

    async def _dispatch_one(
        self,
        binding: CertificateBinding,
        rule: DestinationRule,
        material: SecretMaterial,
        expiry: Optional[datetime],
    ) -> DestinationStatus:
        status = DestinationStatus(name=rule.name, type=rule.type)

        if not self.registry.has_destination_plugin(rule.type):
            status.state = SyncState.ERROR
            status.error = f"unknown destination type: {rule.type}"
            logger.error(
                f"Binding {binding.identity} destination {rule.name}: {status.error}"
            )
            self._record(rule.type, success=False)
            return status

        if binding.spec.dry_run:
            logger.info(
                f"[DRY-RUN] Would sync certificate to destination {rule.name} "
                f"({rule.type}) for binding {binding.identity}"
            )
            status.state = SyncState.SYNCED
            status.error = DRY_RUN_MESSAGE
            status.last_sync = utcnow()
            return status

        start = time.monotonic()
        try:
            plugin = await self.registry.get_destination_plugin(rule.type)
            valid, error = plugin.validate_config(rule.config)
            if not valid:
                status.state = SyncState.ERROR
                status.error = error
                logger.error(
                    f"Binding {binding.identity} destination {rule.name}: {error}"
                )
                self._record(rule.type, success=False)
                return status
            await plugin.sync(material, rule.config)
        except Exception as e:
            status.state = SyncState.FAILED
            status.error = str(e) or type(e).__name__
            logger.error(
                f"Failed to sync binding {binding.identity} to destination "
                f"{rule.name} ({rule.type}): {status.error}"
            )
            self._record(rule.type, success=False)
            return status

        duration = time.monotonic() - start
        status.state = SyncState.SYNCED
        status.last_sync = utcnow()
        self._record(rule.type, success=True, duration=duration)
        if self.metrics is not None and expiry is not None:
            self.metrics.record_expiry(
                binding.namespace, binding.name, rule.name, expiry.timestamp()
            )
        logger.info(
            f"Synced binding {binding.identity} to destination {rule.name} "
            f"({rule.type}) in {duration:.2f}s"
        )
        return status

    async def remove(self, binding: CertificateBinding) -> List[str]:
        """
        Remove material from every destination of a known type.

        Returns:
            Error messages for destinations whose removal failed.
        """
        errors = []
        source = source_secret_ref(binding)
        for rule in binding.spec.destination_rules:
            if not self.registry.has_destination_plugin(rule.type):
                logger.warning(
                    f"Skipping removal for destination {rule.name} of binding "
                    f"{binding.identity}: unknown type {rule.type}"
                )
                continue
            try:
                plugin = await self.registry.get_destination_plugin(rule.type)
                await plugin.delete(rule.config, source)
                logger.info(
                    f"Removed certificate of binding {binding.identity} from "
                    f"destination {rule.name}"
                )
            except Exception as e:
                message = f"{rule.name}: {e}"
                logger.error(
                    f"Failed to remove certificate of binding {binding.identity} "
                    f"from destination {message}"
                )
                errors.append(message)
        return errors

    def _record(
        self, destination_type: str, success: bool, duration: Optional[float] = None
    ) -> None:
        if self.metrics is not None:
            self.metrics.record_sync(destination_type, success, duration)
