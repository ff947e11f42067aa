"""
Status Aggregator - folds per-destination outcomes into a BindingStatus.

Status is re-derived on every pass. Only counters (syncCount, retryCount)
and timestamps carry over from the previous status.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from certsync.models import (
    BindingStatus,
    CertificateBinding,
    Condition,
    DestinationStatus,
    SyncPolicy,
    SyncState,
    utcnow,
)

logger = logging.getLogger(__name__)

CONDITION_READY = "Ready"
CONDITION_SOURCE_READY = "SourceReady"

REASON_DRY_RUN = "DryRun"
REASON_ALL_SYNCED = "AllDestinationsSynced"
REASON_SYNC_FAILED = "SyncFailed"
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_CONFIGURATION_ERROR = "ConfigurationError"
REASON_RECONCILE_ERROR = "ReconcileError"
REASON_SOURCE_RESOLVED = "SourceResolved"
REASON_SOURCE_UNAVAILABLE = "SourceUnavailable"


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: bool,
    reason: str,
    message: str = "",
    observed_generation: int = 0,
    now: Optional[datetime] = None,
) -> List[Condition]:
    """
    Return a copy of conditions with one condition set.

    lastTransitionTime only moves when the condition's status flips.
    """
    now = now or utcnow()
    status_str = "True" if status else "False"
    updated = []
    found = False

    for condition in conditions:
        if condition.type != condition_type:
            updated.append(condition)
            continue
        found = True
        transition = (
            condition.last_transition_time
            if condition.status == status_str and condition.last_transition_time
            else now
        )
        updated.append(
            Condition(
                type=condition_type,
                status=status_str,
                reason=reason,
                message=message,
                last_transition_time=transition,
                observed_generation=observed_generation,
            )
        )

    if not found:
        updated.append(
            Condition(
                type=condition_type,
                status=status_str,
                reason=reason,
                message=message,
                last_transition_time=now,
                observed_generation=observed_generation,
            )
        )
    return updated


def apply_retry_policy(
    statuses: List[DestinationStatus],
    previous: List[DestinationStatus],
    policy: SyncPolicy,
) -> List[DestinationStatus]:
    """
    Carry retry counters forward and mark failures as Retrying or Failed.

    A failed destination with maxRetries > 0 and attempts left becomes
    Retrying; once the budget is spent it stays Failed. Synced resets the
    counter. Error (pre-dispatch) states are not retried.
    """
    previous_by_name: Dict[str, DestinationStatus] = {s.name: s for s in previous}

    for status in statuses:
        prior = previous_by_name.get(status.name)
        if status.last_sync is None and prior is not None:
            status.last_sync = prior.last_sync

        if status.state == SyncState.SYNCED:
            status.retry_count = 0
        elif status.state in (SyncState.FAILED, SyncState.RETRYING):
            status.retry_count = (prior.retry_count if prior else 0) + 1
            if policy.max_retries > 0 and status.retry_count <= policy.max_retries:
                status.state = SyncState.RETRYING
            else:
                status.state = SyncState.FAILED
        else:
            status.retry_count = 0

    return statuses


def retry_delay(
    policy: SyncPolicy, attempt: int, default_interval: float, max_delay: float
) -> float:
    """Exponential backoff: retryInterval * 2^(attempt-1), capped at max_delay."""
    interval = policy.retry_interval_seconds or default_interval
    return min(interval * (2 ** max(attempt - 1, 0)), max_delay)


def pending_destinations(
    binding: CertificateBinding,
) -> List[DestinationStatus]:
    """One Pending status per rule, keeping counters and timestamps."""
    previous_by_name = {s.name: s for s in binding.status.destinations}
    result = []
    for rule in binding.spec.destination_rules:
        prior = previous_by_name.get(rule.name)
        result.append(
            DestinationStatus(
                name=rule.name,
                type=rule.type,
                state=SyncState.PENDING,
                last_sync=prior.last_sync if prior else None,
                retry_count=prior.retry_count if prior else 0,
            )
        )
    return result


def aggregate(
    binding: CertificateBinding,
    destinations: List[DestinationStatus],
    source_hash: str,
    now: Optional[datetime] = None,
) -> BindingStatus:
    """
    Build the binding status for a pass that reached dispatch.

    Ready is true iff every destination is Synced.
    """
    now = now or utcnow()
    previous = binding.status
    ready = all(d.state == SyncState.SYNCED for d in destinations)
    total = len(destinations)

    if ready and binding.spec.dry_run:
        reason = REASON_DRY_RUN
        message = "Dry run: no destinations were modified"
    elif ready:
        reason = REASON_ALL_SYNCED
        message = f"All {total} destination(s) synced"
    else:
        failed = [d.name for d in destinations if d.state != SyncState.SYNCED]
        reason = REASON_SYNC_FAILED
        message = (
            f"{len(failed)} of {total} destination(s) not synced: {', '.join(failed)}"
        )

    conditions = set_condition(
        previous.conditions,
        CONDITION_SOURCE_READY,
        True,
        REASON_SOURCE_RESOLVED,
        "Source secret resolved and validated",
        binding.generation,
        now,
    )
    conditions = set_condition(
        conditions, CONDITION_READY, ready, reason, message, binding.generation, now
    )

    return BindingStatus(
        ready=ready,
        destinations=destinations,
        last_sync_time=now,
        sync_count=previous.sync_count + 1,
        observed_generation=binding.generation,
        conditions=conditions,
        source_hash=source_hash,
    )


def not_ready(
    binding: CertificateBinding,
    reason: str,
    message: str,
    now: Optional[datetime] = None,
) -> BindingStatus:
    """Build the status for a pass that stopped before dispatch."""
    now = now or utcnow()
    previous = binding.status
    return BindingStatus(
        ready=False,
        destinations=pending_destinations(binding),
        last_sync_time=previous.last_sync_time,
        sync_count=previous.sync_count,
        observed_generation=binding.generation,
        conditions=set_condition(
            previous.conditions,
            CONDITION_READY,
            False,
            reason,
            message,
            binding.generation,
            now,
        ),
        source_hash=previous.source_hash,
    )


def source_unavailable(
    binding: CertificateBinding, message: str, now: Optional[datetime] = None
) -> BindingStatus:
    """Keep the existing status and add an informative SourceReady=False."""
    previous = binding.status
    rule_names = [rule.name for rule in binding.spec.destination_rules]
    if [d.name for d in previous.destinations] == rule_names:
        destinations = list(previous.destinations)
    else:
        destinations = pending_destinations(binding)
    return BindingStatus(
        ready=previous.ready,
        destinations=destinations,
        last_sync_time=previous.last_sync_time,
        sync_count=previous.sync_count,
        observed_generation=previous.observed_generation,
        conditions=set_condition(
            previous.conditions,
            CONDITION_SOURCE_READY,
            False,
            REASON_SOURCE_UNAVAILABLE,
            message,
            binding.generation,
            now,
        ),
        source_hash=previous.source_hash,
    )
