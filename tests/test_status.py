"""Unit tests for status.py - status aggregation and retry policy."""

from datetime import datetime, timedelta, timezone

from certsync.models import (
    BindingStatus,
    CertificateBinding,
    Condition,
    DestinationStatus,
    SyncPolicy,
    SyncState,
)
from certsync.status import (
    CONDITION_READY,
    CONDITION_SOURCE_READY,
    REASON_ALL_SYNCED,
    REASON_CONFIGURATION_ERROR,
    REASON_DRY_RUN,
    REASON_SOURCE_UNAVAILABLE,
    REASON_SYNC_FAILED,
    aggregate,
    apply_retry_policy,
    not_ready,
    pending_destinations,
    retry_delay,
    set_condition,
    source_unavailable,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
EARLIER = NOW - timedelta(hours=1)


def _binding(make_binding_row, sample_spec, status=None, **spec_extra):
    spec = {
        **sample_spec,
        "destinationRules": [
            {"name": "a", "type": "A", "config": {}},
            {"name": "b", "type": "B", "config": {}},
        ],
        **spec_extra,
    }
    return CertificateBinding.from_row(
        make_binding_row(spec, status=status or {}, generation=3)
    )


class TestSetCondition:
    """Tests for set_condition."""

    def test_adds_missing_condition(self):
        conditions = set_condition([], CONDITION_READY, True, "Ok", "fine", 2, NOW)
        assert len(conditions) == 1
        assert conditions[0].status == "True"
        assert conditions[0].last_transition_time == NOW
        assert conditions[0].observed_generation == 2

    def test_transition_time_kept_when_status_unchanged(self):
        existing = [
            Condition(
                type=CONDITION_READY,
                status="True",
                reason="Old",
                last_transition_time=EARLIER,
            )
        ]
        conditions = set_condition(existing, CONDITION_READY, True, "New", "", 1, NOW)
        assert conditions[0].reason == "New"
        assert conditions[0].last_transition_time == EARLIER

    def test_transition_time_moves_on_flip(self):
        existing = [
            Condition(
                type=CONDITION_READY,
                status="True",
                reason="Ok",
                last_transition_time=EARLIER,
            )
        ]
        conditions = set_condition(existing, CONDITION_READY, False, "Bad", "", 1, NOW)
        assert conditions[0].status == "False"
        assert conditions[0].last_transition_time == NOW

    def test_other_conditions_untouched(self):
        other = Condition(type=CONDITION_SOURCE_READY, status="True", reason="Ok")
        conditions = set_condition([other], CONDITION_READY, True, "Ok", "", 1, NOW)
        assert conditions[0] is other
        assert [c.type for c in conditions] == [CONDITION_SOURCE_READY, CONDITION_READY]


class TestApplyRetryPolicy:
    """Tests for apply_retry_policy."""

    def test_no_retries_configured(self):
        statuses = [DestinationStatus("a", "A", SyncState.FAILED)]
        result = apply_retry_policy(statuses, [], SyncPolicy())
        assert result[0].state == SyncState.FAILED
        assert result[0].retry_count == 1

    def test_retrying_within_budget(self):
        previous = [DestinationStatus("a", "A", SyncState.RETRYING, retry_count=1)]
        statuses = [DestinationStatus("a", "A", SyncState.FAILED)]
        result = apply_retry_policy(statuses, previous, SyncPolicy(max_retries=3))
        assert result[0].state == SyncState.RETRYING
        assert result[0].retry_count == 2

    def test_budget_exhausted(self):
        previous = [DestinationStatus("a", "A", SyncState.RETRYING, retry_count=3)]
        statuses = [DestinationStatus("a", "A", SyncState.FAILED)]
        result = apply_retry_policy(statuses, previous, SyncPolicy(max_retries=3))
        assert result[0].state == SyncState.FAILED
        assert result[0].retry_count == 4

    def test_success_resets_counter(self):
        previous = [DestinationStatus("a", "A", SyncState.RETRYING, retry_count=2)]
        statuses = [DestinationStatus("a", "A", SyncState.SYNCED, last_sync=NOW)]
        result = apply_retry_policy(statuses, previous, SyncPolicy(max_retries=3))
        assert result[0].retry_count == 0

    def test_error_not_retried(self):
        statuses = [DestinationStatus("a", "A", SyncState.ERROR, error="bad")]
        result = apply_retry_policy(statuses, [], SyncPolicy(max_retries=3))
        assert result[0].state == SyncState.ERROR
        assert result[0].retry_count == 0

    def test_last_sync_carried_forward_on_failure(self):
        previous = [DestinationStatus("a", "A", SyncState.SYNCED, last_sync=EARLIER)]
        statuses = [DestinationStatus("a", "A", SyncState.FAILED)]
        result = apply_retry_policy(statuses, previous, SyncPolicy())
        assert result[0].last_sync == EARLIER


class TestRetryDelay:
    """Tests for retry_delay."""

    def test_exponential_from_policy_interval(self):
        policy = SyncPolicy(retry_interval="10s")
        assert retry_delay(policy, 1, 60, 600) == 10
        assert retry_delay(policy, 2, 60, 600) == 20
        assert retry_delay(policy, 4, 60, 600) == 80

    def test_default_interval_and_cap(self):
        assert retry_delay(SyncPolicy(), 1, 60, 600) == 60
        assert retry_delay(SyncPolicy(), 10, 60, 600) == 600


class TestAggregate:
    """Tests for aggregate."""

    def test_all_synced_is_ready(self, make_binding_row, sample_spec):
        binding = _binding(make_binding_row, sample_spec, {"syncCount": 4})
        destinations = [
            DestinationStatus("a", "A", SyncState.SYNCED, last_sync=NOW),
            DestinationStatus("b", "B", SyncState.SYNCED, last_sync=NOW),
        ]

        status = aggregate(binding, destinations, "hash", NOW)

        assert status.ready is True
        assert status.sync_count == 5
        assert status.last_sync_time == NOW
        assert status.observed_generation == 3
        assert status.source_hash == "hash"
        ready = status.get_condition(CONDITION_READY)
        assert ready.status == "True"
        assert ready.reason == REASON_ALL_SYNCED
        assert status.get_condition(CONDITION_SOURCE_READY).status == "True"

    def test_any_failure_is_not_ready(self, make_binding_row, sample_spec):
        binding = _binding(make_binding_row, sample_spec)
        destinations = [
            DestinationStatus("a", "A", SyncState.SYNCED, last_sync=NOW),
            DestinationStatus("b", "B", SyncState.RETRYING, error="x"),
        ]

        status = aggregate(binding, destinations, "hash", NOW)

        assert status.ready is False
        ready = status.get_condition(CONDITION_READY)
        assert ready.reason == REASON_SYNC_FAILED
        assert "b" in ready.message

    def test_dry_run_reason(self, make_binding_row, sample_spec):
        binding = _binding(make_binding_row, sample_spec, dryRun=True)
        destinations = [
            DestinationStatus("a", "A", SyncState.SYNCED),
            DestinationStatus("b", "B", SyncState.SYNCED),
        ]
        status = aggregate(binding, destinations, "hash", NOW)
        assert status.get_condition(CONDITION_READY).reason == REASON_DRY_RUN

    def test_no_destinations_is_ready(self, make_binding_row, sample_spec):
        binding = _binding(make_binding_row, sample_spec)
        assert aggregate(binding, [], "hash", NOW).ready is True


class TestNotReady:
    """Tests for not_ready and pending_destinations."""

    def test_pending_destinations_keep_counters(self, make_binding_row, sample_spec):
        binding = _binding(
            make_binding_row,
            sample_spec,
            BindingStatus(
                destinations=[
                    DestinationStatus(
                        "a", "A", SyncState.FAILED, last_sync=EARLIER, retry_count=2
                    )
                ]
            ).to_dict(),
        )

        pending = pending_destinations(binding)

        assert [d.name for d in pending] == ["a", "b"]
        assert all(d.state == SyncState.PENDING for d in pending)
        assert pending[0].retry_count == 2
        assert pending[0].last_sync == EARLIER
        assert pending[1].retry_count == 0

    def test_not_ready_keeps_sync_count(self, make_binding_row, sample_spec):
        binding = _binding(
            make_binding_row, sample_spec, {"syncCount": 7, "sourceHash": "old"}
        )

        status = not_ready(binding, REASON_CONFIGURATION_ERROR, "broken", NOW)

        assert status.ready is False
        assert status.sync_count == 7
        assert status.source_hash == "old"
        assert status.observed_generation == 3
        ready = status.get_condition(CONDITION_READY)
        assert (ready.status, ready.reason, ready.message) == (
            "False",
            REASON_CONFIGURATION_ERROR,
            "broken",
        )


class TestSourceUnavailable:
    """Tests for source_unavailable."""

    def test_keeps_previous_status(self, make_binding_row, sample_spec):
        previous = BindingStatus(
            ready=True,
            destinations=[
                DestinationStatus("a", "A", SyncState.SYNCED, last_sync=EARLIER),
                DestinationStatus("b", "B", SyncState.SYNCED, last_sync=EARLIER),
            ],
            sync_count=2,
            observed_generation=2,
        )
        binding = _binding(make_binding_row, sample_spec, previous.to_dict())

        status = source_unavailable(binding, "not yet", NOW)

        assert status.ready is True
        assert [d.state for d in status.destinations] == [SyncState.SYNCED] * 2
        assert status.sync_count == 2
        assert status.observed_generation == 2
        source = status.get_condition(CONDITION_SOURCE_READY)
        assert source.status == "False"
        assert source.reason == REASON_SOURCE_UNAVAILABLE

    def test_rules_changed_resets_to_pending(self, make_binding_row, sample_spec):
        previous = BindingStatus(
            destinations=[DestinationStatus("old", "A", SyncState.SYNCED)]
        )
        binding = _binding(make_binding_row, sample_spec, previous.to_dict())

        status = source_unavailable(binding, "not yet", NOW)

        assert [d.name for d in status.destinations] == ["a", "b"]
        assert all(d.state == SyncState.PENDING for d in status.destinations)
