"""Unit tests for dispatcher.py - destination fan-out."""

import asyncio

import pytest

from certsync.dispatcher import DRY_RUN_MESSAGE, DestinationDispatcher
from certsync.models import CertificateBinding, SecretRef, SyncState


def _binding(make_binding_row, rules, **spec_extra):
    spec = {
        "sourceSecretRef": {"name": "web-tls", "namespace": "certs"},
        "destinationRules": rules,
        **spec_extra,
    }
    return CertificateBinding.from_row(make_binding_row(spec))


def _rule(name, type_tag, **config):
    return {"name": name, "type": type_tag, "config": config}


@pytest.mark.asyncio
class TestDispatch:
    """Tests for DestinationDispatcher.dispatch."""

    async def test_one_status_per_rule_in_order(
        self, fake_registry, make_binding_row, material
    ):
        binding = _binding(
            make_binding_row,
            [_rule("c", "C"), _rule("a", "A"), _rule("b", "B")],
        )
        dispatcher = DestinationDispatcher(fake_registry)

        statuses = await dispatcher.dispatch(binding, material)

        assert [s.name for s in statuses] == ["c", "a", "b"]
        assert [s.type for s in statuses] == ["C", "A", "B"]
        assert all(s.state == SyncState.SYNCED for s in statuses)
        assert all(s.last_sync is not None for s in statuses)

    async def test_failure_is_isolated(
        self, fake_registry, fake_destination_class, make_binding_row, material
    ):
        fake_registry.register_destination_instance(
            fake_destination_class("B", fail_with="access denied")
        )
        binding = _binding(
            make_binding_row, [_rule("a", "A"), _rule("b", "B"), _rule("c", "C")]
        )

        statuses = await DestinationDispatcher(fake_registry).dispatch(binding, material)

        assert [s.state for s in statuses] == [
            SyncState.SYNCED,
            SyncState.FAILED,
            SyncState.SYNCED,
        ]
        assert statuses[1].error == "access denied"
        assert statuses[1].last_sync is None
        plugin_c = await fake_registry.get_destination_plugin("C")
        assert plugin_c.synced == [material]

    async def test_unexpected_exception_is_failed(
        self, fake_registry, fake_destination_class, make_binding_row, material
    ):
        class Exploding(fake_destination_class):
            async def sync(self, material, config):
                raise RuntimeError()

        fake_registry.register_destination_instance(Exploding("A"))
        binding = _binding(make_binding_row, [_rule("a", "A")])

        statuses = await DestinationDispatcher(fake_registry).dispatch(binding, material)

        assert statuses[0].state == SyncState.FAILED
        assert statuses[0].error == "RuntimeError"

    async def test_unknown_type_is_error(self, fake_registry, make_binding_row, material):
        binding = _binding(make_binding_row, [_rule("x", "Foo"), _rule("a", "A")])

        statuses = await DestinationDispatcher(fake_registry).dispatch(binding, material)

        assert statuses[0].state == SyncState.ERROR
        assert statuses[0].error == "unknown destination type: Foo"
        assert statuses[1].state == SyncState.SYNCED

    async def test_invalid_config_is_error(
        self, fake_registry, fake_destination_class, make_binding_row, material
    ):
        class Strict(fake_destination_class):
            required_config = ["target"]

        plugin = Strict("A")
        fake_registry.register_destination_instance(plugin)
        binding = _binding(make_binding_row, [_rule("a", "A")])

        statuses = await DestinationDispatcher(fake_registry).dispatch(binding, material)

        assert statuses[0].state == SyncState.ERROR
        assert "target" in statuses[0].error
        assert plugin.synced == []

    async def test_dry_run_touches_nothing(
        self, fake_registry, make_binding_row, material
    ):
        binding = _binding(
            make_binding_row, [_rule("a", "A"), _rule("b", "B")], dryRun=True
        )

        statuses = await DestinationDispatcher(fake_registry).dispatch(binding, material)

        for status in statuses:
            assert status.state == SyncState.SYNCED
            assert status.error == DRY_RUN_MESSAGE
        for tag in ("A", "B"):
            plugin = await fake_registry.get_destination_plugin(tag)
            assert plugin.synced == []

    async def test_dry_run_still_flags_unknown_type(
        self, fake_registry, make_binding_row, material
    ):
        binding = _binding(make_binding_row, [_rule("x", "Foo")], dryRun=True)
        statuses = await DestinationDispatcher(fake_registry).dispatch(binding, material)
        assert statuses[0].state == SyncState.ERROR

    async def test_empty_rules(self, fake_registry, make_binding_row, material):
        binding = _binding(make_binding_row, [])
        assert await DestinationDispatcher(fake_registry).dispatch(binding, material) == []

    async def test_parallelism_is_bounded(
        self, fake_registry, fake_destination_class, make_binding_row, material
    ):
        active = 0
        peak = 0

        class Slow(fake_destination_class):
            async def sync(self, material, config):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        fake_registry.register_destination_instance(Slow("A"))
        binding = _binding(make_binding_row, [_rule(f"r{i}", "A") for i in range(6)])

        await DestinationDispatcher(fake_registry, max_parallel=2).dispatch(
            binding, material
        )

        assert peak == 2

    async def test_metrics_recorded(
        self, fake_registry, fake_destination_class, make_binding_row, material, metrics
    ):
        fake_registry.register_destination_instance(
            fake_destination_class("B", fail_with="nope")
        )
        binding = _binding(
            make_binding_row, [_rule("a", "A"), _rule("b", "B"), _rule("x", "Foo")]
        )

        await DestinationDispatcher(fake_registry, metrics).dispatch(binding, material)

        sample = metrics.registry.get_sample_value
        assert sample(
            "certsync_sync_total", {"destination_type": "A", "status": "success"}
        ) == 1.0
        assert sample(
            "certsync_sync_total", {"destination_type": "B", "status": "error"}
        ) == 1.0
        assert sample(
            "certsync_sync_total", {"destination_type": "Foo", "status": "error"}
        ) == 1.0
        assert sample(
            "certsync_sync_duration_seconds_count", {"destination_type": "A"}
        ) == 1.0
        assert sample(
            "certsync_certificate_expiry_seconds",
            {"namespace": "default", "name": "web", "destination": "a"},
        ) is not None
        assert sample(
            "certsync_certificate_expiry_seconds",
            {"namespace": "default", "name": "web", "destination": "b"},
        ) is None


@pytest.mark.asyncio
class TestRemove:
    """Tests for DestinationDispatcher.remove."""

    async def test_removes_known_destinations(
        self, fake_registry, make_binding_row
    ):
        binding = _binding(
            make_binding_row, [_rule("a", "A", target="t1"), _rule("x", "Foo")]
        )

        errors = await DestinationDispatcher(fake_registry).remove(binding)

        assert errors == []
        plugin = await fake_registry.get_destination_plugin("A")
        assert plugin.deleted == [{"target": "t1"}]

    async def test_collects_errors_and_continues(
        self, fake_registry, fake_destination_class, make_binding_row
    ):
        fake_registry.register_destination_instance(
            fake_destination_class("A", fail_with="locked")
        )
        binding = _binding(make_binding_row, [_rule("a", "A"), _rule("b", "B")])

        errors = await DestinationDispatcher(fake_registry).remove(binding)

        assert errors == ["a: locked"]
        plugin_b = await fake_registry.get_destination_plugin("B")
        assert len(plugin_b.deleted) == 1

    async def test_passes_source_secret_to_delete(
        self, fake_registry, make_binding_row
    ):
        binding = _binding(make_binding_row, [_rule("a", "A")])

        await DestinationDispatcher(fake_registry).remove(binding)

        plugin = await fake_registry.get_destination_plugin("A")
        assert plugin.delete_sources == [SecretRef(name="web-tls", namespace="certs")]

    async def test_passes_managed_secret_to_delete(
        self, fake_registry, make_binding_row
    ):
        spec = {
            "certificate": {
                "dnsNames": ["web.example.com"],
                "issuerRef": {"name": "letsencrypt"},
            },
            "destinationRules": [_rule("a", "A")],
        }
        binding = CertificateBinding.from_row(make_binding_row(spec, namespace="apps"))

        await DestinationDispatcher(fake_registry).remove(binding)

        plugin = await fake_registry.get_destination_plugin("A")
        assert plugin.delete_sources == [SecretRef(name="web-tls", namespace="apps")]
