"""Unit tests for main.py - application wiring."""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from certsync.config import Config
from certsync.main import Application, configure_logging
from certsync.plugins.inputs.http import HTTPInputPlugin


@pytest.fixture
def app_config():
    config = Config.default()
    config.kubernetes.kubeconfig = "/etc/kube/config"
    config.plugins.plugin_configs = {"AWSACM": {"region": "eu-west-1"}}
    return config


@pytest.fixture
def patched(fake_registry, metrics):
    db = MagicMock()
    db.connect = AsyncMock()
    db.initialize_schema = AsyncMock()
    db.close = AsyncMock()
    with patch("certsync.main.DatabaseManager", return_value=db) as db_class, patch(
        "certsync.main.KubeClient.from_config"
    ) as from_config, patch(
        "certsync.main.create_registry", return_value=fake_registry
    ) as create_registry, patch(
        "certsync.main.SyncMetrics", return_value=metrics
    ):
        yield {
            "db": db,
            "db_class": db_class,
            "from_config": from_config,
            "create_registry": create_registry,
        }


def test_configure_logging():
    with patch("certsync.main.logging.basicConfig") as basic_config:
        configure_logging("debug")
    assert basic_config.call_args.kwargs["level"] == logging.DEBUG


@pytest.mark.asyncio
class TestApplication:
    """Tests for Application."""

    async def test_initialize_wires_components(self, app_config, patched, metrics):
        app = Application(app_config)

        await app.initialize()

        patched["db"].connect.assert_awaited_once()
        patched["db"].initialize_schema.assert_awaited_once()
        patched["from_config"].assert_called_once_with("/etc/kube/config")
        _, kwargs = patched["create_registry"].call_args
        assert kwargs["plugin_configs"] == {
            "AWSACM": {"region": "eu-west-1"},
            "Kubernetes": {"kubeconfig": "/etc/kube/config"},
        }
        assert app.controller.metrics is metrics
        assert app.controller.db is patched["db"]
        assert len(app.input_plugins) == 1
        http_plugin = app.input_plugins[0]
        assert isinstance(http_plugin, HTTPInputPlugin)
        assert http_plugin.port == app_config.api.port
        assert http_plugin._db_manager is patched["db"]

    async def test_binding_events_trigger_reconciliation(self, app_config, patched):
        app = Application(app_config)
        await app.initialize()
        app.controller.start = AsyncMock()
        app.controller.trigger_reconciliation = AsyncMock()
        captured = {}

        async def fake_start(callback):
            captured["callback"] = callback

        app.input_plugins[0].start = fake_start

        await app.start()
        await captured["callback"]("created", {"id": 4, "name": "web"})
        await captured["callback"]("deleted", {"id": 5, "name": "old"})

        app.controller.trigger_reconciliation.assert_awaited_once_with(4)

    async def test_stop_closes_everything(self, app_config, patched):
        app = Application(app_config)
        await app.initialize()
        app.registry.close = AsyncMock()
        app.running = True

        await app.stop()

        assert app.controller.running is False
        app.registry.close.assert_awaited_once()
        patched["db"].close.assert_awaited_once()

    async def test_stop_when_not_running(self, app_config):
        app = Application(app_config)
        await app.stop()
        assert app.running is False
