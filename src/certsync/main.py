"""
Main entry point for the certsync controller.

This module wires the database, Kubernetes client, destination plugins and
HTTP API together and runs the reconciliation loops until signalled.
"""

import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional

from certsync.config import Config, get_config
from certsync.controller import Controller
from certsync.db import DatabaseManager
from certsync.kube import KubeClient
from certsync.metrics import SyncMetrics
from certsync.plugins.inputs.base import InputPlugin
from certsync.plugins.inputs.http import HTTPInputPlugin
from certsync.plugins.registry import PluginRegistry, create_registry
from certsync.source import SourceResolver

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.registry: Optional[PluginRegistry] = None
        self.metrics: Optional[SyncMetrics] = None
        self.controller: Optional[Controller] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing certsync")

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        kube = KubeClient.from_config(self.config.kubernetes.kubeconfig)

        # Kubernetes mirrors target the same cluster unless overridden
        plugin_configs: Dict[str, Dict[str, Any]] = {
            name: dict(values)
            for name, values in self.config.plugins.plugin_configs.items()
        }
        if self.config.kubernetes.kubeconfig:
            plugin_configs.setdefault("Kubernetes", {}).setdefault(
                "kubeconfig", self.config.kubernetes.kubeconfig
            )

        self.registry = create_registry(
            enabled=self.config.plugins.enabled_destination_plugins,
            plugin_configs=plugin_configs,
        )
        logger.info(
            "Destination plugins: "
            f"{', '.join(self.registry.list_destination_plugins()) or 'none'}"
        )

        self.metrics = SyncMetrics()

        self.controller = Controller(
            db_manager=self.db,
            registry=self.registry,
            source_resolver=SourceResolver(kube),
            config=self.config.controller,
            metrics=self.metrics,
        )

        http_plugin = HTTPInputPlugin()
        http_config = HTTPInputPlugin.load_config_from_env()
        http_config.update(
            {
                "host": self.config.api.host,
                "port": self.config.api.port,
                "log_level": self.config.api.log_level,
            }
        )
        await http_plugin.initialize(http_config)
        http_plugin.set_db_manager(self.db)
        http_plugin.set_registry(self.registry)
        http_plugin.set_metrics(self.metrics)
        self.input_plugins.append(http_plugin)

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting certsync")

        async def on_binding_event(event_type: str, binding: Dict[str, Any]):
            logger.debug(
                f"Binding event: {event_type} - "
                f"{binding.get('namespace')}/{binding.get('name')}"
            )
            if event_type in ("created", "updated"):
                await self.controller.trigger_reconciliation(binding["id"])

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(on_binding_event)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping certsync")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.registry:
            await self.registry.close()

        if self.db:
            await self.db.close()

        logger.info("certsync stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.api.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
