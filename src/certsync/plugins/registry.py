"""
Plugin Registry - Discovery and registration of destination plugins.

The registry maps destination type tags to plugin classes and lazily
initialized instances. It is constructed explicitly and handed to the
dispatcher, so tests can register fake plugins without touching globals.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Iterable, List, Optional, Type

from certsync.plugins.destinations.aws_acm import AWSACMPlugin
from certsync.plugins.destinations.azure_keyvault import AzureKeyVaultPlugin
from certsync.plugins.destinations.base import DestinationPlugin
from certsync.plugins.destinations.kubernetes import KubernetesSecretPlugin

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "certsync.destinations"

BUILTIN_DESTINATION_PLUGINS: List[Type[DestinationPlugin]] = [
    AzureKeyVaultPlugin,
    AWSACMPlugin,
    KubernetesSecretPlugin,
]


class PluginRegistry:
    """
    Registry of destination plugins keyed by type tag.

    Handles registration, lazy instantiation and initialization.
    """

    def __init__(self, plugin_configs: Optional[Dict[str, Dict[str, Any]]] = None):
        # Registered plugin classes (not instantiated)
        self._destination_plugins: Dict[str, Type[DestinationPlugin]] = {}

        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self._destination_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized plugin instances
        self._destination_instances: Dict[str, DestinationPlugin] = {}

        # Plugin configurations: environment first, explicit overrides on top
        self._destination_plugin_configs: Dict[str, Dict[str, Any]] = {}
        self._config_overrides = plugin_configs or {}

    # Registration methods

    def register_destination_plugin(
        self, plugin_class: Type[DestinationPlugin]
    ) -> None:
        """
        Register a destination plugin class.

        Args:
            plugin_class: The DestinationPlugin subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._destination_plugins:
            logger.warning(f"Overwriting existing destination plugin: {name}")

        self._destination_plugins[name] = plugin_class
        self._destination_plugin_info[name] = {"name": name, "version": version}
        self._destination_plugin_configs[name] = {
            **plugin_class.load_config_from_env(),
            **self._config_overrides.get(name, {}),
        }
        self._destination_instances.pop(name, None)
        logger.info(f"Registered destination plugin: {name} v{version}")

    def register_destination_instance(self, plugin: DestinationPlugin) -> None:
        """
        Register an already-initialized plugin instance.

        Used to substitute adapters (e.g. in tests) without initialization.
        """
        name = plugin.name
        if name in self._destination_plugins:
            logger.warning(f"Overwriting existing destination plugin: {name}")

        self._destination_plugins[name] = type(plugin)
        self._destination_plugin_info[name] = {
            "name": name,
            "version": plugin.version,
        }
        self._destination_instances[name] = plugin
        logger.info(f"Registered destination plugin instance: {name}")

    def unregister_destination_plugin(self, name: str) -> None:
        self._destination_plugins.pop(name, None)
        self._destination_plugin_info.pop(name, None)
        self._destination_plugin_configs.pop(name, None)
        self._destination_instances.pop(name, None)

    # Instantiation methods

    async def get_destination_plugin(self, name: str) -> DestinationPlugin:
        """
        Get an initialized destination plugin instance.

        Args:
            name: The destination type tag

        Returns:
            An initialized DestinationPlugin instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._destination_plugins:
            available = ", ".join(self._destination_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown destination plugin: {name}. Available plugins: {available}"
            )

        if name not in self._destination_instances:
            plugin = self._destination_plugins[name]()
            await plugin.initialize(self._destination_plugin_configs.get(name, {}))
            self._destination_instances[name] = plugin
            logger.info(f"Initialized destination plugin: {name}")

        return self._destination_instances[name]

    # Discovery methods

    def list_destination_plugins(self) -> List[str]:
        """List all registered destination plugin names."""
        return list(self._destination_plugins.keys())

    def has_destination_plugin(self, name: str) -> bool:
        """Check if a destination plugin is registered."""
        return name in self._destination_plugins

    def get_destination_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered destination plugin.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._destination_plugin_info.get(name)

    def get_destination_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a destination plugin."""
        return self._destination_plugin_configs.get(name, {})

    async def close(self) -> None:
        """Close every initialized plugin instance."""
        for name, plugin in self._destination_instances.items():
            try:
                await plugin.close()
            except Exception as e:
                logger.warning(f"Error closing destination plugin {name}: {e}")
        self._destination_instances.clear()


def discover_destination_plugins() -> List[Type[DestinationPlugin]]:
    """Load third-party destination plugins advertised via entry points."""
    discovered = []
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            discovered.append(ep.load())
        except Exception as e:
            logger.warning(f"Could not load destination plugin {ep.name}: {e}")
    return discovered


def create_registry(
    enabled: Optional[Iterable[str]] = None,
    plugin_configs: Optional[Dict[str, Dict[str, Any]]] = None,
) -> PluginRegistry:
    """
    Build a registry with the built-in and entry-point destination plugins.

    Args:
        enabled: Type tags to keep (empty or None keeps all)
        plugin_configs: Per-plugin configuration overrides keyed by type tag

    Returns:
        A populated PluginRegistry
    """
    registry = PluginRegistry(plugin_configs)
    enabled_set = set(enabled or [])

    candidates = list(BUILTIN_DESTINATION_PLUGINS)
    # Built-ins are also advertised as entry points once installed
    for plugin_class in discover_destination_plugins():
        if plugin_class not in candidates:
            candidates.append(plugin_class)

    for plugin_class in candidates:
        try:
            registry.register_destination_plugin(plugin_class)
        except Exception as e:
            logger.warning(f"Could not register {plugin_class.__name__}: {e}")

    if enabled_set:
        for name in registry.list_destination_plugins():
            if name not in enabled_set:
                registry.unregister_destination_plugin(name)
                logger.info(f"Destination plugin {name} disabled by configuration")

    return registry
