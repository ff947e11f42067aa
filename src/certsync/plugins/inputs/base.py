"""
Input Plugin Base - Abstract interface for binding input sources.

Input plugins provide mechanisms for users to submit certificate bindings:
- HTTP API: REST endpoints
- GitOps: Watch Git repositories for binding manifests
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

# Callback type for when bindings are created/updated/deleted
# (event_type: str, binding: dict) -> None
BindingCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins are responsible for receiving binding specifications
    from external sources and notifying the controller of changes.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_binding_event: BindingCallback) -> None:
        """
        Start the input plugin.

        Args:
            on_binding_event: Callback to invoke when binding events occur.
                              First arg is event type ('created', 'updated',
                              'deleted'), second arg is the stored binding.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load plugin-specific configuration from environment variables."""
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """Set the database manager for plugins that need database access."""
        pass

    def set_registry(self, registry: Any) -> None:
        """Set the destination plugin registry for plugins that list it."""
        pass

    def set_metrics(self, metrics: Any) -> None:
        """Set the metrics collector for plugins that expose it."""
        pass
