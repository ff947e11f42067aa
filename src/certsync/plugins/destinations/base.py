"""
Destination Plugin Base - Abstract interface for certificate destinations.

A destination plugin delivers certificate material to one kind of backend
(a vault, a cloud certificate registry, a secret mirror). The dispatcher only
ever talks to this interface; all backend-specific decisions about whether to
import, update or skip live behind sync().
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from certsync.models import SecretMaterial, SecretRef


class DestinationPlugin(ABC):
    """
    Abstract base class for destination plugins.

    The `name` property is the type tag used in destination rules
    (e.g. "AzureKeyVault"). Implementations must make sync() idempotent:
    calling it repeatedly with the same material and config has no side
    effects beyond backend-specific versioning.
    """

    # Config keys that must be present in a destination rule's config
    required_config: List[str] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Type tag identifying this backend kind."""
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

        Called once when the plugin is first requested from the registry.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def exists(self, config: Dict[str, Any]) -> bool:
        """
        Check whether the destination already holds a certificate.

        Must not mutate state. "Not found" is False, not an error.

        Args:
            config: The destination rule's config

        Returns:
            True if the certificate exists at the destination.
        """
        pass

    @abstractmethod
    async def sync(self, material: SecretMaterial, config: Dict[str, Any]) -> None:
        """
        Make the destination's certificate content equal to material.

        Args:
            material: Validated certificate material
            config: The destination rule's config

        Raises:
            DestinationError: If the backend rejected the write.
        """
        pass

    @abstractmethod
    async def delete(
        self, config: Dict[str, Any], source: Optional[SecretRef] = None
    ) -> None:
        """
        Remove the certificate from the destination. Absence is success.

        Args:
            config: The destination rule's config
            source: The binding's source secret, for destinations whose
                name defaults to one derived from it
        """
        pass

    def validate_config(self, config: Dict[str, Any]) -> tuple[bool, Optional[str]]:
        """
        Validate a destination rule's config for this plugin.

        Returns:
            Tuple of (is_valid, error_message). If valid, error_message is None.
        """
        missing = [key for key in self.required_config if not config.get(key)]
        if missing:
            return False, f"{self.name} config must contain: {', '.join(missing)}"
        return True, None

    async def close(self) -> None:
        """Release any clients held by the plugin."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override this method in subclasses to define how the plugin
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
