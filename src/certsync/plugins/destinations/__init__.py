"""
Destination plugins package.

Destination plugins deliver certificate material to external systems
(Azure Key Vault, AWS ACM, Kubernetes secret mirrors).
"""

from certsync.plugins.destinations.base import DestinationPlugin

__all__ = ["DestinationPlugin"]
