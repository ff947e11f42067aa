"""
Plugin system for certsync.

Destination plugins deliver certificate material to external systems; input
plugins accept binding definitions from users.
"""

from certsync.plugins.registry import PluginRegistry, create_registry

__all__ = ["PluginRegistry", "create_registry"]
