"""
HTTP Input Plugin.

This plugin provides a REST API for certificate binding management.
"""

from certsync.plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
