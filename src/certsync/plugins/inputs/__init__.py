"""
Input plugins package.

Input plugins receive certificate bindings from users and hand them to the
controller through the database.
"""

from certsync.plugins.inputs.base import BindingCallback, InputPlugin

__all__ = ["BindingCallback", "InputPlugin"]
