"""certsync - TLS certificate binding reconciliation controller."""

__version__ = "1.0.0"
