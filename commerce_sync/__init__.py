"""Payment-event reconciliation and multi-marketplace synchronization service."""

__version__ = "0.1.0"
