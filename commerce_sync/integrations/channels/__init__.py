"""Marketplace channel adapters."""
