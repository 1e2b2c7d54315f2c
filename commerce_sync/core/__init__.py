"""Core reconciliation and synchronization logic."""
