"""Recurring job entrypoints for membership maintenance."""

__all__ = ["membership"]
