"""Celery task modules for ClubSync."""

# Import submodules so Celery autodiscovery registers tasks.
from . import crm_sync as _crm_sync  # noqa: F401

__all__ = ["_crm_sync"]
