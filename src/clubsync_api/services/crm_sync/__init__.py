"""CRM sync queue producer and processor."""

from .processor import (
    CrmSyncProcessorMetrics,
    CrmSyncQueueProcessor,
    CrmSyncRunSummary,
    MissingTierError,
    is_permanent_failure,
)
from .producer import CrmSyncQueueProducer

__all__ = [
    "CrmSyncProcessorMetrics",
    "CrmSyncQueueProcessor",
    "CrmSyncQueueProducer",
    "CrmSyncRunSummary",
    "MissingTierError",
    "is_permanent_failure",
]
