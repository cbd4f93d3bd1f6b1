"""SQLAlchemy models package."""

from .crm_sync import (  # noqa: F401
    OPEN_SYNC_STATUSES,
    CrmSyncActionTypeEnum,
    CrmSyncQueueEntry,
    CrmSyncStatusEnum,
)
from .membership import (  # noqa: F401
    ClubProgram,
    EnrollmentStatusEnum,
    MembershipEnrollment,
    MembershipTier,
    TierLoyaltyConfig,
    TierPromotion,
)
