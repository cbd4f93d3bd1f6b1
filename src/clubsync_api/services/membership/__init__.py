"""Membership tier provisioning and enrollment services."""

from .enrollments import EnrollmentService  # noqa: F401
from .errors import (  # noqa: F401
    EnrollmentError,
    MembershipError,
    ProgramNotFoundError,
    TierAlreadyProvisionedError,
    TierNotFoundError,
    TierPersistenceError,
    TierProvisioningError,
)
from .provisioning import TierDeprovisionResult, TierProvisionResult, TierProvisioningSaga  # noqa: F401
from .store import (  # noqa: F401
    MembershipStateStore,
    ProvisionedLoyalty,
    ProvisionedPromotion,
    SqlAlchemyStateStore,
)
