"""Errors raised by tier provisioning and enrollment workflows."""

from __future__ import annotations

from typing import Sequence
from uuid import UUID


class MembershipError(RuntimeError):
    """Base exception for membership workflow failures."""


class TierNotFoundError(MembershipError):
    """Raised when a tier id does not resolve to a stored tier."""

    def __init__(self, tier_id: UUID) -> None:
        super().__init__(f"Tier {tier_id} not found")
        self.tier_id = tier_id


class ProgramNotFoundError(MembershipError):
    """Raised when a tier references a program that does not exist."""

    def __init__(self, program_id: UUID) -> None:
        super().__init__(f"Program {program_id} not found")
        self.program_id = program_id


class TierAlreadyProvisionedError(MembershipError):
    """Raised when provisioning a tier whose CRM club already exists."""

    def __init__(self, tier_id: UUID, club_id: str) -> None:
        super().__init__(f"Tier {tier_id} is already provisioned as club {club_id}")
        self.tier_id = tier_id
        self.club_id = club_id


class TierProvisioningError(MembershipError):
    """Raised when a CRM step fails; remote resources created so far were compensated.

    ``compensation_failures`` lists deletes that did not succeed and need manual
    cleanup. ``compensated`` lists the CRM ids that were deleted.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        failed_step: str,
        compensation_failures: Sequence[str] = (),
        compensated: Sequence[str] = (),
    ) -> None:
        message = f"Tier provisioning failed at {failed_step}: {cause}"
        if compensation_failures:
            message = f"{message} ({len(compensation_failures)} compensation step(s) failed)"
        super().__init__(message)
        self.cause = cause
        self.failed_step = failed_step
        self.compensation_failures = list(compensation_failures)
        self.compensated = list(compensated)

    @property
    def fully_compensated(self) -> bool:
        return not self.compensation_failures


class TierPersistenceError(MembershipError):
    """Raised when CRM resources exist but the local records could not be saved.

    No remote rollback is attempted; the ids are carried for manual reconciliation.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        club_id: str,
        promotion_ids: Sequence[str],
        loyalty_tier_id: str | None = None,
    ) -> None:
        super().__init__(f"CRM resources created for club {club_id} but local persistence failed: {cause}")
        self.cause = cause
        self.club_id = club_id
        self.promotion_ids = list(promotion_ids)
        self.loyalty_tier_id = loyalty_tier_id


class EnrollmentError(MembershipError):
    """Raised when an enrollment transition is not allowed."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


__all__ = [
    "EnrollmentError",
    "MembershipError",
    "ProgramNotFoundError",
    "TierAlreadyProvisionedError",
    "TierNotFoundError",
    "TierPersistenceError",
    "TierProvisioningError",
]
