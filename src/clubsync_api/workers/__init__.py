"""Background workers supporting async processing."""

from .enrollment_expiration import EnrollmentExpirationWorker

__all__ = ["EnrollmentExpirationWorker"]
