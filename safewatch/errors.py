from dataclasses import dataclass
from enum import Enum


class SafeWatchError(Exception):
    pass


class ApiUnavailableError(RuntimeError):
    pass


class CapabilityDenied(SafeWatchError):
    """Location permission is missing or was revoked. Never retried."""


class StaleSample(SafeWatchError):
    """Marker for a discarded sample; never surfaced to callers."""


class DeliveryFailed(SafeWatchError):
    def __init__(self, address: str, reason: str, *, retryable: bool = True) -> None:
        super().__init__(f"delivery to {address} failed: {reason}")
        self.address = address
        self.reason = reason
        self.retryable = retryable


class DispatchExhausted(SafeWatchError):
    def __init__(self, job_id: str, recipients: int) -> None:
        super().__init__(f"job {job_id}: all {recipients} recipients failed")
        self.job_id = job_id
        self.recipients = recipients


class SyncConflict(SafeWatchError):
    """Conditional remote write rejected; the record already moved on."""


class InvalidTransition(SafeWatchError):
    pass


class AccessDeniedReason(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_CODE = "invalid_code"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    QUOTA_EXHAUSTED = "quota_exhausted"


@dataclass(frozen=True)
class AccessDenied:
    """Returned (not raised) by share resolution."""

    session_id: str
    reason: AccessDeniedReason

    @property
    def message(self) -> str:
        return "This location share is no longer available."
