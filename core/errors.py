"""Error taxonomy shared by the ledger core and its adapters."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional


class LedgerError(RuntimeError):
    """Base class for every failure the ledger reports to callers."""

    kind = "internal"
    status = 500
    retryable = False

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})


# ----------------------------------------------------------------------
#   Validation
# ----------------------------------------------------------------------
class ValidationError(LedgerError):
    kind = "validation_error"
    status = 400

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        current: Any = None,
        attempted: Any = None,
        context: Optional[Mapping[str, Any]] = None,
    ):
        ctx: Dict[str, Any] = dict(context or {})
        if field is not None:
            ctx.setdefault("field", field)
        if current is not None:
            ctx.setdefault("current", current)
        if attempted is not None:
            ctx.setdefault("attempted", attempted)
        super().__init__(message, context=ctx)
        self.field = field


class InvalidUserId(ValidationError):
    kind = "invalid_user_id"


class InvalidAttempts(ValidationError):
    kind = "invalid_attempts"


class InvalidPatch(ValidationError):
    kind = "invalid_patch"


# ----------------------------------------------------------------------
#   Lookup
# ----------------------------------------------------------------------
class NotFoundError(LedgerError):
    kind = "not_found"
    status = 404


class UserNotFound(NotFoundError):
    kind = "user_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} not found", context={"user_id": user_id})
        self.user_id = user_id


# ----------------------------------------------------------------------
#   Conflicts
# ----------------------------------------------------------------------
class ConflictError(LedgerError):
    kind = "conflict"
    status = 409


class SessionAlreadyActive(ConflictError):
    kind = "session_already_active"

    def __init__(self, user_id: str, started_at: datetime):
        super().__init__(
            f"farming session already active for {user_id}",
            context={"user_id": user_id, "started_at": started_at.isoformat()},
        )
        self.started_at = started_at


class AlreadyClaimedToday(ConflictError):
    kind = "already_claimed_today"

    def __init__(self, user_id: str, next_eligible_at: datetime):
        super().__init__(
            f"daily reward already claimed by {user_id}",
            context={"user_id": user_id, "next_eligible_at": next_eligible_at.isoformat()},
        )
        self.next_eligible_at = next_eligible_at


class AlreadyReferred(ConflictError):
    kind = "already_referred"

    def __init__(self, user_id: str, referrer_id: str):
        super().__init__(
            f"user {user_id} already has a referrer",
            context={"user_id": user_id, "referrer_id": referrer_id},
        )


class SelfReferral(ConflictError):
    kind = "self_referral"

    def __init__(self, user_id: str):
        super().__init__(
            f"user {user_id} cannot use their own referral code",
            context={"user_id": user_id},
        )


class InvalidReferralCode(ConflictError):
    kind = "invalid_referral_code"

    def __init__(self) -> None:
        super().__init__("referral code does not match any user")


class ReferralCycle(ConflictError):
    kind = "referral_cycle"

    def __init__(self, user_id: str, referrer_id: str):
        super().__init__(
            f"user {referrer_id} was referred by {user_id}",
            context={"user_id": user_id, "referrer_id": referrer_id},
        )


class ConflictOrNotFound(ConflictError):
    kind = "conflict_or_not_found"


# ----------------------------------------------------------------------
#   Data and dependencies
# ----------------------------------------------------------------------
class IntegrityError(LedgerError):
    kind = "integrity_error"
    status = 500


class DependencyUnavailableError(LedgerError):
    kind = "dependency_unavailable"
    status = 503
    retryable = True


IntegrityCheckFailed = IntegrityError
UnderlyingStoreUnavailable = DependencyUnavailableError


__all__ = [
    "AlreadyClaimedToday",
    "AlreadyReferred",
    "ConflictError",
    "ConflictOrNotFound",
    "DependencyUnavailableError",
    "IntegrityCheckFailed",
    "IntegrityError",
    "InvalidAttempts",
    "InvalidPatch",
    "InvalidReferralCode",
    "InvalidUserId",
    "LedgerError",
    "NotFoundError",
    "ReferralCycle",
    "SelfReferral",
    "SessionAlreadyActive",
    "UnderlyingStoreUnavailable",
    "UserNotFound",
    "ValidationError",
]
