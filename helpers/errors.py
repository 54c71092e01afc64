from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from core.errors import LedgerError

logger = logging.getLogger("user-errors")

_TEMPLATES: dict[str, str] = {
    "validation_error": "The request contains an invalid value.",
    "invalid_user_id": "User id must contain only letters, digits, '_' or '-'.",
    "invalid_attempts": "Attempts must be a whole number between 0 and 100.",
    "invalid_patch": "Only balance, level, xp, attempts and achievements can be updated.",
    "not_found": "The requested record does not exist.",
    "user_not_found": "User not found.",
    "conflict": "The request conflicts with the current state.",
    "session_already_active": "A farming session is already running.",
    "already_claimed_today": "Daily reward already claimed today. Come back tomorrow.",
    "already_referred": "A referral code has already been applied to this account.",
    "self_referral": "You cannot use your own referral code.",
    "invalid_referral_code": "Referral code not found.",
    "referral_cycle": "That user was referred by you and cannot become your referrer.",
    "conflict_or_not_found": "The record is missing or changed concurrently. Reload and retry.",
    "integrity_error": "Stored data could not be verified.",
    "dependency_unavailable": "The service is temporarily unavailable. Please retry shortly.",
    "internal": "Something went wrong. Please try again later.",
}

# context keys safe to show to the caller
_PUBLIC_CONTEXT = {"field", "current", "attempted", "expected", "next_eligible_at", "started_at"}


def error_status(exc: BaseException) -> int:
    if isinstance(exc, LedgerError):
        return exc.status
    return 500


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, LedgerError):
        return exc.kind
    return "internal"


def render_error(exc: BaseException, *, diagnostic: bool = False) -> Dict[str, Any]:
    """Map ``exc`` to a stable public payload ``{error, message, context?, detail?}``."""

    kind = error_kind(exc)
    payload: Dict[str, Any] = {
        "error": kind,
        "message": _TEMPLATES.get(kind, _TEMPLATES["internal"]),
    }
    if isinstance(exc, LedgerError):
        context = {key: value for key, value in exc.context.items() if key in _PUBLIC_CONTEXT}
        if context:
            payload["context"] = context
        if exc.retryable:
            payload["retryable"] = True
    if diagnostic:
        payload["detail"] = f"{type(exc).__name__}: {exc}"
    return payload


def error_response(
    exc: BaseException,
    *,
    diagnostic: bool = False,
    details: Optional[Mapping[str, Any]] = None,
) -> Tuple[int, Dict[str, Any]]:
    """Return ``(status, payload)`` for ``exc`` and log the event."""

    status = error_status(exc)
    payload = render_error(exc, diagnostic=diagnostic)
    meta: Dict[str, Any] = {"kind": payload["error"], "status": status}
    if details:
        meta.update(details)
    if status >= 500:
        logger.error("ERR_USER_SENT", exc_info=exc, extra={"meta": meta})
    else:
        logger.info("ERR_USER_SENT", extra={"meta": meta})
    return status, payload


__all__ = ["error_kind", "error_response", "error_status", "render_error"]
