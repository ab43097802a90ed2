"""
Cascade Guard - Exceptions
==========================

Every error raised by the package derives from CascadeGuardError.
"""

from typing import Any, Optional


class CascadeGuardError(Exception):
    """Base error for the package."""


class PolicyDeniedError(CascadeGuardError):
    """The security policy refused an operation."""

    def __init__(self, reason_code: Any, detail: Optional[str] = None):
        self.reason_code = reason_code
        self.detail = detail
        code = getattr(reason_code, "value", reason_code)
        message = f"Operation denied: {code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


# ==========================================================================
# Verification
# ==========================================================================

class VerificationError(CascadeGuardError):
    """Base error for the verification workflow."""


class VerificationClosedError(VerificationError):
    """Input submitted to a workflow that is no longer accepting it."""

    def __init__(self, state: Any):
        self.state = state
        super().__init__(f"Verification workflow is closed (state={getattr(state, 'value', state)})")


class TokenError(VerificationError):
    """Verification token rejected."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Verification token rejected: {reason}")


# ==========================================================================
# Transport
# ==========================================================================

class TransportError(CascadeGuardError):
    """Misuse of the realtime transport."""


# ==========================================================================
# Rollback
# ==========================================================================

class RollbackOrderError(CascadeGuardError):
    """A reversal was requested out of LIFO order."""

    def __init__(self, operation_id: str, update_id: str, expected_id: Optional[str]):
        self.operation_id = operation_id
        self.update_id = update_id
        self.expected_id = expected_id
        super().__init__(
            f"Update {update_id} is not the top of the rollback stack for "
            f"operation {operation_id} (top={expected_id})"
        )


class RollbackError(CascadeGuardError):
    """Reversal of a cache key failed."""

    def __init__(self, cache_key: Any, cause: BaseException):
        self.cache_key = cache_key
        self.cause = cause
        super().__init__(f"Failed to revert {cache_key!r}: {cause}")


# ==========================================================================
# Backend API
# ==========================================================================

class DeletionApiError(CascadeGuardError):
    """Non-2xx response (or transport failure) from the deletion API."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        recoverable: bool = False,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.recoverable = recoverable
        super().__init__(f"[{code}] {message}")
