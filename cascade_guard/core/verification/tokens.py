"""
Verification Tokens - signed, time-boxed, single-use approvals.

A token is issued when a verification workflow reaches APPROVED and is
bound to (subject_id, operation_kind). It is accepted exactly once and
only before expires_at.
"""

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Set

import structlog

from cascade_guard.core.clock import Clock, SystemClock
from cascade_guard.core.config import Settings, get_settings
from cascade_guard.core.errors import TokenError
from cascade_guard.core.security.models import OperationKind

logger = structlog.get_logger()


@dataclass(frozen=True)
class VerificationToken:
    subject_id: str
    operation_kind: OperationKind
    issued_at: datetime
    expires_at: datetime
    value: str

    @property
    def nonce(self) -> str:
        return self.value.split(".", 1)[0]


class TokenIssuer:
    """
    Issues and redeems verification tokens.

    Token value is `<nonce>.<signature>` where the signature is a sha256 over
    the JSON payload of nonce, binding and expiry plus the secret key.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.secret_key = secret_key or settings.TOKEN_SECRET
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.TOKEN_TTL_SECONDS)
        self.clock = clock or SystemClock()
        self._outstanding: Dict[str, VerificationToken] = {}
        self._by_subject: Dict[str, Set[str]] = {}

    def issue(self, subject_id: str, operation_kind: OperationKind) -> VerificationToken:
        issued_at = self.clock.now()
        expires_at = issued_at + self.ttl
        nonce = secrets.token_urlsafe(16)
        signature = self._sign(nonce, subject_id, operation_kind, expires_at)
        token = VerificationToken(
            subject_id=subject_id,
            operation_kind=operation_kind,
            issued_at=issued_at,
            expires_at=expires_at,
            value=f"{nonce}.{signature}",
        )
        self._outstanding[nonce] = token
        self._by_subject.setdefault(subject_id, set()).add(nonce)
        logger.info(
            "verification_token_issued",
            subject_id=subject_id,
            operation_kind=operation_kind.value,
            expires_at=expires_at.isoformat(),
        )
        return token

    def revoke_subject(self, subject_id: str) -> int:
        """Invalidate every outstanding token for a subject. Returns how many were dropped."""
        nonces = self._by_subject.pop(subject_id, set())
        for nonce in nonces:
            self._outstanding.pop(nonce, None)
        if nonces:
            logger.info("verification_tokens_revoked", subject_id=subject_id, count=len(nonces))
        return len(nonces)

    def consume(self, value: str, subject_id: str, operation_kind: OperationKind) -> VerificationToken:
        """
        Redeem a token.

        Raises:
            TokenError: malformed, forged, unknown/used, wrong binding or expired
        """
        nonce, sep, signature = value.partition(".")
        if not sep or not nonce or not signature:
            raise TokenError("malformed")

        token = self._outstanding.get(nonce)
        if token is None:
            raise TokenError("unknown_or_used")

        expected = self._sign(nonce, token.subject_id, token.operation_kind, token.expires_at)
        if not hmac.compare_digest(expected, signature):
            raise TokenError("bad_signature")

        if token.subject_id != subject_id or token.operation_kind != operation_kind:
            raise TokenError("binding_mismatch")

        self._forget(token)

        if self.clock.now() >= token.expires_at:
            logger.info("verification_token_expired", subject_id=subject_id)
            raise TokenError("expired")

        logger.info("verification_token_consumed", subject_id=subject_id, operation_kind=operation_kind.value)
        return token

    def _forget(self, token: VerificationToken) -> None:
        self._outstanding.pop(token.nonce, None)
        nonces = self._by_subject.get(token.subject_id)
        if nonces is not None:
            nonces.discard(token.nonce)
            if not nonces:
                del self._by_subject[token.subject_id]

    def _sign(self, nonce: str, subject_id: str, operation_kind: OperationKind, expires_at: datetime) -> str:
        payload = {
            "nonce": nonce,
            "subject_id": subject_id,
            "operation_kind": operation_kind.value,
            "expires_at": expires_at.isoformat(),
            "secret": self.secret_key,
        }
        payload_str = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(payload_str.encode()).hexdigest()
