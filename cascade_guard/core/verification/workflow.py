"""
Verification Workflow - async driver around the pure state machine.

Runs the ordered confirmation steps for one deletion, enforces the
countdown, talks to the external verifiers and issues the verification
token on approval.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

import structlog

from cascade_guard.core.audit import AuditEvent, AuditEventType, AuditSeverity
from cascade_guard.core.clock import Scheduler, TimerHandle
from cascade_guard.core.errors import PolicyDeniedError, VerificationClosedError
from cascade_guard.core.security.models import OperationKind
from cascade_guard.core.security.policy_store import SecurityPolicyStore
from cascade_guard.core.verification.machine import (
    Cancel,
    Expire,
    Start,
    StepFailed,
    StepSucceeded,
    VerificationEvent,
    VerificationState,
    WorkflowStatus,
    initial_state,
    transition,
)
from cascade_guard.core.verification.steps import ImpactItem, StepId, impact_items, steps_for
from cascade_guard.core.verification.tokens import TokenIssuer, VerificationToken
from cascade_guard.core.verification.verifiers import BiometricVerifier, PasswordVerifier

logger = structlog.get_logger()

StateListener = Callable[[VerificationState], None]


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step submission."""
    step: StepId
    success: bool
    state: VerificationState
    error: Optional[str] = None


class VerificationWorkflow:
    """
    Multi-step confirmation for one destructive operation.

    Usage:
        workflow = VerificationWorkflow(store, issuer, scheduler, OperationKind.CASCADE,
                                        entity_id="s1", display_name="Dana Levi",
                                        password_verifier=verifier)
        await workflow.start()
        await workflow.submit_password("secret")
        await workflow.submit_typed_name("Dana Levi")
        await workflow.submit_impact(item.id for item in workflow.impact_items)
        token = workflow.token
    """

    def __init__(
        self,
        policy_store: SecurityPolicyStore,
        token_issuer: TokenIssuer,
        scheduler: Scheduler,
        kind: OperationKind,
        entity_id: str,
        display_name: str,
        password_verifier: PasswordVerifier,
        biometric_verifier: Optional[BiometricVerifier] = None,
        requires_biometric: bool = False,
        timeout_seconds: Optional[float] = None,
    ):
        self.policy_store = policy_store
        self.token_issuer = token_issuer
        self.scheduler = scheduler
        self.kind = kind
        self.entity_id = entity_id
        self.display_name = display_name
        self.password_verifier = password_verifier
        self.biometric_verifier = biometric_verifier
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else policy_store.settings.VERIFICATION_TIMEOUT_SECONDS
        )
        self.impact_items: Tuple[ImpactItem, ...] = impact_items(kind)

        self._state = initial_state(steps_for(kind, requires_biometric))
        self._token: Optional[VerificationToken] = None
        self._deadline: Optional[datetime] = None
        self._timer: Optional[TimerHandle] = None
        self._inflight: Optional[asyncio.Future] = None
        self._listeners: List[StateListener] = []

    # ==========================================================================
    # State
    # ==========================================================================

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def token(self) -> Optional[VerificationToken]:
        return self._token

    @property
    def user_id(self) -> Optional[str]:
        user = self.policy_store.user
        return user.id if user else None

    def remaining_seconds(self) -> float:
        if self._deadline is None:
            return float(self.timeout_seconds)
        if self._state.is_terminal:
            return 0.0
        return max(0.0, (self._deadline - self.policy_store.clock.now()).total_seconds())

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _apply(self, event: VerificationEvent) -> VerificationState:
        previous = self._state
        self._state = transition(previous, event)
        if self._state != previous:
            for listener in list(self._listeners):
                listener(self._state)
        return self._state

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> VerificationState:
        """
        Enter the first step and start the countdown.

        Raises:
            PolicyDeniedError: the policy store refused the operation
            VerificationClosedError: workflow already started
        """
        if self._state.status != WorkflowStatus.IDLE:
            raise VerificationClosedError(self._state.status)

        decision = self.policy_store.evaluate(self.kind, self.entity_id)
        if not decision.allowed:
            raise PolicyDeniedError(decision.reason_code, decision.detail)

        self.token_issuer.revoke_subject(self.entity_id)
        self._apply(Start())
        self._deadline = self.policy_store.clock.now() + timedelta(seconds=self.timeout_seconds)
        self._timer = self.scheduler.call_later(self.timeout_seconds, self._expire)

        self._audit(
            AuditEventType.VERIFICATION_STARTED,
            steps=[s.value for s in self._state.steps],
            timeout_seconds=self.timeout_seconds,
        )
        logger.info(
            "verification_started",
            user_id=self.user_id,
            kind=self.kind.value,
            entity_id=self.entity_id,
            steps=[s.value for s in self._state.steps],
        )
        if self._state.status == WorkflowStatus.APPROVED:
            self._approve()
        return self._state

    def cancel(self) -> VerificationState:
        """User cancellation. No-op once the workflow has finished."""
        if self._state.is_terminal:
            return self._state
        step = self._state.current_step
        self._apply(Cancel())
        self._close()
        self._audit(
            AuditEventType.VERIFICATION_CANCELLED,
            reason_code="user_cancelled",
            step=step.value if step else None,
        )
        logger.info("verification_cancelled", user_id=self.user_id, entity_id=self.entity_id)
        return self._state

    def _expire(self) -> None:
        if self._state.is_terminal:
            return
        step = self._state.current_step
        self._apply(Expire())
        self._close()
        self._audit(
            AuditEventType.VERIFICATION_EXPIRED,
            severity=AuditSeverity.WARNING,
            reason_code="timeout",
            step=step.value if step else None,
        )
        logger.info("verification_expired", user_id=self.user_id, entity_id=self.entity_id)

    def _close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None

    # ==========================================================================
    # Steps
    # ==========================================================================

    async def submit_password(self, password: str) -> StepResult:
        self._ensure_open(StepId.PASSWORD)
        if not password or not password.strip():
            return self._fail(StepId.PASSWORD, "password_required")
        user_id = self.user_id or ""
        return await self._verify(StepId.PASSWORD, lambda: self.password_verifier(user_id, password), "invalid_password")

    async def submit_typed_name(self, typed: str) -> StepResult:
        self._ensure_open(StepId.TYPED_NAME)
        if typed != self.display_name:
            return self._fail(StepId.TYPED_NAME, "name_mismatch")
        return self._succeed(StepId.TYPED_NAME)

    async def submit_impact(self, checked_ids: Iterable[str]) -> StepResult:
        self._ensure_open(StepId.IMPACT)
        checked = set(checked_ids)
        missing = [item.id for item in self.impact_items if item.id not in checked]
        if missing:
            return self._fail(StepId.IMPACT, "unacknowledged_impacts", missing=missing)
        return self._succeed(StepId.IMPACT)

    async def submit_biometric(self) -> StepResult:
        self._ensure_open(StepId.BIOMETRIC)
        if self.biometric_verifier is None:
            return self._fail(StepId.BIOMETRIC, "biometric_unavailable")
        user_id = self.user_id or ""
        return await self._verify(StepId.BIOMETRIC, lambda: self.biometric_verifier(user_id), "biometric_failed")

    def _ensure_open(self, step: StepId) -> None:
        if self._state.status != WorkflowStatus.STEP:
            raise VerificationClosedError(self._state.status)

    async def _verify(self, step: StepId, check: Callable[[], Awaitable[bool]], failure: str) -> StepResult:
        if step != self._state.current_step:
            return self._fail(step, "not_current_step")
        if self._inflight is not None and not self._inflight.done():
            return StepResult(step, False, self._state, error="verification_in_progress")

        task = asyncio.ensure_future(check())
        self._inflight = task
        try:
            ok = await task
        except asyncio.CancelledError:
            if not self._state.is_terminal:
                raise
            return StepResult(step, False, self._state, error=self._state.status.value)
        except Exception as e:
            logger.warning("verification_step_error", step=step.value, error=str(e))
            ok = False
        finally:
            if self._inflight is task:
                self._inflight = None

        # Late result after cancel/expiry
        if self._state.is_terminal:
            return StepResult(step, False, self._state, error=self._state.status.value)

        if ok:
            return self._succeed(step)
        return self._fail(step, failure)

    def _succeed(self, step: StepId) -> StepResult:
        if step != self._state.current_step:
            return self._fail(step, "not_current_step")
        self._apply(StepSucceeded(step))
        self._audit(AuditEventType.VERIFICATION_STEP_COMPLETED, step=step.value)
        if self._state.status == WorkflowStatus.APPROVED:
            self._approve()
        return StepResult(step, True, self._state)

    def _fail(self, step: StepId, error: str, **details: Any) -> StepResult:
        self._apply(StepFailed(step, error))
        self._audit(
            AuditEventType.VERIFICATION_FAILED,
            severity=AuditSeverity.WARNING,
            step=step.value,
            error=error,
            **details,
        )
        self.policy_store.record_activity(
            "verification_failed",
            step=step.value,
            kind=self.kind.value,
            entity_id=self.entity_id,
        )
        return StepResult(step, False, self._state, error=error)

    def _approve(self) -> None:
        self._close()
        self._token = self.token_issuer.issue(self.entity_id, self.kind)
        self._audit(AuditEventType.VERIFICATION_COMPLETED, expires_at=self._token.expires_at.isoformat())
        logger.info("verification_completed", user_id=self.user_id, entity_id=self.entity_id, kind=self.kind.value)

    def _audit(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        **details: Any,
    ) -> None:
        self.policy_store.audit_sink.record(AuditEvent(
            event_type=event_type,
            user_id=self.user_id,
            operation_kind=self.kind.value,
            entity_id=self.entity_id,
            severity=severity,
            timestamp=self.policy_store.clock.now(),
            details={k: v for k, v in details.items() if v is not None},
        ))
