"""
Cascade Guard - Deletion Coordinator
====================================

Control flow for one guarded deletion:

1. begin_verification() - policy check, multi-step confirmation, token
2. execute() - token consumption, rate-limit attempt, optimistic cache
   edits, backend execute, progress subscription
3. completion / error events - commit or revert, then teardown
4. cancel() - backend cancel, revert, teardown

Cleanup requests run the orphaned-reference cleanup instead of an entity
delete; a dry run reports counts and finishes without touching the cache.
start() / aclose() own the realtime connection and HTTP resources.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

import structlog

from cascade_guard.core.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    CompositeAuditSink,
    InMemoryAuditSink,
    StructlogAuditSink,
)
from cascade_guard.core.backend_client import (
    CleanupResult,
    DeletionApiClient,
    HttpPasswordVerifier,
    HttpSessionRefresher,
)
from cascade_guard.core.clock import AsyncioScheduler, Scheduler, SystemClock
from cascade_guard.core.config import Settings, get_settings
from cascade_guard.core.errors import DeletionApiError, PolicyDeniedError
from cascade_guard.core.logging_config import configure_logging
from cascade_guard.core.mutations.cache import CacheKeyLike, CacheStore, InMemoryCacheStore
from cascade_guard.core.mutations.engine import OptimisticMutationEngine, RevertResult
from cascade_guard.core.mutations.tracker import ProgressInfo, ProgressTracker
from cascade_guard.core.mutations.transforms import MutationAction
from cascade_guard.core.notifications import NotificationCenter
from cascade_guard.core.realtime.connectors import AiohttpConnector
from cascade_guard.core.realtime.messages import CompleteEvent, ErrorEvent, ProgressEvent
from cascade_guard.core.realtime.transport import ConnectionState, RealtimeProgressTransport, Subscription
from cascade_guard.core.security.models import OperationKind, ReasonCode, UserContext
from cascade_guard.core.security.policy_store import SecurityPolicyStore
from cascade_guard.core.verification.tokens import TokenIssuer
from cascade_guard.core.verification.verifiers import BiometricVerifier, PasswordVerifier
from cascade_guard.core.verification.workflow import VerificationWorkflow

logger = structlog.get_logger()


class OperationStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PlannedMutation:
    """An extra optimistic edit to apply alongside the primary delete."""
    entity_type: str
    entity_id: str
    action: MutationAction
    speculative_value: Optional[Mapping[str, Any]] = None
    cache_keys: Optional[Iterable[CacheKeyLike]] = None


@dataclass
class DeletionRequest:
    entity_type: str
    entity_id: str
    kind: OperationKind = OperationKind.CASCADE
    cache_keys: Optional[List[CacheKeyLike]] = None
    options: Optional[Dict[str, Any]] = None
    related_mutations: List[PlannedMutation] = field(default_factory=list)


@dataclass
class DeletionOperation:
    id: str
    server_operation_id: Optional[str]
    request: DeletionRequest
    started_at: datetime
    status: OperationStatus = OperationStatus.RUNNING
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    last_progress: Optional[ProgressInfo] = None
    revert_result: Optional[RevertResult] = None
    cleanup_result: Optional[CleanupResult] = None
    subscription: Optional[Subscription] = field(default=None, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.status != OperationStatus.RUNNING


class CascadeDeletionCoordinator:
    """Runs guarded deletions end to end."""

    def __init__(
        self,
        policy_store: SecurityPolicyStore,
        token_issuer: TokenIssuer,
        engine: OptimisticMutationEngine,
        tracker: ProgressTracker,
        transport: RealtimeProgressTransport,
        api: DeletionApiClient,
        scheduler: Scheduler,
        password_verifier: PasswordVerifier,
        biometric_verifier: Optional[BiometricVerifier] = None,
    ):
        self.policy_store = policy_store
        self.token_issuer = token_issuer
        self.engine = engine
        self.tracker = tracker
        self.transport = transport
        self.api = api
        self.scheduler = scheduler
        self.password_verifier = password_verifier
        self.biometric_verifier = biometric_verifier
        self._operations: Dict[str, DeletionOperation] = {}

    @property
    def operations(self) -> Dict[str, DeletionOperation]:
        return dict(self._operations)

    def get(self, operation_id: str) -> Optional[DeletionOperation]:
        return self._operations.get(operation_id)

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> None:
        """Open the realtime connection that carries progress events."""
        await self.transport.connect()
        logger.info("cascade_coordinator_started", url=self.transport.url)

    async def aclose(self) -> None:
        """Disconnect the transport and release the websocket and HTTP clients."""
        await self.transport.disconnect()
        await self.transport.connector.close()
        await self.api.aclose()
        logger.info("cascade_coordinator_closed", running=len(self._running()))

    async def __aenter__(self) -> "CascadeDeletionCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _running(self) -> List[DeletionOperation]:
        return [op for op in self._operations.values() if not op.is_finished]

    async def _ensure_connected(self) -> None:
        if self.transport.state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            await self.transport.connect()

    # ==========================================================================
    # Verification
    # ==========================================================================

    async def begin_verification(
        self,
        kind: OperationKind,
        entity_id: str,
        display_name: str,
        requires_biometric: bool = False,
    ) -> VerificationWorkflow:
        """
        Start the confirmation workflow for a deletion.

        Raises:
            PolicyDeniedError: the policy store refused the operation
        """
        await self.policy_store.maybe_refresh()
        workflow = VerificationWorkflow(
            policy_store=self.policy_store,
            token_issuer=self.token_issuer,
            scheduler=self.scheduler,
            kind=kind,
            entity_id=entity_id,
            display_name=display_name,
            password_verifier=self.password_verifier,
            biometric_verifier=self.biometric_verifier,
            requires_biometric=requires_biometric,
        )
        await workflow.start()
        return workflow

    # ==========================================================================
    # Execution
    # ==========================================================================

    async def execute(self, request: DeletionRequest, token: str) -> DeletionOperation:
        """
        Run an approved deletion.

        Cleanup requests start the orphaned-reference cleanup with
        `options` (collections, dryRun, batchSize, skipBackup); the realtime
        connection is opened on demand.

        Raises:
            TokenError: token missing, forged, used, expired or bound elsewhere
            PolicyDeniedError: policy or rate limit refused the attempt
            DeletionApiError: backend refused to start; optimistic edits are reverted
        """
        self.token_issuer.consume(token, request.entity_id, request.kind)

        decision = self.policy_store.evaluate(request.kind, request.entity_id)
        if not decision.allowed:
            raise PolicyDeniedError(decision.reason_code, decision.detail)
        if not self.policy_store.record_attempt(request.kind):
            raise PolicyDeniedError(ReasonCode.RATE_LIMITED, request.kind.value)

        operation = DeletionOperation(
            id=str(uuid4()),
            server_operation_id=None,
            request=request,
            started_at=self.policy_store.clock.now(),
        )
        self._operations[operation.id] = operation
        is_cleanup = request.kind == OperationKind.CLEANUP
        dry_run = is_cleanup and bool((request.options or {}).get("dryRun"))
        related = [] if dry_run else request.related_mutations

        try:
            if not is_cleanup:
                await self.engine.apply(
                    operation.id,
                    request.entity_type,
                    request.entity_id,
                    MutationAction.DELETE,
                    cache_keys=request.cache_keys,
                )
            for mutation in related:
                await self.engine.apply(
                    operation.id,
                    mutation.entity_type,
                    mutation.entity_id,
                    mutation.action,
                    speculative_value=mutation.speculative_value,
                    cache_keys=mutation.cache_keys,
                )
        except Exception as e:
            await self._fail(operation, f"optimistic update failed: {e}")
            raise

        self._audit(request, action="deletion_requested", operation_id=operation.id)
        try:
            server_id = await self._start_on_backend(operation, token)
        except DeletionApiError as e:
            await self._fail(operation, f"{e.code}: {e.message}")
            raise

        operation.server_operation_id = server_id
        if dry_run:
            await self._finish(operation, OperationStatus.COMPLETED)
            self._audit(request, action="cleanup_previewed", operation_id=operation.id)
            return operation

        await self._ensure_connected()
        self.tracker.start_tracking(server_id)
        operation.subscription = await self.transport.subscribe(
            server_id,
            on_progress=lambda event: self._on_progress(operation, event),
            on_complete=lambda event: self._on_complete(operation, event),
            on_error=lambda event: self._on_error(operation, event),
        )
        logger.info(
            "cascade_deletion_started",
            operation_id=operation.id,
            server_operation_id=server_id,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            kind=request.kind.value,
        )
        return operation

    async def _start_on_backend(self, operation: DeletionOperation, token: str) -> str:
        request = operation.request
        if request.kind != OperationKind.CLEANUP:
            return await self.api.execute_deletion(request.entity_id, request.options, token)

        options = request.options or {}
        result = await self.api.cleanup_orphaned(
            collections=options.get("collections"),
            dry_run=bool(options.get("dryRun")),
            batch_size=options.get("batchSize"),
            skip_backup=bool(options.get("skipBackup")),
            token=token,
        )
        operation.cleanup_result = result
        return result.operation_id

    async def cancel(self, operation_id: str) -> bool:
        """
        Cancel a running deletion, revert its optimistic edits and unsubscribe.

        Returns:
            True if the backend acknowledged the cancellation
        """
        operation = self._operations.get(operation_id)
        if operation is None or operation.is_finished:
            return False

        acknowledged = False
        if operation.server_operation_id:
            try:
                acknowledged = await self.api.cancel_deletion(operation.server_operation_id)
            except DeletionApiError as e:
                logger.warning("cascade_deletion_cancel_failed", operation_id=operation_id, code=e.code)

        operation.revert_result = await self.engine.revert(operation.id)
        await self._finish(operation, OperationStatus.CANCELLED)
        self._audit(operation.request, action="deletion_cancelled", operation_id=operation.id, acknowledged=acknowledged)
        return acknowledged

    # ==========================================================================
    # Progress Events
    # ==========================================================================

    def _on_progress(self, operation: DeletionOperation, event: ProgressEvent) -> None:
        progress = ProgressInfo(
            percentage=event.percentage,
            processed_entities=event.processed_entities,
            total_entities=event.total_entities,
            errors=event.errors,
            warnings=event.warnings,
            started_at=event.started_at or operation.started_at,
            current_step=event.step,
        )
        operation.last_progress = progress
        self.tracker.update(event.operation_id, progress)

    async def _on_complete(self, operation: DeletionOperation, event: CompleteEvent) -> None:
        if operation.is_finished:
            return
        if not event.success:
            await self._fail(operation, "deletion reported unsuccessful")
            return
        self.engine.commit(operation.id)
        await self._finish(operation, OperationStatus.COMPLETED)
        self._audit(operation.request, action="deletion_completed", operation_id=operation.id, duration=event.duration)

    async def _on_error(self, operation: DeletionOperation, event: ErrorEvent) -> None:
        if operation.is_finished:
            return
        await self._fail(operation, event.error, code=event.code)

    # ==========================================================================
    # Teardown
    # ==========================================================================

    async def _fail(self, operation: DeletionOperation, error: str, **details: Any) -> None:
        operation.error = error
        operation.revert_result = await self.engine.revert(operation.id)
        await self._finish(operation, OperationStatus.FAILED)
        self.policy_store.record_activity(
            "deletion_failed",
            operation_id=operation.id,
            entity_id=operation.request.entity_id,
        )
        self._audit(
            operation.request,
            severity=AuditSeverity.ERROR,
            action="deletion_failed",
            operation_id=operation.id,
            error=error,
            **details,
        )

    async def _finish(self, operation: DeletionOperation, status: OperationStatus) -> None:
        operation.status = status
        operation.finished_at = self.policy_store.clock.now()
        if operation.server_operation_id:
            self.tracker.stop_tracking(operation.server_operation_id)
        if operation.subscription is not None:
            await operation.subscription.unsubscribe()
        logger.info(
            "cascade_deletion_finished",
            operation_id=operation.id,
            server_operation_id=operation.server_operation_id,
            status=status.value,
            error=operation.error,
        )

    def _audit(
        self,
        request: DeletionRequest,
        severity: AuditSeverity = AuditSeverity.INFO,
        **details: Any,
    ) -> None:
        user = self.policy_store.user
        self.policy_store.audit_sink.record(AuditEvent(
            event_type=AuditEventType.DELETION_ATTEMPT,
            user_id=user.id if user else None,
            operation_kind=request.kind.value,
            entity_id=request.entity_id,
            severity=severity,
            timestamp=self.policy_store.clock.now(),
            details={k: v for k, v in details.items() if v is not None},
        ))


# ==========================================================================
# Factory
# ==========================================================================

def create_coordinator(
    user: UserContext,
    auth_token: Optional[str] = None,
    cache: Optional[CacheStore] = None,
    notifications: Optional[NotificationCenter] = None,
    settings: Optional[Settings] = None,
) -> CascadeDeletionCoordinator:
    """Wire a coordinator with the production collaborators."""
    settings = settings or get_settings()
    configure_logging(settings)
    clock = SystemClock()
    scheduler = AsyncioScheduler()
    api = DeletionApiClient(auth_token=auth_token, settings=settings)
    audit_sink = CompositeAuditSink(
        StructlogAuditSink(),
        InMemoryAuditSink(settings.AUDIT_HISTORY_SIZE),
    )
    policy_store = SecurityPolicyStore.create(
        user,
        clock=clock,
        audit_sink=audit_sink,
        session_refresher=HttpSessionRefresher(api),
        settings=settings,
    )
    headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else None
    return CascadeDeletionCoordinator(
        policy_store=policy_store,
        token_issuer=TokenIssuer(clock=clock, settings=settings),
        engine=OptimisticMutationEngine(
            cache or InMemoryCacheStore(),
            notifications=notifications or NotificationCenter(),
            clock=clock,
        ),
        tracker=ProgressTracker(scheduler, clock=clock, settings=settings),
        transport=RealtimeProgressTransport(
            AiohttpConnector(headers=headers),
            scheduler,
            clock=clock,
            settings=settings,
        ),
        api=api,
        scheduler=scheduler,
        password_verifier=HttpPasswordVerifier(api),
    )
