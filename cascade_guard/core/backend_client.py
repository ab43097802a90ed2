"""
Cascade Guard - Deletion API Client
===================================

httpx client for the backend endpoints the safety layer talks to:
- Cascade deletion preview / execute / cancel
- Orphaned-reference cleanup and integrity validate / repair
- Session refresh
- Password re-verification
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cascade_guard.core.config import Settings, get_settings
from cascade_guard.core.errors import DeletionApiError

logger = structlog.get_logger()


# ==========================================================================
# API Models
# ==========================================================================

class ApiModel(BaseModel):
    """Backend payloads use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DependentEntity(ApiModel):
    id: str
    type: str
    name: str = ""
    relationship_type: str = "direct"
    cascade_action: str = "delete"
    affected_count: int = 0
    children: List["DependentEntity"] = Field(default_factory=list)


class DeletionWarning(ApiModel):
    type: str = "warning"
    message: str
    severity: str = "medium"


class DeletionImpact(ApiModel):
    entity_type: str
    entity_id: str
    entity_name: Optional[str] = None
    dependents: List[DependentEntity] = Field(default_factory=list)
    total_affected_count: int = 0
    cascade_depth: int = 0
    warnings: List[DeletionWarning] = Field(default_factory=list)
    can_delete: bool = True
    requires_confirmation: bool = True


class DeletionPreview(ApiModel):
    impact: DeletionImpact
    operation_id: str
    estimated_duration: Optional[float] = None
    required_permissions: List[str] = Field(default_factory=list)


class ExecuteResponse(ApiModel):
    operation_id: str
    status: str = "started"
    estimated_duration: Optional[float] = None
    websocket_channel: Optional[str] = None


class CleanupResult(ApiModel):
    """Orphaned-reference cleanup run (or dry-run preview)."""
    operation_id: str
    duration: Optional[float] = None
    total_orphaned: int = 0
    cleaned: int = 0
    skipped: int = 0
    errors: int = 0
    by_collection: Dict[str, Any] = Field(default_factory=dict)
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    recommendations: List[Any] = Field(default_factory=list)


class IntegrityReport(ApiModel):
    validation_id: Optional[str] = None
    duration: Optional[float] = None
    total_checks: int = 0
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    recommendations: List[Any] = Field(default_factory=list)
    repair_available: bool = False
    overall_status: str = "unknown"


class RepairResult(ApiModel):
    operation_id: Optional[str] = None
    backup_id: Optional[str] = None
    duration: Optional[float] = None
    total_issues: int = 0
    repaired: int = 0
    failed: int = 0
    skipped: int = 0
    repaired_issues: List[Any] = Field(default_factory=list)
    failed_issues: List[Any] = Field(default_factory=list)
    warnings: List[Any] = Field(default_factory=list)


# ==========================================================================
# Client
# ==========================================================================

class DeletionApiClient:
    """
    Async client for the cascade deletion backend.

    Non-2xx responses raise DeletionApiError with the server-provided code,
    falling back to HTTP_<status>. Timeouts and connection failures are
    reported as recoverable errors.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.auth_token = auth_token
        self.cleanup_batch_size = settings.CLEANUP_BATCH_SIZE
        self._client = client or httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
        logger.info("deletion_api_client_initialized", base_url=self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            logger.warning("deletion_api_timeout", path=path, error=str(e))
            raise DeletionApiError("TIMEOUT", "Request timed out", recoverable=True) from e
        except httpx.HTTPError as e:
            logger.warning("deletion_api_network_error", path=path, error=str(e))
            raise DeletionApiError("NETWORK_ERROR", str(e) or "Network error", recoverable=True) from e

    async def _post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        return await self._send("POST", path, payload)

    async def _request(self, path: str, payload: Optional[Dict[str, Any]] = None, method: str = "POST") -> Any:
        response = await self._send(method, path, payload)
        data = _decode(response)
        if response.is_success:
            return data

        body = data if isinstance(data, dict) else {}
        code = body.get("code") or f"HTTP_{response.status_code}"
        message = (
            body.get("message")
            or body.get("error")
            or f"Request failed with status {response.status_code}"
        )
        logger.warning(
            "deletion_api_request_failed",
            path=path,
            status_code=response.status_code,
            code=code,
        )
        raise DeletionApiError(
            code,
            message,
            status_code=response.status_code,
            recoverable=bool(body.get("recoverable", False)),
        )

    # ==================== Deletion ====================

    async def preview_deletion(
        self,
        entity_type: str,
        entity_id: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> DeletionPreview:
        """Ask the backend what a deletion would touch."""
        payload: Dict[str, Any] = {"entityType": entity_type, "entityId": entity_id}
        if options:
            payload["options"] = options
        data = await self._request("/cascade-deletion/preview", payload)
        return DeletionPreview.model_validate(data)

    async def execute_deletion(
        self,
        entity_id: str,
        options: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        preview_operation_id: Optional[str] = None,
    ) -> str:
        """
        Start a deletion on the backend.

        Returns:
            The server-side operation id used for progress events.
        """
        payload: Dict[str, Any] = {"entityId": entity_id}
        if preview_operation_id:
            payload["operationId"] = preview_operation_id
        if token:
            payload["confirmationToken"] = token
        if options:
            payload["options"] = options
        data = await self._request("/cascade-deletion/execute", payload)
        response = ExecuteResponse.model_validate(data)
        logger.info("deletion_started", entity_id=entity_id, operation_id=response.operation_id)
        return response.operation_id

    async def cancel_deletion(self, operation_id: str) -> bool:
        data = await self._request(f"/cascade-deletion/operations/{operation_id}/cancel")
        if isinstance(data, dict):
            return bool(data.get("success", True))
        return True

    # ==================== Maintenance ====================

    async def cleanup_orphaned(
        self,
        collections: Optional[List[str]] = None,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        skip_backup: bool = False,
        token: Optional[str] = None,
    ) -> CleanupResult:
        """
        Remove references left pointing at deleted records.

        Args:
            collections: Collections to scan; empty or None scans all
            dry_run: Report what would be cleaned without changing anything
            batch_size: Records per batch (defaults to CLEANUP_BATCH_SIZE)
            skip_backup: Skip the server-side backup before cleaning
            token: Verification token from the confirmation workflow

        Returns:
            Cleanup counts; operation_id identifies the run on the realtime channel.
        """
        payload: Dict[str, Any] = {
            "collections": list(collections or []),
            "dryRun": dry_run,
            "batchSize": batch_size or self.cleanup_batch_size,
            "skipBackup": skip_backup,
        }
        if token:
            payload["confirmationToken"] = token
        data = await self._request("/admin/cleanup/orphaned-references", payload)
        result = CleanupResult.model_validate(data)
        logger.info(
            "orphan_cleanup_started",
            operation_id=result.operation_id,
            dry_run=dry_run,
            total_orphaned=result.total_orphaned,
        )
        return result

    async def validate_integrity(self) -> IntegrityReport:
        data = await self._request("/admin/integrity/validate", method="GET")
        return IntegrityReport.model_validate(data or {})

    async def repair_integrity(
        self,
        issues: Optional[List[Any]] = None,
        create_backup: bool = True,
        dry_run: bool = False,
        force_repair: bool = False,
    ) -> RepairResult:
        """Repair integrity issues; an empty `issues` list repairs everything found."""
        payload = {
            "issues": list(issues or []),
            "createBackup": create_backup,
            "dryRun": dry_run,
            "forceRepair": force_repair,
        }
        data = await self._request("/admin/integrity/repair", payload)
        return RepairResult.model_validate(data or {})

    # ==================== Auth ====================

    async def refresh_session(self, user_id: str) -> bool:
        """True if the backend re-confirmed the session, False if it refused."""
        response = await self._post("/auth/refresh", {"userId": user_id})
        if response.status_code in (401, 403):
            return False
        if not response.is_success:
            raise DeletionApiError(
                f"HTTP_{response.status_code}",
                "Session refresh failed",
                status_code=response.status_code,
            )
        data = _decode(response)
        return bool(data.get("valid", True)) if isinstance(data, dict) else True

    async def verify_password(self, user_id: str, password: str) -> bool:
        response = await self._post("/auth/verify-password", {"userId": user_id, "password": password})
        if response.status_code in (400, 401, 403):
            return False
        if not response.is_success:
            raise DeletionApiError(
                f"HTTP_{response.status_code}",
                "Password verification failed",
                status_code=response.status_code,
            )
        data = _decode(response)
        return bool(data.get("valid", False)) if isinstance(data, dict) else False

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DeletionApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class HttpSessionRefresher:
    """Session refresher backed by DeletionApiClient."""

    def __init__(self, client: DeletionApiClient):
        self.client = client

    async def __call__(self, user_id: str) -> bool:
        return await self.client.refresh_session(user_id)


class HttpPasswordVerifier:
    """Password verifier backed by DeletionApiClient."""

    def __init__(self, client: DeletionApiClient):
        self.client = client

    async def __call__(self, user_id: str, password: str) -> bool:
        return await self.client.verify_password(user_id, password)


def _decode(response: httpx.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return None
    return response.text
