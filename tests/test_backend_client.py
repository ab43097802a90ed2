"""
Cascade Guard - Deletion API Client Tests
=========================================

Request shapes and error mapping, against httpx.MockTransport.
"""

import json

import httpx
import pytest

from cascade_guard.core.backend_client import DeletionApiClient, HttpPasswordVerifier
from cascade_guard.core.errors import DeletionApiError


def make_client(handler, settings, token="tok-123") -> DeletionApiClient:
    return DeletionApiClient(
        base_url="http://api.test/api/",
        auth_token=token,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        settings=settings,
    )


class TestDeletionEndpoints:
    """Preview, execute and cancel."""

    async def test_execute_request_and_response(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"operationId": "srv-1", "status": "started"})

        async with make_client(handler, settings) as client:
            operation_id = await client.execute_deletion("s1", {"dryRun": False}, token="v.sig")

        assert operation_id == "srv-1"
        assert seen["path"] == "/api/cascade-deletion/execute"
        assert seen["auth"] == "Bearer tok-123"
        assert seen["body"] == {"entityId": "s1", "confirmationToken": "v.sig", "options": {"dryRun": False}}

    async def test_preview_parses_impact(self, settings):
        def handler(request):
            return httpx.Response(200, json={
                "operationId": "prev-1",
                "impact": {
                    "entityType": "student",
                    "entityId": "s1",
                    "totalAffectedCount": 12,
                    "dependents": [{"id": "l1", "type": "lesson", "affectedCount": 3}],
                    "warnings": [{"message": "Has unpaid invoices", "severity": "high"}],
                },
            })

        async with make_client(handler, settings) as client:
            preview = await client.preview_deletion("student", "s1")

        assert preview.operation_id == "prev-1"
        assert preview.impact.total_affected_count == 12
        assert preview.impact.dependents[0].affected_count == 3
        assert preview.impact.warnings[0].severity == "high"
        assert preview.impact.can_delete is True

    async def test_cancel_defaults_to_success(self, settings):
        def handler(request):
            assert request.url.path == "/api/cascade-deletion/operations/srv-1/cancel"
            return httpx.Response(200, json={})

        async with make_client(handler, settings) as client:
            assert await client.cancel_deletion("srv-1") is True


class TestMaintenanceEndpoints:
    """Orphan cleanup and integrity validate / repair."""

    async def test_cleanup_request_defaults(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "operationId": "cln-1",
                "totalOrphaned": 7,
                "cleaned": 5,
                "skipped": 2,
                "byCollection": {"lessons": 5},
            })

        async with make_client(handler, settings) as client:
            result = await client.cleanup_orphaned()

        assert seen["path"] == "/api/admin/cleanup/orphaned-references"
        assert seen["body"] == {"collections": [], "dryRun": False, "batchSize": 50, "skipBackup": False}
        assert result.operation_id == "cln-1"
        assert (result.total_orphaned, result.cleaned, result.skipped, result.errors) == (7, 5, 2, 0)
        assert result.by_collection == {"lessons": 5}

    async def test_cleanup_error_mapped(self, settings):
        def handler(request):
            return httpx.Response(403, json={"code": "FORBIDDEN", "message": "Admins only"})

        async with make_client(handler, settings) as client:
            with pytest.raises(DeletionApiError) as exc:
                await client.cleanup_orphaned(dry_run=True)

        assert exc.value.code == "FORBIDDEN"

    async def test_validate_integrity_is_get(self, settings):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/api/admin/integrity/validate"
            return httpx.Response(200, json={"totalChecks": 10, "failed": 1, "repairAvailable": True})

        async with make_client(handler, settings) as client:
            report = await client.validate_integrity()

        assert report.total_checks == 10
        assert report.failed == 1
        assert report.repair_available is True
        assert report.overall_status == "unknown"

    async def test_repair_integrity_payload(self, settings):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"operationId": "rep-1", "backupId": "b-1", "repaired": 3})

        async with make_client(handler, settings) as client:
            result = await client.repair_integrity(issues=["orphan-lessons"], dry_run=True)

        assert seen["body"] == {
            "issues": ["orphan-lessons"],
            "createBackup": True,
            "dryRun": True,
            "forceRepair": False,
        }
        assert result.backup_id == "b-1"
        assert result.repaired == 3


class TestErrorMapping:
    """Non-2xx and transport failures."""

    async def test_server_code_and_message(self, settings):
        def handler(request):
            return httpx.Response(409, json={"code": "ENTITY_LOCKED", "message": "Locked", "recoverable": True})

        async with make_client(handler, settings) as client:
            with pytest.raises(DeletionApiError) as exc:
                await client.execute_deletion("s1")

        assert exc.value.code == "ENTITY_LOCKED"
        assert exc.value.message == "Locked"
        assert exc.value.status_code == 409
        assert exc.value.recoverable is True

    async def test_fallback_code(self, settings):
        def handler(request):
            return httpx.Response(500, text="boom")

        async with make_client(handler, settings) as client:
            with pytest.raises(DeletionApiError) as exc:
                await client.execute_deletion("s1")

        assert exc.value.code == "HTTP_500"
        assert exc.value.recoverable is False

    async def test_timeout_is_recoverable(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with make_client(handler, settings) as client:
            with pytest.raises(DeletionApiError) as exc:
                await client.cancel_deletion("srv-1")

        assert exc.value.code == "TIMEOUT"
        assert exc.value.recoverable is True

    async def test_network_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler, settings) as client:
            with pytest.raises(DeletionApiError) as exc:
                await client.preview_deletion("student", "s1")

        assert exc.value.code == "NETWORK_ERROR"


class TestAuthEndpoints:
    """Session refresh and password verification."""

    async def test_refresh_rejected(self, settings):
        async with make_client(lambda r: httpx.Response(401), settings) as client:
            assert await client.refresh_session("u1") is False

    async def test_refresh_ok(self, settings):
        async with make_client(lambda r: httpx.Response(200, json={"valid": True}), settings) as client:
            assert await client.refresh_session("u1") is True

    async def test_refresh_server_error_raises(self, settings):
        async with make_client(lambda r: httpx.Response(503), settings) as client:
            with pytest.raises(DeletionApiError):
                await client.refresh_session("u1")

    async def test_password_verifier(self, settings):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"valid": body["password"] == "secret"})

        async with make_client(handler, settings) as client:
            verifier = HttpPasswordVerifier(client)
            assert await verifier("u1", "secret") is True
            assert await verifier("u1", "wrong") is False

    async def test_password_bad_request_is_false(self, settings):
        async with make_client(lambda r: httpx.Response(400, json={"error": "bad"}), settings) as client:
            assert await client.verify_password("u1", "x") is False
