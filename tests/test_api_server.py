"""Tests for the diagnostics API.

Verifies that:
1. Status and listing endpoints reflect the context's state
2. Triggering a sync runs a pass
3. Missing entities return 404 and bad entity types return 422
"""


class TestSystem:
    async def test_health(self, client, context):
        await context.orchestrator.enqueue("submit")
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["network"] == "online"
        assert body["pending"] == 1


class TestSyncEndpoints:
    async def test_operations_listing_and_clear(self, client, context):
        op_id = await context.orchestrator.enqueue("submit", "pay", {"amount": 3}, priority="high")

        response = await client.get("/api/sync/operations")
        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["count"] == 1
        [operation] = body["data"]
        assert operation["id"] == op_id
        assert operation["priority"] == "high"
        assert operation["payload"] == {"amount": 3}

        response = await client.delete("/api/sync/operations")
        assert response.json()["data"] == {"removed": 1}
        assert context.orchestrator.get_pending_count() == 0

    async def test_trigger_and_status(self, client, context):
        seen = []

        async def handler(operation):
            seen.append(operation.id)

        context.orchestrator.register_handler("submit", handler)
        await context.orchestrator.enqueue("submit")

        response = await client.post("/api/sync/trigger")
        assert response.status_code == 200
        result = response.json()["data"]
        assert result["success"] is True
        assert result["processed"] == 1
        assert len(seen) == 1

        status = (await client.get("/api/sync/status")).json()["data"]
        assert status["pending"] == 0
        assert status["sync_status"] == "completed"
        assert status["last_result"]["processed"] == 1

    async def test_trigger_offline_reports_synthetic_error(self, client, context):
        context.network.set_status("offline")
        result = (await client.post("/api/sync/trigger")).json()["data"]
        assert result["success"] is False
        assert result["errors"] == [{"operation_id": "system", "error": "Device is offline"}]

        forced = (await client.post("/api/sync/trigger", params={"force": "true"})).json()["data"]
        assert forced["success"] is True


class TestRecoveryEndpoint:
    async def test_recovery_status(self, client):
        response = await client.get("/api/recovery/status")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["active_recoveries"] == 0
        assert data["circuit_breakers"] == []
        assert data["total_fallbacks"] == 0


class TestEntityEndpoints:
    async def test_list_and_get(self, client, context):
        await context.entities.put("note", "n1", {"title": "a"})
        await context.entities.put("note", "n1", {"title": "b"})

        listing = (await client.get("/api/entities/note")).json()
        assert listing["meta"]["count"] == 1

        entity = (await client.get("/api/entities/note/n1")).json()["data"]
        assert entity["version"] == 2
        assert entity["data"] == {"title": "b"}
        assert entity["sync_status"] == "pending"

    async def test_missing_entity_is_404(self, client):
        response = await client.get("/api/entities/note/missing")
        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "ResourceNotFound"
        assert body["details"]["resource_id"] == "missing"

    async def test_bad_type_is_422(self, client):
        response = await client.get("/api/entities/bad:type")
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"
