"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing.
Real SQLite (conftest.py fixtures) behind the state store.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError


def _headers(session_id: str | None = None, actor_id: str | None = None) -> dict:
    headers = {"x-session-key": session_id or f"session-{uuid.uuid4().hex[:8]}"}
    if actor_id:
        headers["x-actor-id"] = actor_id
    return headers


# ---------------------------------------------------------------------------
# GET /state/{kind}
# ---------------------------------------------------------------------------


class TestGetState:
    @pytest.mark.asyncio
    async def test_never_saved_returns_null(self, client):
        resp = await client.get("/state/memo", headers=_headers())
        assert resp.status_code == 200
        assert resp.json() is None

    @pytest.mark.asyncio
    async def test_fallback_empty(self, client):
        resp = await client.get("/state/scenario-lab?fallback=empty", headers=_headers())
        assert resp.status_code == 200
        assert resp.json() == {"driverValues": {}, "iterations": 500, "version": 0, "updatedAt": None}

    @pytest.mark.asyncio
    async def test_missing_session_header(self, client, store):
        with patch.object(store, "load", new_callable=AsyncMock) as load_mock:
            resp = await client.get("/state/monitoring")
        assert resp.status_code == 400
        assert resp.json() == {"message": "Session key header required"}
        load_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_kind(self, client):
        resp = await client.get("/state/research-log", headers=_headers())
        assert resp.status_code == 404
        assert resp.json() == {"message": "Unknown state kind 'research-log'"}

    @pytest.mark.asyncio
    async def test_store_fault_is_500(self, client, store):
        fault = OperationalError("SELECT", {}, Exception("could not connect to server"))
        with patch.object(store, "_load", new_callable=AsyncMock, side_effect=fault):
            resp = await client.get("/state/normalization", headers=_headers())
        assert resp.status_code == 500
        assert resp.json() == {"message": "Failed to load normalization state"}


# ---------------------------------------------------------------------------
# PUT /state/{kind}
# ---------------------------------------------------------------------------


class TestPutState:
    @pytest.mark.asyncio
    async def test_first_save(self, client, monitoring_payload):
        headers = _headers()
        resp = await client.put("/state/monitoring", json={**monitoring_payload, "version": 0}, headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["version"] == 1
        assert body["acknowledgedAlerts"] == monitoring_payload["acknowledgedAlerts"]
        assert body["updatedAt"].endswith("Z")

        # Visible on the next read
        resp = await client.get("/state/monitoring", headers=headers)
        assert resp.json() == body

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, client, monitoring_payload):
        headers = _headers()
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 0}, headers=headers)
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 1}, headers=headers)

        resp = await client.put("/state/monitoring", json={**monitoring_payload, "version": 0}, headers=headers)
        assert resp.status_code == 409
        assert resp.json() == {"message": "Monitoring state version conflict", "expectedVersion": 2}

        # Stored document unchanged
        resp = await client.get("/state/monitoring", headers=headers)
        assert resp.json()["version"] == 2

    @pytest.mark.asyncio
    async def test_missing_session_never_saves(self, client, store, monitoring_payload):
        with patch.object(store, "save", new_callable=AsyncMock) as save_mock:
            resp = await client.put("/state/monitoring", json={**monitoring_payload, "version": 0})
        assert resp.status_code == 400
        assert resp.json() == {"message": "Session key header required"}
        save_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client, store):
        with patch.object(store, "_save", new_callable=AsyncMock) as save_mock:
            resp = await client.put(
                "/state/valuation",
                json={"selectedScenario": "moon", "assumptionOverrides": {}, "version": 0},
                headers=_headers(),
            )
        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "Invalid valuation payload"
        assert body["errors"][0]["loc"] == ["selectedScenario"]
        save_mock.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kind, payload",
        [
            ("monitoring", {"acknowledgedAlerts": {"alert-churn": "yes"}, "deltaOverrides": {}}),
            ("valuation", {"selectedScenario": "base", "assumptionOverrides": {"wacc": "0.09"}}),
            ("execution-planner", {"rows": [], "portfolioNotional": "100", "maxPart": 15, "algo": "VWAP", "limitBps": 20, "tif": "Day", "daysHorizon": 3}),
        ],
    )
    async def test_string_typed_values_rejected(self, client, kind, payload):
        headers = _headers()
        resp = await client.put(f"/state/{kind}", json={**payload, "version": 0}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["message"].startswith("Invalid ")

        resp = await client.get(f"/state/{kind}", headers=headers)
        assert resp.json() is None

    @pytest.mark.asyncio
    async def test_version_zero_against_stored_document(self, client, db, monitoring_payload):
        """Stored at version 2, a PUT at version 0 conflicts without inserting."""
        headers = _headers()
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 0}, headers=headers)
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 1}, headers=headers)

        statements: list[str] = []

        def _capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(db.engine.sync_engine, "before_cursor_execute", _capture)
        try:
            resp = await client.put(
                "/state/monitoring",
                json={"acknowledgedAlerts": {}, "deltaOverrides": {}, "version": 0},
                headers=headers,
            )
        finally:
            event.remove(db.engine.sync_engine, "before_cursor_execute", _capture)

        assert resp.status_code == 409
        assert resp.json()["expectedVersion"] == 2
        assert not [s for s in statements if s.lstrip().upper().startswith("INSERT INTO STAGE_STATES")]

    @pytest.mark.asyncio
    async def test_missing_version(self, client, monitoring_payload):
        resp = await client.put("/state/monitoring", json=monitoring_payload, headers=_headers())
        assert resp.status_code == 400
        assert resp.json() == {"message": "Invalid monitoring payload"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("version", [-1, "1", None, 1.5])
    async def test_bad_version_value(self, client, monitoring_payload, version):
        resp = await client.put("/state/monitoring", json={**monitoring_payload, "version": version}, headers=_headers())
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid monitoring payload"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.put(
            "/state/memo",
            content=b"{not json",
            headers={**_headers(), "content-type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json() == {"message": "Invalid JSON body"}

    @pytest.mark.asyncio
    async def test_non_object_body(self, client):
        resp = await client.put("/state/memo", json=[1, 2], headers=_headers())
        assert resp.status_code == 400
        assert resp.json() == {"message": "Invalid memo payload"}

    @pytest.mark.asyncio
    async def test_updated_at_in_body_is_ignored(self, client, monitoring_payload):
        body = {**monitoring_payload, "version": 0, "updatedAt": "1999-01-01T00:00:00Z"}
        resp = await client.put("/state/monitoring", json=body, headers=_headers())
        assert resp.status_code == 200
        assert not resp.json()["updatedAt"].startswith("1999")

    @pytest.mark.asyncio
    async def test_store_fault_is_500(self, client, store, monitoring_payload):
        fault = OperationalError("UPDATE", {}, Exception("server closed the connection"))
        with patch.object(store, "_save", new_callable=AsyncMock, side_effect=fault):
            resp = await client.put(
                "/state/monitoring", json={**monitoring_payload, "version": 0}, headers=_headers()
            )
        assert resp.status_code == 500
        assert resp.json() == {"message": "Failed to persist monitoring state"}
        assert "server closed" not in resp.text

    @pytest.mark.asyncio
    async def test_sessions_isolated(self, client, monitoring_payload):
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 0}, headers=_headers("s-a"))
        resp = await client.get("/state/monitoring", headers=_headers("s-b"))
        assert resp.json() is None


# ---------------------------------------------------------------------------
# Legacy /{kind}-state routes
# ---------------------------------------------------------------------------


class TestLegacyRoutes:
    @pytest.mark.asyncio
    async def test_alias_round_trip(self, client, memo_payload):
        headers = _headers()
        resp = await client.put("/memo-state", json={**memo_payload, "version": 0}, headers=headers)
        assert resp.status_code == 200

        resp = await client.get("/state/memo", headers=headers)
        assert resp.json()["version"] == 1

        resp = await client.get("/memo-state", headers=headers)
        assert resp.json()["sections"] == memo_payload["sections"]

    @pytest.mark.asyncio
    async def test_multi_word_alias(self, client):
        resp = await client.get("/red-team-state?fallback=empty", headers=_headers())
        assert resp.status_code == 200
        assert resp.json()["critiques"] == []


# ---------------------------------------------------------------------------
# GET /history/{kind}
# ---------------------------------------------------------------------------


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_lists_saves(self, client, monitoring_payload):
        headers = _headers(actor_id="alice")
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 0}, headers=headers)
        await client.put("/state/monitoring", json={**monitoring_payload, "version": 1}, headers=headers)

        resp = await client.get("/history/monitoring", headers=headers)
        assert resp.status_code == 200
        entries = resp.json()
        assert [e["version"] for e in entries] == [2, 1]
        assert all(e["actorId"] == "alice" for e in entries)
        assert entries[0]["state"] == monitoring_payload

    @pytest.mark.asyncio
    async def test_history_limit_clamped(self, client, monitoring_payload):
        headers = _headers()
        for v in range(3):
            await client.put("/state/monitoring", json={**monitoring_payload, "version": v}, headers=headers)

        resp = await client.get("/history/monitoring?limit=0", headers=headers)
        assert len(resp.json()) == 1
        resp = await client.get("/history/monitoring?limit=500", headers=headers)
        assert len(resp.json()) == 3

    @pytest.mark.asyncio
    async def test_history_bad_limit(self, client):
        resp = await client.get("/history/monitoring?limit=abc", headers=_headers())
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_history_requires_session(self, client):
        resp = await client.get("/history/monitoring")
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


class TestPresence:
    @pytest.mark.asyncio
    async def test_heartbeat_returns_peers(self, client):
        await client.post("/presence/heartbeat", json={"stageSlug": "valuation"}, headers=_headers(actor_id="alice"))
        resp = await client.post(
            "/presence/heartbeat", json={"stageSlug": "valuation"}, headers=_headers(actor_id="bob")
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["actorId"] == "bob"
        assert body["stageSlug"] == "valuation"
        assert {p["actorId"] for p in body["peers"]} == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_heartbeat_with_actor_only(self, client):
        resp = await client.post("/presence/heartbeat", json={"stageSlug": "memo"}, headers={"x-actor-id": "carol"})
        assert resp.status_code == 200
        assert resp.json()["actorId"] == "carol"

    @pytest.mark.asyncio
    async def test_anonymous_heartbeat_uses_client_address(self, client):
        resp = await client.post("/presence/heartbeat", json={"stageSlug": "memo"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["actorId"] == "127.0.0.1"
        assert [p["actorId"] for p in body["peers"]] == ["127.0.0.1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"stageSlug": ""}, {"stageSlug": 3}, ["memo"]])
    async def test_heartbeat_missing_stage(self, client, body):
        resp = await client.post("/presence/heartbeat", json=body, headers=_headers())
        assert resp.status_code == 400
        assert resp.json() == {"message": "Missing stageSlug"}

    @pytest.mark.asyncio
    async def test_list_presence(self, client, clock):
        await client.post("/presence/heartbeat", json={"stageSlug": "memo"}, headers=_headers(actor_id="alice"))
        clock.advance(50)
        await client.post("/presence/heartbeat", json={"stageSlug": "memo"}, headers=_headers(actor_id="bob"))

        resp = await client.get("/presence?stage=memo")
        assert resp.status_code == 200
        assert [p["actorId"] for p in resp.json()] == ["bob"]

    @pytest.mark.asyncio
    async def test_list_presence_requires_stage(self, client):
        resp = await client.get("/presence")
        assert resp.status_code == 400
        assert resp.json() == {"message": "Missing stage query parameter"}


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert "execution-planner" in body["kinds"]
        assert body["presence"] == 0

    @pytest.mark.asyncio
    async def test_unhealthy(self, client, db):
        with patch.object(db, "session", side_effect=OperationalError("SELECT 1", {}, Exception("down"))):
            resp = await client.get("/health")
        assert resp.status_code == 503
        assert resp.json() == {"status": "unhealthy"}
