"""
API Tests for /api/reconciliation

Exercises the HTTP surface with FastAPI's TestClient against a temporary
SQLite database:
- camelCase payloads
- structured error bodies (422 / 409)
- import -> match -> confirm flow

Run with: pytest backend/tests/test_reconciliation_api.py -v
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from database import Base, build_session_factory
from database.connection import get_db
from server import app


@pytest.fixture
def client(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciliation.db'}", poolclass=NullPool)

    async def create_schema():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_schema())
    factory = build_session_factory(engine)

    async def override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def import_rows(client, rows):
    return client.post("/api/reconciliation/bank/import", json={"rows": rows})


ELECTRICITY_ROW = {"transactionDate": "2025.03.04", "withdrawal": "50,000", "balance": "1,250,000", "description": "전기료", "time": "10:15"}


class TestHealth:
    """Test liveness and module status."""

    def test_liveness(self, client):
        response = client.get("/api/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert "X-Request-ID" in response.headers

    def test_module_status(self, client):
        data = client.get("/api/reconciliation/status").json()
        assert data["status"] == "operational"
        assert "committing" in data["states"]


class TestStatementImport:
    """Test POST /bank/import."""

    def test_import_is_idempotent(self, client):
        first = import_rows(client, [ELECTRICITY_ROW])
        second = import_rows(client, [ELECTRICITY_ROW])

        assert first.status_code == 200
        assert first.json()["insertedCount"] == 1
        assert second.json()["insertedCount"] == 0
        assert second.json()["duplicateCount"] == 1

        listed = client.get("/api/reconciliation/bank/transactions", params={"state": "pending"}).json()
        assert listed["count"] == 1
        tx = listed["transactions"][0]
        assert tx["valueDate"] == "2025-03-09"
        assert tx["time"] == "10:15"
        assert tx["direction"] == "withdrawal"

    def test_invalid_row(self, client):
        response = import_rows(client, [{"withdrawal": "1000", "description": "날짜없음"}])

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "invalid_statement_row"
        assert body["details"]["row_index"] == 0

    def test_invalid_state_filter(self, client):
        response = client.get("/api/reconciliation/bank/transactions", params={"state": "archived"})
        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "state"

    def test_save(self, client):
        tx_id = import_rows(client, [ELECTRICITY_ROW]).json()["insertedIds"][0]

        data = client.post("/api/reconciliation/bank/save", json={"transactionIds": [tx_id]}).json()

        assert data["savedIds"] == [tx_id]
        assert data["conflicts"] == []


class TestRules:
    """Test rule administration."""

    def test_create_and_list(self, client):
        response = client.post("/api/reconciliation/rules", json={
            "pattern": "전기료", "targetType": "expense", "targetCode": 62, "priority": 1,
        })
        assert response.status_code == 201
        assert response.json()["patternType"] == "contains"

        rules = client.get("/api/reconciliation/rules", params={"targetType": "expense"}).json()
        assert rules["count"] == 1

    def test_invalid_regex_rejected(self, client):
        response = client.post("/api/reconciliation/rules", json={
            "patternType": "regex", "pattern": "([", "targetType": "expense", "targetCode": 62,
        })
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_rule"

    def test_missing_field(self, client):
        response = client.post("/api/reconciliation/rules", json={"pattern": "전기료", "targetCode": 62})
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "missing_parameter"
        assert body["parameter"] == "targetType"

    def test_deactivate(self, client):
        rule_id = client.post("/api/reconciliation/rules", json={
            "pattern": "수도", "targetType": "expense", "targetCode": 63,
        }).json()["id"]

        assert client.delete(f"/api/reconciliation/rules/{rule_id}").status_code == 200
        assert client.get("/api/reconciliation/rules").json()["count"] == 0
        assert client.delete("/api/reconciliation/rules/9999").status_code == 404


class TestMatchAndConfirm:
    """Test the matching and commit endpoints."""

    def test_full_flow(self, client):
        client.post("/api/reconciliation/rules", json={
            "pattern": "전기료", "targetType": "expense", "targetCode": 62, "targetName": "전기료", "priority": 1,
        })
        tx_id = import_rows(client, [ELECTRICITY_ROW]).json()["insertedIds"][0]

        run = client.post("/api/reconciliation/match/auto", json={})
        assert run.status_code == 200
        data = run.json()["data"]
        assert data["summary"]["expense"] == 1
        draft = data["expense"][0]
        assert draft["transactionId"] == tx_id
        assert draft["accountCode"] == 62
        assert "지출 1건" in run.json()["message"]

        confirm = client.post("/api/reconciliation/match/confirm", json={
            "expense": [{"transactionId": tx_id, "accountCode": draft["accountCode"], "vendor": "한국전력"}],
        })
        assert confirm.status_code == 200
        assert confirm.json()["expenseCount"] == 1
        assert confirm.json()["succeededTransactionIds"] == [tx_id]

        again = client.post("/api/reconciliation/match/confirm", json={
            "expense": [{"transactionId": tx_id, "accountCode": 62}],
        })
        assert again.status_code == 200
        assert again.json()["expenseCount"] == 0
        assert again.json()["alreadyProcessedIds"] == [tx_id]

        ledger = client.get("/api/reconciliation/ledger/expense").json()
        assert ledger["count"] == 1
        assert ledger["records"][0]["vendor"] == "한국전력"

        stats = client.get("/api/reconciliation/stats").json()
        assert stats["transactionsByState"]["confirmed"] == 1

    def test_review_and_classify(self, client):
        tx_id = import_rows(client, [{"transactionDate": "2025-03-05", "withdrawal": 15000, "description": "다이소"}]).json()["insertedIds"][0]

        review = client.get("/api/reconciliation/match/review").json()
        assert [i["transaction"]["id"] for i in review["items"]] == [tx_id]

        response = client.post(f"/api/reconciliation/match/review/{tx_id}/classify", json={
            "type": "expense", "code": 64, "vendor": "다이소",
        })
        assert response.status_code == 200
        assert response.json()["draft"]["manual"] is True

        assert client.get("/api/reconciliation/match/review").json()["count"] == 0

    def test_reopen_conflict(self, client):
        tx_id = import_rows(client, [ELECTRICITY_ROW]).json()["insertedIds"][0]

        response = client.post(f"/api/reconciliation/match/{tx_id}/reopen")

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "state_conflict"
        assert body["details"]["current_state"] == "pending"

    def test_recover_with_nothing_stale(self, client):
        data = client.post("/api/reconciliation/match/recover", json={}).json()
        assert data == {"success": True, "confirmed": [], "released": [], "conflicts": []}
