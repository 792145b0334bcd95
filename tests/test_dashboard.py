import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
from aiohttp import test_utils

from config import BackfillConfig, ValidationConfig
from dashboard import Dashboard, DecimalEncoder
from exchange.models import BackfillStatus, Severity
from tracking.backfill import BackfillOrchestrator
from tracking.validator import Validator
from tests.helpers import NOW, FakeFetcher, candle, minute


@pytest.fixture
def fetcher():
    return FakeFetcher({"A": [candle(minute(1), high="3", low="0.5")]})


@pytest.fixture
def tracker(db, fetcher, sleep_recorder):
    backfill = BackfillOrchestrator(
        BackfillConfig(stale_after_hours=0), db, fetcher, clock=lambda: NOW, sleep=sleep_recorder,
    )
    validator = Validator(ValidationConfig(), db, clock=lambda: NOW)
    return SimpleNamespace(db=db, backfill=backfill, validator=validator)


@pytest.fixture
async def client(tracker):
    dashboard = Dashboard(tracker)
    test_client = test_utils.TestClient(test_utils.TestServer(dashboard.app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


def test_encoder_handles_decimal_and_enum():
    text = json.dumps({"p": Decimal("1.5"), "s": Severity.ERROR}, cls=DecimalEncoder)
    assert json.loads(text) == {"p": 1.5, "s": "error"}


async def test_backfill_start_runs_and_reports(client, tracker, add_entry):
    entry = add_entry("A")

    resp = await client.post("/api/backfill/start")
    assert resp.status == 202
    assert (await resp.json())["status"] == "running"

    await tracker.backfill.wait()
    resp = await client.get("/api/backfill")
    body = await resp.json()
    assert body["status"] == "complete"
    assert body["processed_entries"] == 1

    resp = await client.get(f"/api/entries/{entry.id}")
    body = await resp.json()
    assert body["entry"]["token_id"] == "A"
    assert body["record"]["ath_price"] == 3.0


async def test_second_start_conflicts(client, tracker, fetcher, add_entry):
    add_entry("A")
    fetcher.gate = asyncio.Event()

    assert (await client.post("/api/backfill/start")).status == 202
    assert (await client.post("/api/backfill/start")).status == 409
    assert (await client.post("/api/backfill/reset")).status == 409

    resp = await client.post("/api/backfill/stop")
    assert resp.status == 200
    fetcher.gate.set()
    progress = await tracker.backfill.wait()
    assert progress.status == BackfillStatus.PAUSED

    assert (await client.post("/api/backfill/stop")).status == 409
    assert (await client.post("/api/backfill/reset")).status == 200


async def test_start_with_filter_overrides(client, tracker, fetcher, add_entry):
    add_entry("A")
    add_entry("B")

    resp = await client.post("/api/backfill/start", json={"token_ids": ["B"]})
    assert resp.status == 202
    await tracker.backfill.wait()

    assert fetcher.tokens_fetched() == ["B"]


async def test_start_rejects_bad_body(client):
    resp = await client.post(
        "/api/backfill/start", data="{nope", headers={"Content-Type": "application/json"},
    )
    assert resp.status == 400
    resp = await client.post("/api/backfill/start", json=[1, 2])
    assert resp.status == 400


async def test_validation_and_fix(client, add_entry):
    add_entry("A")

    resp = await client.get("/api/validation", params={"active": "true"})
    body = await resp.json()
    assert resp.status == 200
    assert body["total_entries"] == 1
    assert body["issues"][0]["type"] == "MISSING_ATH"
    assert body["health_score"] == 0

    resp = await client.post("/api/validation/fix")
    body = await resp.json()
    assert body["fix"]["fixed_count"] == 0
    assert body["report"]["warning_count"] == 1


async def test_entry_lookup_errors(client):
    assert (await client.get("/api/entries/abc")).status == 400
    assert (await client.get("/api/entries/999")).status == 404
