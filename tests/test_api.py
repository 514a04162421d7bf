import threading
from types import SimpleNamespace
from uuid import uuid4

import pytest
from conftest import SOL, T0, TARGET_MINT, FakeLedger, FakeStore, make_settings, make_workers
from fastapi.testclient import TestClient

import src.api.app as app_module
from src.api.app import app
from src.domain.models import Phase, StepResult, StepStatus

SECRET = "pytest-cron-secret"


class _StubScheduler:
    def __init__(self, result: StepResult):
        self.result = result
        self.calls = 0
        self.settings = make_settings()

    def run_step(self):
        self.calls += 1
        return self.result


@pytest.fixture
def client(sqlite_db, monkeypatch):
    monkeypatch.setenv("ROTATOR_CRON_SECRET", SECRET)
    monkeypatch.setattr(app_module, "_scheduler", None)
    monkeypatch.setattr(app_module, "_components", None)
    return TestClient(app)


def _install(monkeypatch, status=StepStatus.OK, action="enter_cycle") -> _StubScheduler:
    stub = _StubScheduler(StepResult(status, Phase.HOLDING, 3, action=action, message="Worker 3 funded"))
    monkeypatch.setattr(app_module, "_scheduler", stub)
    return stub


def test_api_health_ok(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["db_ok"] is True
    assert data["backend"] == "sqlite"
    assert data["scheduler_ready"] is False
    assert "db_path" in data


def test_step_requires_configured_secret(client, monkeypatch):
    monkeypatch.delenv("ROTATOR_CRON_SECRET", raising=False)
    _install(monkeypatch)
    assert client.get("/api/cycle/step").status_code == 503


def test_step_rejects_wrong_secret(client, monkeypatch):
    stub = _install(monkeypatch)
    assert client.get("/api/cycle/step", params={"secret": "nope"}).status_code == 401
    assert client.post("/api/cycle/step", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/api/cycle/step").status_code == 401
    assert stub.calls == 0


def test_step_with_query_secret_runs_scheduler(client, monkeypatch):
    stub = _install(monkeypatch)
    resp = client.get("/api/cycle/step", params={"secret": SECRET})
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "ok",
        "phase": "HOLDING",
        "activeWorkerIndex": 3,
        "action": "enter_cycle",
        "remainingSeconds": None,
        "message": "Worker 3 funded",
    }
    assert stub.calls == 1


def test_step_with_bearer_secret(client, monkeypatch):
    _install(monkeypatch, status=StepStatus.SKIPPED, action="none")
    resp = client.post("/api/cycle/step", headers={"Authorization": f"Bearer {SECRET}"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "skipped"


@pytest.mark.parametrize(
    "status, code",
    [(StepStatus.HALTED, 200), (StepStatus.NOT_RUNNING, 200), (StepStatus.ERROR, 500)],
)
def test_step_status_codes(client, monkeypatch, status, code):
    _install(monkeypatch, status=status, action="none")
    resp = client.get("/api/cycle/step", params={"secret": SECRET})
    assert resp.status_code == code
    assert resp.json()["status"] == status.value


def test_step_without_scheduler_is_unavailable(client):
    resp = client.get("/api/cycle/step", params={"secret": SECRET})
    assert resp.status_code == 503


class _HangingScheduler(_StubScheduler):
    def __init__(self):
        super().__init__(StepResult(StepStatus.OK, Phase.HOLDING, 0))
        self.release = threading.Event()

    def run_step(self):
        self.calls += 1
        self.release.wait(5)
        return self.result


def test_step_timeout_defaults_to_lease_ttl(monkeypatch):
    monkeypatch.delenv("ROTATOR_STEP_TIMEOUT_SECONDS", raising=False)
    stub = _StubScheduler(StepResult(StepStatus.OK, Phase.IDLE, 0))
    assert app_module._step_timeout_seconds(stub) == stub.settings.lease_ttl_seconds


def test_step_timeout_returns_error_shaped_body(client, monkeypatch, sqlite_db):
    sqlite_db.acquire_cycle_lease("long-step", T0, 600)
    sqlite_db.save_cycle_state("COOLING", 2, T0, 3, "long-step")
    stub = _HangingScheduler()
    monkeypatch.setattr(app_module, "_scheduler", stub)
    monkeypatch.setenv("ROTATOR_STEP_TIMEOUT_SECONDS", "0.2")
    try:
        resp = client.get("/api/cycle/step", params={"secret": SECRET})
    finally:
        stub.release.set()

    assert resp.status_code == 500
    data = resp.json()
    assert (data["status"], data["phase"], data["activeWorkerIndex"]) == ("error", "COOLING", 2)
    assert "0.2s" in data["message"]


def test_cycle_state_overview(client, sqlite_db):
    for w in make_workers(2):
        sqlite_db.add_worker_account(w.index, w.address, w.secret)

    resp = client.get("/api/cycle/state")
    assert resp.status_code == 200
    data = resp.json()
    assert data["worker_count"] == 2
    assert data["state"]["phase"] == "IDLE"
    assert data["state"]["lease_held"] is False
    assert data["config"]["slippage_bps"] == 300
    # Worker credentials never leave the datastore.
    assert "secret" not in resp.text


def test_config_put_requires_secret(client):
    resp = client.put("/api/config/cycle", json={"target_asset": TARGET_MINT})
    assert resp.status_code == 401


def test_config_put_merges_and_persists(client, sqlite_db):
    resp = client.put(
        "/api/config/cycle",
        params={"secret": SECRET},
        json={"token_mint": TARGET_MINT, "asset_symbol": "bonk", "is_running": True},
    )
    assert resp.status_code == 200
    assert resp.json()["asset_symbol"] == "BONK"

    stored = client.get("/api/config/cycle").json()
    assert stored["target_asset"] == TARGET_MINT
    assert stored["is_running"] is True
    assert sqlite_db.get_cycle_config()["is_running"] is True


def test_config_put_rejects_invalid(client):
    resp = client.put("/api/config/cycle", params={"secret": SECRET}, json={"slippage_bps": 1})
    assert resp.status_code == 400
    assert "slippage_bps" in resp.json()["detail"]


def test_history_endpoints(client, sqlite_db):
    token = f"pytest-api-{uuid4()}"
    sqlite_db.log_event("INFO", token, "pytest")
    sqlite_db.record_trade("w0", "fund", SOL, "success", external_ref="sig")
    sqlite_db.record_trade("w0", "buy", 0, "failed", error="amount_too_small")

    events = client.get("/api/history/events", params={"limit": 50}).json()
    assert any(e.get("message") == token for e in events)

    trades = client.get("/api/history/trades").json()
    assert [t["kind"] for t in trades] == ["buy", "fund"]

    errors = client.get("/api/errors").json()
    assert [e["error"] for e in errors] == ["amount_too_small"]

    stats = client.get("/api/stats").json()
    assert stats["funds"] == 1
    assert stats["failures"] == 1
    assert stats["funded_lamports"] == SOL


def test_history_limit_validation(client):
    assert client.get("/api/history/trades", params={"limit": 0}).status_code == 422


def _install_components(monkeypatch, ledger: FakeLedger, workers) -> None:
    components = SimpleNamespace(
        store=FakeStore(workers),
        ledger=ledger,
        treasury=SimpleNamespace(address="TreasuryAddr111"),
    )
    monkeypatch.setattr(app_module, "_components", components)


def test_balances_lists_treasury_and_workers(client, monkeypatch):
    workers = make_workers(2)
    ledger = FakeLedger()
    ledger.balances.update({"TreasuryAddr111": 3 * SOL, workers[0].address: 2_000_000, workers[1].address: 5_000_000})
    ledger.token_balances[(workers[1].address, TARGET_MINT)] = 42
    _install_components(monkeypatch, ledger, workers)

    resp = client.get("/api/balances", params={"secret": SECRET})

    assert resp.status_code == 200
    data = resp.json()
    assert data["asset"] == TARGET_MINT
    assert data["treasury"]["native"] == 3 * SOL
    assert [(w["index"], w["native"], w["token"]) for w in data["workers"]] == [(0, 2_000_000, 0), (1, 5_000_000, 42)]
    assert data["totals"]["native"] == 7_000_000
    assert data["totals"]["token"] == 42
    assert data["totals"]["holding_workers"] == 1
    assert "secret" not in resp.text


def test_balances_requires_secret_and_ledger(client, monkeypatch):
    assert client.get("/api/balances", params={"secret": SECRET}).status_code == 503
    _install_components(monkeypatch, FakeLedger(), make_workers(1))
    assert client.get("/api/balances").status_code == 401
