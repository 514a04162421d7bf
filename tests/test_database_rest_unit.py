import json
from datetime import timedelta

import httpx
import pytest
from conftest import T0, TARGET_MINT

from src.utils import database_rest


@pytest.fixture
def rest():
    """Route the REST backend through a scripted transport; yields (module, requests, responses)."""
    requests: list[httpx.Request] = []
    responses: list[httpx.Response] = []

    def route(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if responses:
            return responses.pop(0)
        return httpx.Response(201)

    database_rest.set_client(httpx.Client(base_url="http://rest.test", transport=httpx.MockTransport(route)))
    yield database_rest, requests, responses
    database_rest.set_client(None)


def test_init_db_seeds_singletons_without_overwriting(rest):
    db, requests, _ = rest
    db.init_db()
    assert [(r.method, r.url.path) for r in requests] == [("POST", "/cycle_config"), ("POST", "/cycle_state")]
    assert all("ignore-duplicates" in r.headers["Prefer"] for r in requests)
    assert json.loads(requests[0].content) == {"id": 1}


def test_acquire_lease_is_a_conditional_patch(rest):
    db, requests, responses = rest
    responses.append(httpx.Response(200, json=[{"id": 1, "lease_owner": "me"}]))

    assert db.acquire_cycle_lease("me", T0, 300) is True

    req = requests[0]
    assert req.method == "PATCH"
    assert req.url.params["id"] == "eq.1"
    assert "lease_owner.is.null" in req.url.params["or"]
    assert f'lease_expires_at.lt."{T0.isoformat()}"' in req.url.params["or"]
    assert req.headers["Prefer"] == "return=representation"
    body = json.loads(req.content)
    assert body == {"lease_owner": "me", "lease_expires_at": (T0 + timedelta(seconds=300)).isoformat()}


def test_acquire_lease_held_elsewhere(rest):
    db, _, responses = rest
    responses.append(httpx.Response(200, json=[]))
    assert db.acquire_cycle_lease("me", T0, 300) is False


def test_renew_lease_patches_expiry_for_owner_only(rest):
    db, requests, responses = rest
    responses.append(httpx.Response(200, json=[{"id": 1, "lease_owner": "me"}]))
    responses.append(httpx.Response(200, json=[]))

    assert db.renew_cycle_lease("me", T0, 300) is True
    assert db.renew_cycle_lease("me", T0, 300) is False

    req = requests[0]
    assert req.method == "PATCH"
    assert req.url.params["lease_owner"] == "eq.me"
    assert "or" not in req.url.params
    assert json.loads(req.content) == {"lease_expires_at": (T0 + timedelta(seconds=300)).isoformat()}


def test_save_state_filters_on_owner(rest):
    db, requests, responses = rest
    responses.append(httpx.Response(200, json=[]))

    assert db.save_cycle_state("HOLDING", 3, T0, 7, "me") is False
    assert requests[0].url.params["lease_owner"] == "eq.me"
    body = json.loads(requests[0].content)
    assert (body["phase"], body["active_worker_index"], body["version"]) == ("HOLDING", 3, 7)


def test_get_cycle_config_and_state(rest):
    db, _, responses = rest
    responses.append(
        httpx.Response(
            200,
            json=[{"target_asset": TARGET_MINT, "asset_symbol": "BONK", "slippage_bps": 300, "is_running": True,
                   "updated_at": "2026-01-05T12:00:00+00:00"}],
        )
    )
    responses.append(
        httpx.Response(
            200,
            json=[{"phase": "COOLING", "active_worker_index": 4, "phase_started_at": None, "version": None,
                   "lease_owner": None, "lease_expires_at": None}],
        )
    )

    assert db.get_cycle_config()["is_running"] is True
    state = db.get_cycle_state()
    assert (state["phase"], state["active_worker_index"], state["version"]) == ("COOLING", 4, 0)


def test_missing_singleton_row(rest):
    db, _, responses = rest
    responses.append(httpx.Response(200, json=[]))
    with pytest.raises(RuntimeError, match=r"run init-db"):
        db.get_cycle_state()


def test_write_failure_raises(rest):
    db, _, responses = rest
    responses.append(httpx.Response(409, text="conflict"))
    with pytest.raises(database_rest.RestStoreError, match=r"409"):
        db.record_trade("w0", "fund", 1, "success")


def test_history_reads_degrade_to_empty(rest):
    db, _, responses = rest
    responses.extend([httpx.Response(500, text="down"), httpx.Response(500, text="down")])
    assert db.get_trades().empty
    assert db.get_trade_stats()["total_entries"] == 0


def test_trade_stats_from_rows(rest):
    db, requests, responses = rest
    responses.append(
        httpx.Response(
            200,
            json=[
                {"kind": "fund", "status": "success", "amount": 500, "timestamp": "2026-01-05T12:00:00+00:00"},
                {"kind": "buy", "status": "failed", "amount": 0, "timestamp": "2026-01-05T12:00:01+00:00"},
            ],
        )
    )
    stats = db.get_trade_stats()
    assert (stats["funds"], stats["failures"], stats["funded_lamports"]) == (1, 1, 500)
    assert requests[0].url.params["select"] == "kind,status,amount,timestamp"


def test_worker_upsert_uses_wallet_index_conflict(rest):
    db, requests, _ = rest
    db.add_worker_account(2, "addr", "secret")
    assert requests[0].url.params["on_conflict"] == "wallet_index"
    assert "merge-duplicates" in requests[0].headers["Prefer"]
