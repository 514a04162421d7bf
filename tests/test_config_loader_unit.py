from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from src.utils.config_loader import (
    default_config_path,
    load_config,
    load_cycle_settings,
    validate_config,
    worst_case_step_seconds,
)


def _write(tmp_path: Path, doc: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(doc), encoding="utf-8")
    return path


def _minimal() -> dict:
    return {
        "network": {"rpc_url": "http://rpc.test"},
        "cycle": {"pool_size": 4, "hold_window_seconds": 90, "cycle_window_seconds": 300},
        "treasury": {},
    }


def test_shipped_config_is_valid():
    cfg = load_config(default_config_path(), force_reload=True)
    settings = load_cycle_settings(cfg)
    assert settings.pool_size >= 1
    assert settings.min_reserve == 50_000_000
    assert settings.safety_factor == Decimal("0.99")


def test_load_cycle_settings_converts_sol_to_lamports():
    cfg = _minimal()
    cfg["treasury"] = {"min_reserve_sol": 0.1, "min_viable_trade_sol": "0.002"}
    cfg["trading"] = {"fee_buffer_sol": 0.004}
    cfg["settlement"] = {"rent_buffer_sol": 0.0015}
    settings = load_cycle_settings(cfg)
    assert settings.min_reserve == 100_000_000
    assert settings.min_viable_trade == 2_000_000
    assert settings.fee_buffer == 4_000_000
    assert settings.rent_buffer == 1_500_000
    assert settings.hold_window_seconds == 90.0


def test_load_cycle_settings_defaults():
    settings = load_cycle_settings(_minimal())
    assert settings.lease_ttl_seconds == 600.0
    assert settings.step_budget_seconds == pytest.approx(320.0)
    assert settings.liquidation_slippage_bps == 1000
    assert settings.funding_asset == "So11111111111111111111111111111111111111112"


@pytest.mark.parametrize(
    "section, key, value, message",
    [
        ("cycle", "pool_size", 0, r"pool_size must be >= 1"),
        ("cycle", "hold_window_seconds", 0, r"hold_window_seconds must be > 0"),
        ("treasury", "safety_factor", 1.5, r"safety_factor"),
        ("treasury", "min_reserve_sol", -1, r"min_reserve_sol must be >= 0"),
        ("treasury", "min_reserve_sol", "lots", r"min_reserve_sol must be a number"),
    ],
)
def test_load_cycle_settings_rejects_bad_values(section, key, value, message):
    cfg = _minimal()
    cfg[section][key] = value
    with pytest.raises(ValueError, match=message):
        load_cycle_settings(cfg)


def test_worst_case_step_grows_with_timeouts_and_retries():
    base = worst_case_step_seconds(_minimal())
    cfg = _minimal()
    cfg["swap"] = {"max_attempts": 3, "quote_urls": ["https://a.test/quote", "https://b.test/quote", "https://c.test/quote"]}
    # 5 more quote calls and 1 more build, 15s each
    assert worst_case_step_seconds(cfg) == pytest.approx(base + 6 * 15)

    cfg = _minimal()
    cfg["cycle"]["confirm_timeout_seconds"] = 90
    # Two confirmations on the slower leg.
    assert worst_case_step_seconds(cfg) == pytest.approx(base + 2 * 45)


def test_lease_ttl_must_cover_the_worst_case_step():
    cfg = _minimal()
    cfg["cycle"]["lease_ttl_seconds"] = 300
    with pytest.raises(ValueError, match=r"lease_ttl_seconds (300) must be at least the worst-case step duration (320s)"):
        load_cycle_settings(cfg)

    cfg["cycle"]["lease_ttl_seconds"] = 320
    assert load_cycle_settings(cfg).lease_ttl_seconds == 320.0


def test_validate_config_requires_sections():
    with pytest.raises(ValueError, match=r"Missing required config sections: treasury"):
        validate_config({"network": {"rpc_url": "x"}, "cycle": {}})
    cfg = _minimal()
    del cfg["cycle"]["cycle_window_seconds"]
    with pytest.raises(ValueError, match=r"cycle.cycle_window_seconds"):
        validate_config(cfg)


def test_env_overrides_and_cache(tmp_path, monkeypatch):
    path = _write(tmp_path, _minimal())
    monkeypatch.setenv("ROTATOR_RPC_URL", "http://override.test")
    monkeypatch.setenv("ROTATOR_POOL_SIZE", "7")
    monkeypatch.setenv("ROTATOR_NOTIFICATIONS_ENABLED", "false")

    cfg = load_config(path, force_reload=True)
    assert cfg["network"]["rpc_url"] == "http://override.test"
    assert cfg["cycle"]["pool_size"] == 7
    assert cfg["notifications"]["enabled"] is False

    # Callers get copies of the cached document.
    cfg["cycle"]["pool_size"] = 99
    assert load_config(path)["cycle"]["pool_size"] == 7


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)
