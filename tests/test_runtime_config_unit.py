import pytest

from src.utils.runtime_config import (
    MAX_SLIPPAGE_BPS,
    MIN_SLIPPAGE_BPS,
    apply_cycle_config_patch,
    default_cycle_config,
    normalise_cycle_config,
    validate_cycle_config,
)

MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def test_default_cycle_config_shape():
    doc = default_cycle_config()
    assert doc == {"target_asset": None, "asset_symbol": None, "slippage_bps": 300, "is_running": False}
    validate_cycle_config(doc)


def test_normalise_cycle_config_migrates_legacy_keys():
    out = normalise_cycle_config({"token_mint": f"  {MINT} ", "token_symbol": "bonk", "id": 1, "updated_at": "x"})
    assert out["target_asset"] == MINT
    assert out["asset_symbol"] == "BONK"
    assert "token_mint" not in out
    assert "id" not in out and "updated_at" not in out
    assert out["slippage_bps"] == 300


def test_normalise_prefers_new_key_over_legacy():
    out = normalise_cycle_config({"token_mint": "legacy", "target_asset": MINT})
    assert out["target_asset"] == MINT


def test_normalise_fills_nulls_for_required_fields():
    out = normalise_cycle_config({"slippage_bps": None, "is_running": None, "target_asset": ""})
    assert out["slippage_bps"] == 300
    assert out["is_running"] is False
    assert out["target_asset"] is None


def test_normalise_rejects_non_mapping():
    with pytest.raises(ValueError, match=r"must be an object"):
        normalise_cycle_config(["not", "a", "dict"])


def test_validate_cycle_config_rejects_unknown_key():
    doc = {**default_cycle_config(), "made_up_key": 123}
    with pytest.raises(ValueError, match=r"Unsupported cycle config key"):
        validate_cycle_config(doc)


@pytest.mark.parametrize("bps", [MIN_SLIPPAGE_BPS, 300, MAX_SLIPPAGE_BPS])
def test_validate_slippage_bounds_inclusive(bps):
    validate_cycle_config({**default_cycle_config(), "slippage_bps": bps})


@pytest.mark.parametrize("bps", [MIN_SLIPPAGE_BPS - 1, MAX_SLIPPAGE_BPS + 1, "300", True, 2.5])
def test_validate_slippage_rejects(bps):
    with pytest.raises(ValueError, match=r"slippage_bps"):
        validate_cycle_config({**default_cycle_config(), "slippage_bps": bps})


def test_validate_is_running_must_be_bool():
    with pytest.raises(ValueError, match=r"is_running must be boolean"):
        validate_cycle_config({**default_cycle_config(), "target_asset": MINT, "is_running": "yes"})


def test_validate_symbol_length():
    with pytest.raises(ValueError, match=r"too long"):
        validate_cycle_config({**default_cycle_config(), "asset_symbol": "X" * 21})


def test_cannot_start_without_target_asset():
    with pytest.raises(ValueError, match=r"without a target_asset"):
        validate_cycle_config({**default_cycle_config(), "is_running": True})


def test_apply_patch_merges_and_validates():
    current = {**default_cycle_config(), "target_asset": MINT, "updated_at": "2026-01-05T12:00:00+00:00"}
    merged = apply_cycle_config_patch(current, {"is_running": True, "token_symbol": "wif"})
    assert merged == {"target_asset": MINT, "asset_symbol": "WIF", "slippage_bps": 300, "is_running": True}


def test_apply_patch_legacy_key_overrides_current_value():
    other = "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm"
    merged = apply_cycle_config_patch({**default_cycle_config(), "target_asset": MINT}, {"token_mint": other})
    assert merged["target_asset"] == other


def test_apply_patch_rejects_invalid_result():
    with pytest.raises(ValueError, match=r"between"):
        apply_cycle_config_patch(default_cycle_config(), {"slippage_bps": 9000})
