from __future__ import annotations

from typing import Any

import pandas as pd

LEDGER_KINDS = ("buy", "sell", "fund", "sweep")


def empty_trade_stats() -> dict[str, Any]:
    return {
        "total_entries": 0,
        "buys": 0,
        "sells": 0,
        "funds": 0,
        "sweeps": 0,
        "failures": 0,
        "buy_volume_lamports": 0,
        "funded_lamports": 0,
        "swept_lamports": 0,
        "last_trade_at": None,
    }


def summarise_trades(df: pd.DataFrame) -> dict[str, Any]:
    """
    Aggregate trade-ledger rows (`kind`, `status`, `amount`, `timestamp`) into the operator stats.

    Counts are successful entries per kind; `failures` counts every failed entry. Sell amounts are
    raw token units and are not summed into any lamport total.
    """
    stats = empty_trade_stats()
    if df is None or df.empty:
        return stats

    ok = df[df["status"] == "success"]
    counts = ok["kind"].value_counts()
    stats["total_entries"] = int(len(df))
    stats["buys"] = int(counts.get("buy", 0))
    stats["sells"] = int(counts.get("sell", 0))
    stats["funds"] = int(counts.get("fund", 0))
    stats["sweeps"] = int(counts.get("sweep", 0))
    stats["failures"] = int((df["status"] == "failed").sum())

    amounts = pd.to_numeric(ok["amount"], errors="coerce").fillna(0).astype("int64")
    stats["buy_volume_lamports"] = int(amounts[ok["kind"] == "buy"].sum())
    stats["funded_lamports"] = int(amounts[ok["kind"] == "fund"].sum())
    stats["swept_lamports"] = int(amounts[ok["kind"] == "sweep"].sum())

    if "timestamp" in df.columns:
        ts = pd.to_datetime(df["timestamp"], errors="coerce", utc=True).dropna()
        if not ts.empty:
            stats["last_trade_at"] = ts.max().isoformat()
    return stats
