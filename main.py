"""Wallet rotator entrypoint.

This file intentionally stays small. The runner logic lives in
`src/trader/runner.py` so it can be maintained and tested more easily.

    python main.py            # loop, one step per cycle.step_interval_seconds
    python main.py --once     # single step (cron / external scheduler)
"""

from __future__ import annotations

import sys
from pathlib import Path

from dotenv import load_dotenv


def _load_local_secrets() -> None:
    """Load local secrets for development runs (ignored by git)."""
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)


def main() -> int:
    _load_local_secrets()

    # Imported after the env is loaded: the database backend is selected at import time.
    from src.trader.runner import main as runner_main

    return runner_main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
