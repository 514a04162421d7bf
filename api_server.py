"""
HTTP trigger + read API for the wallet rotator.

    python api_server.py                      # 127.0.0.1:8000, scheduler wired at startup
    python api_server.py --port 8080
    python api_server.py --read-only          # history endpoints only; /api/cycle/step returns 503
"""

import argparse
import fcntl
import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

logger = logging.getLogger("api_server")


def _configure_logging(log_file: str) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_file, mode="a"),
        ],
    )


def _load_local_env() -> None:
    # Must run before the app import: the database backend is chosen when it is imported.
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)


def _acquire_instance_lock(port: int):
    """One server per port; returns the open lock file, which must stay referenced."""
    lock_path = Path(f".rotator_api_{port}.lock")
    lock_f = lock_path.open("w")
    try:
        fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        lock_f.close()
        return None
    lock_f.write(str(os.getpid()))
    lock_f.flush()
    return lock_f


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Wallet rotator API server")
    parser.add_argument("--host", default=os.environ.get("ROTATOR_API_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("ROTATOR_API_PORT", "8000")))
    parser.add_argument("--read-only", action="store_true", help="Do not wire the cycle scheduler")
    parser.add_argument("--log-file", default="rotator_api.log")
    args = parser.parse_args(argv)

    _configure_logging(args.log_file)
    _load_local_env()
    if args.read_only:
        os.environ["ROTATOR_DISABLE_SCHEDULER"] = "1"

    lock = _acquire_instance_lock(args.port)
    if lock is None:
        logger.error("Another API instance is already serving port %s (lockfile busy). Exiting.", args.port)
        return 1

    try:
        logger.info("Starting rotator API server on %s:%s", args.host, args.port)
        # A single worker: steps are serialised in-process, and SQLite prefers one writer.
        uvicorn.run(
            "src.api.app:app",
            host=args.host,
            port=args.port,
            reload=False,
            log_level="info",
            workers=1,
        )
    except Exception as e:
        logger.error(f"Fatal error in API server: {e}", exc_info=True)
        return 1
    finally:
        lock.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
