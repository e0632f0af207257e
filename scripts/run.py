#!/usr/bin/env python3
"""Start the suggestion service.

Usage:
    python scripts/run.py                 # Socket Mode (development)
    python scripts/run.py --http          # uvicorn serving /slack/events
    python scripts/run.py --http --port 8080
    python scripts/run.py --check         # Print effective pipeline settings and exit

Only one process may consume Slack events at a time; a second copy would
deliver every suggestion twice. The PID lock below enforces that.
"""

import argparse
import os
import sys
from pathlib import Path

import psutil
import structlog

LOCK_FILE = Path("/tmp/speakforme.pid")

logger = structlog.get_logger()


def _lock_holder() -> int | None:
    """PID of a live suggestion service holding the lock, if any."""
    try:
        pid = int(LOCK_FILE.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None
    try:
        cmdline = " ".join(psutil.Process(pid).cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    return pid if "speakforme" in cmdline or "scripts/run" in cmdline else None


def acquire_lock() -> bool:
    holder = _lock_holder()
    if holder is not None and holder != os.getpid():
        logger.error("suggestion_service_already_running", pid=holder)
        print(f"Already running as PID {holder}; stop it with: kill {holder}", file=sys.stderr)
        return False
    LOCK_FILE.write_text(str(os.getpid()))
    return True


def print_settings() -> None:
    from speakforme.config import settings

    for name in (
        "env",
        "participation_window_days",
        "escalation_cooldown_hours",
        "survey_cooldown_days",
        "generation_workers",
        "generation_max_attempts",
        "max_queue_depth_per_workspace",
        "max_total_queue_depth",
        "generation_service_url",
    ):
        print(f"{name:32} {getattr(settings, name)}")


def serve_http(port: int) -> None:
    import uvicorn

    from speakforme.config import settings

    logger.info("starting_speakforme", mode="http", port=port)
    uvicorn.run(
        "speakforme.app:api",
        host="0.0.0.0",
        port=port,
        reload=(settings.env == "development"),
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the Speak for Me suggestion service")
    parser.add_argument("--http", action="store_true", help="Serve Slack events over HTTP")
    parser.add_argument("--port", type=int, default=3000, help="Port for HTTP mode")
    parser.add_argument("--check", action="store_true", help="Print settings and exit")
    args = parser.parse_args()

    if args.check:
        print_settings()
        return 0

    if not acquire_lock():
        return 1

    try:
        if args.http:
            serve_http(args.port)
        else:
            from speakforme.app import main as serve_socket_mode

            serve_socket_mode()
        return 0
    except KeyboardInterrupt:
        logger.info("shutting_down", reason="keyboard_interrupt")
        return 0
    except Exception as e:
        logger.error("fatal_error", error=str(e), exc_info=True)
        return 1
    finally:
        LOCK_FILE.unlink(missing_ok=True)


if __name__ == "__main__":
    sys.exit(main())
