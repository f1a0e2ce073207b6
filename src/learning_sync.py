"""
Correlation Engine — Command Line Entry Point
==============================================
Usage:
    python learning_sync.py --sweep                  # One batch sweep, then exit
    python learning_sync.py --serve                  # HTTP + WebSocket server with
                                                     # the periodic sweep and realtime worker
    python learning_sync.py --recovery USER_ID       # Score today's recovery for a user
    python learning_sync.py --interventions USER_ID  # Evaluate and run interventions
    python learning_sync.py --migrate                # Apply the schema only

Every mode runs the idempotent startup migrations first unless --skip-migrate
is given.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import date

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("learning_sync")

from pipeline.migrations import ensure_startup_schema
from routes.helpers import _to_jsonable
from services import build_services
from settings import EngineSettings


def _print(payload) -> None:
    print(json.dumps(_to_jsonable(payload), indent=2, ensure_ascii=False))


def main():
    parser = argparse.ArgumentParser(
        description="Cross-domain correlation and intervention engine"
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--sweep", action="store_true",
                      help="Run one pattern-learning sweep and exit")
    mode.add_argument("--serve", action="store_true",
                      help="Serve the API with the scheduled sweep and realtime worker")
    mode.add_argument("--recovery", metavar="USER_ID",
                      help="Recalculate a user's recovery score")
    mode.add_argument("--interventions", metavar="USER_ID",
                      help="Evaluate and execute interventions for a user")
    mode.add_argument("--migrate", action="store_true",
                      help="Apply startup migrations and exit")
    parser.add_argument("--date", type=date.fromisoformat, default=None,
                        help="Day for --recovery (YYYY-MM-DD, default: today)")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument("--skip-migrate", action="store_true",
                        help="Do not run startup migrations")
    args = parser.parse_args()

    settings = EngineSettings.from_env()
    if not settings.conn_str:
        log.error("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")
        sys.exit(1)

    if not args.skip_migrate:
        try:
            ensure_startup_schema(settings.conn_str)
        except Exception as e:
            log.error("Startup migrations failed: %s", e)
            sys.exit(1)
    if args.migrate:
        sys.exit(0)

    services = build_services(settings)

    if args.sweep:
        status = services.sweep.run()
        strict_health = os.getenv("STRICT_PIPELINE_HEALTH", "0").strip() == "1"
        if strict_health:
            sys.exit(0 if status["overall_status"] == "success" else 1)
        sys.exit(0 if status["overall_status"] != "failed" else 1)

    if args.recovery:
        result = services.recovery.recalculate(args.recovery, args.date)
        if result is None:
            log.warning("No wearable or sleep data for %s; nothing scored", args.recovery)
            sys.exit(1)
        _print(result)
        sys.exit(0)

    if args.interventions:
        try:
            report = services.interventions.execute_for_user(args.interventions)
        finally:
            services.interventions.shutdown(wait=True)
        _print(report)
        sys.exit(0 if report["failed"] == 0 else 1)

    if args.serve:
        import uvicorn

        from api import create_app

        app = create_app(services, start_background=True)
        uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
