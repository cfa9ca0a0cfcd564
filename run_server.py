"""API server entry point.

Usage:
    python run_server.py

    # Custom host/port and database:
    python run_server.py --host 0.0.0.0 --port 9000 --db /var/lib/bulk/jobs.db
"""
from __future__ import annotations

import argparse
import logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Bulk Job Engine API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--db", default=None, help="SQLite file for jobs and work items")
    parser.add_argument("--no-recovery", action="store_true", help="Disable the stale-job recovery sweep")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import uvicorn

    from bulk_engine.api.config import ApiSettings
    from bulk_engine.api.main import create_app

    overrides = {"host": args.host, "port": args.port, "log_level": args.log_level}
    if args.db:
        overrides["job_db_path"] = args.db
    if args.no_recovery:
        overrides["recovery_enabled"] = False
    settings = ApiSettings(**overrides)
    app = create_app(settings)

    logger.info("Starting Bulk Job Engine API on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
