"""Main entry point for Forgebox.

Usage:
    python -m forgebox serve     # Start the API server (default)
    python -m forgebox sweep     # Drain admissible queued jobs once (for cron/k8s CronJob)
    python -m forgebox health    # Print breaker, limiter and queue state as JSON
    python -m forgebox init-db   # Create database tables
"""

import argparse
import json
import os
import sys


def main(argv=None):
    """Main CLI entry point for Forgebox."""
    parser = argparse.ArgumentParser(
        prog="forgebox",
        description="Forgebox - admission control and agent pipeline for app generation",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("--log-level", default=None, help="Log level (default: FORGEBOX_LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the Forgebox API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    subparsers.add_parser("sweep", help="Run one job-queue sweep and exit")
    subparsers.add_parser("health", help="Print the operational health view")
    subparsers.add_parser("init-db", help="Create database tables")

    args = parser.parse_args(argv)

    if args.version:
        from .version import __version__

        print(f"Forgebox {__version__}")
        return 0

    if args.command in (None, "serve"):
        import uvicorn

        # The server process configures structured logging itself (forgebox.main)
        if args.log_level:
            os.environ["FORGEBOX_LOG_LEVEL"] = args.log_level

        uvicorn.run(
            "forgebox.main:app",
            host=getattr(args, "host", "127.0.0.1"),
            port=getattr(args, "port", 8000),
            reload=getattr(args, "reload", False),
        )
        return 0

    from .config import settings, validate_startup_config
    from .database import init_db
    from .logging_config import configure_logging

    configure_logging(log_level=args.log_level)

    try:
        validate_startup_config()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    init_db()
    if args.command == "init-db":
        print("Database tables created")
        return 0

    from .orchestrator import build_service

    service = build_service(settings)
    if args.command == "sweep":
        processed = service.sweep()
        print(json.dumps({"processed": processed, "queue_depth": service.queue.depth_by_status()}))
        return 0

    if args.command == "health":
        print(service.get_health().model_dump_json(indent=2))
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
