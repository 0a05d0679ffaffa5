"""
Operator commands.

    rainbowcast init-db          create tables
    rainbowcast worker           run the job worker until interrupted
    rainbowcast scan [--now]     enqueue a monitoring scan (or run it inline)
    rainbowcast capture ID       enqueue a weather capture (or run it inline)
    rainbowcast serve            run the HTTP API with uvicorn
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from .config import configure_logging, get_settings

logger = logging.getLogger("rainbowcast.cli")


def cmd_init_db(args) -> int:
    from .db import ensure_tables_exist

    ensure_tables_exist()
    logger.info("[init-db] tables ready")
    return 0


def cmd_worker(args) -> int:
    from .db import SessionLocal
    from .jobs import Worker

    worker = Worker(SessionLocal, queues=args.queue or None)

    def stop(signum, frame):
        logger.info("[worker] signal %s received, finishing current batch", signum)
        worker.stop()

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)
    worker.run_forever(poll_interval=args.poll_interval or get_settings().worker_poll_interval)
    return 0


def cmd_scan(args) -> int:
    from . import jobs, services
    from .db import SessionLocal
    from .monitoring import SCAN_JOB

    with SessionLocal() as session:
        if not args.now:
            row = jobs.enqueue(session, SCAN_JOB, {})
            session.commit()
            logger.info("[scan] queued job #%s", row.id)
            return 0

        scheduler = services.build_scheduler()
        try:
            report = scheduler.scan(session)
        finally:
            scheduler.evaluator.gateway.close()
    logger.info(
        "[scan] checked=%s throttled=%s favorable=%s errors=%s",
        len(report.checked), len(report.throttled), len(report.favorable), len(report.errors),
    )
    return 0


def cmd_capture(args) -> int:
    from . import capture, services
    from .db import SessionLocal

    with SessionLocal() as session:
        if not args.now:
            row = capture.on_sighting_created(session, args.sighting_id)
            logger.info("[capture] queued job #%s for sighting %s", row.id, args.sighting_id)
            return 0

        coordinator = services.build_coordinator()
        try:
            report = coordinator.capture(session, args.sighting_id)
        finally:
            coordinator.gateway.close()
    logger.info("[capture] stored %s/%s points, radar=%s", report.stored, report.requested, report.radar_stored)
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "rainbowcast.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=False,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rainbowcast", description="Rainbow sighting weather and alert service")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create database tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("worker", help="Run the background job worker")
    p.add_argument("--queue", action="append", help="Only consume this queue (repeatable)")
    p.add_argument("--poll-interval", type=float, default=None, help="Seconds to sleep when idle")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("scan", help="Scan monitoring locations for rainbow conditions")
    p.add_argument("--now", action="store_true", help="Run the scan in this process instead of queueing it")
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("capture", help="Capture weather history for a sighting")
    p.add_argument("sighting_id", type=int)
    p.add_argument("--now", action="store_true", help="Run the capture in this process instead of queueing it")
    p.set_defaults(func=cmd_capture)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
