"""
CLI: run a triage workflow once, in-process, without a Celery worker.

    python -m triage.agents escalate [--threshold-hours 48]
    python -m triage.agents summarize [--window-days 7]
    python -m triage.agents embed-queue [--limit 5]
    python -m triage.agents classify 42
    python -m triage.agents init-db

Runs the same workflow code as the scheduled Celery tasks. Prints the run
report as JSON. Exit code is 0 on success, 1 when the run could not complete
(for example the model server was unreachable) or some items failed.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from typing import Optional

from triage.cache import SUMMARIES_CACHE_PREFIX, invalidate
from triage.config import TriageSettings
from triage.db_init import init_db
from triage.errors import TriageError
from triage.services import TriageServices


def _settings_from_args(args) -> TriageSettings:
    overrides = {}
    if getattr(args, "threshold_hours", None) is not None:
        overrides["escalation_threshold_hours"] = args.threshold_hours
    if getattr(args, "limit", None) is not None and args.command == "escalate":
        overrides["escalation_batch_limit"] = args.limit
    if getattr(args, "window_days", None) is not None:
        overrides["summary_window_days"] = args.window_days
    if getattr(args, "concurrency", None) is not None:
        overrides["batch_concurrency"] = max(1, args.concurrency)
    return dataclasses.replace(TriageSettings(), **overrides)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Run civic triage agents once.")
    sub = p.add_subparsers(dest="command", required=True)

    esc = sub.add_parser("escalate", help="Draft escalation emails for stale High/Critical issues.")
    esc.add_argument("--threshold-hours", type=float, default=None, help="Age threshold in hours.")
    esc.add_argument("--limit", type=int, default=None, help="Max issues per run.")
    esc.add_argument("--concurrency", type=int, default=None, help="Concurrent model calls.")

    summ = sub.add_parser("summarize", help="Append one weekly bulletin.")
    summ.add_argument("--window-days", type=int, default=None, help="Trailing window in days.")

    queue = sub.add_parser("embed-queue", help="Drain pending embedding jobs.")
    queue.add_argument("--limit", type=int, default=None, help="Jobs to claim this pass.")

    cls = sub.add_parser("classify", help="Classify one issue.")
    cls.add_argument("issue_id", type=int)

    sub.add_parser("init-db", help="Create database tables.")
    return p


def run(args, services: Optional[TriageServices] = None) -> int:
    if args.command == "init-db":
        init_db()
        return 0

    services = services or TriageServices.build(_settings_from_args(args))
    if args.command == "escalate":
        report = services.escalation().run()
        ok = report.failed == 0
    elif args.command == "summarize":
        report = services.summarization().run()
        if report.status == "created":
            invalidate(SUMMARIES_CACHE_PREFIX)
        ok = True
    elif args.command == "embed-queue":
        report = services.embedding_queue().drain(args.limit)
        ok = report.failed == 0
    else:
        report = services.classification().classify(args.issue_id)
        ok = True

    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if ok else 1


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = build_parser().parse_args(argv)
    try:
        return run(args)
    except TriageError as e:
        logging.getLogger("triage-agents").error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
