#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import time
from datetime import datetime, timezone

from civic_intel.config import settings
from civic_intel.logger import init_logging
from civic_intel.services.lifecycle_service import ComplaintLifecycleService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scheduled hotspot detection worker")
    parser.add_argument("--loop", action="store_true", help="Keep running on a fixed cadence")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=settings.hotspot_interval_seconds,
        help="Cadence between runs when --loop is given",
    )
    parser.add_argument("--as-of", default=None, help="ISO timestamp to evaluate the window at (single run only)")
    parser.add_argument(
        "--allow-memory",
        action="store_true",
        help="Run against the in-memory store when Supabase is not configured (testing only)",
    )
    return parser.parse_args()


def _as_of(raw: str | None) -> datetime | None:
    if not raw:
        return None
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def main() -> None:
    args = parse_args()
    log = init_logging(settings)
    service = ComplaintLifecycleService()
    if not service.repo.using_supabase:
        if not args.allow_memory:
            service.shutdown()
            raise SystemExit(
                "Supabase persistence is not configured; the worker would see no complaints. "
                "Pass --allow-memory to run anyway."
            )
        log.warning("In-memory persistence: this worker sees no complaints submitted through the API")

    try:
        if not args.loop:
            print(json.dumps(service.run_hotspot_detection(_as_of(args.as_of)), indent=2))
            return
        while True:
            try:
                report = service.run_hotspot_detection()
            except Exception:
                log.exception("Hotspot detection run failed")
            else:
                print(json.dumps(report))
            time.sleep(max(1.0, args.interval_seconds))
    except KeyboardInterrupt:
        log.info("Hotspot worker stopped")
    finally:
        service.shutdown()


if __name__ == "__main__":
    main()
