"""
Subscription sync worker.

Runs the periodic reconciliation of active subscriptions, once or on a fixed
interval. Deploy one or more; the Redis lock keeps runs from overlapping.
"""
from __future__ import annotations

import argparse
import logging
import time
from typing import Optional

from redis.exceptions import RedisError

from flavr.core.config import settings
from flavr.core.database import create_all_tables
from flavr.core.kv_store import InMemoryTTLStore, RedisTTLStore, TTLStore
from flavr.core.logging import configure_logging
from flavr.features.billing.reconcile_job import run_subscription_sync
from flavr.features.entitlements.service import get_engine


logger = logging.getLogger("flavr.workers.subscription_sync")


def _lock_store(use_redis: bool) -> TTLStore:
    if not use_redis:
        return InMemoryTTLStore()
    store = RedisTTLStore()
    try:
        store.client.ping()
    except RedisError as exc:
        raise RuntimeError(f"Redis unavailable for sync lock: {exc}")
    return store


def run_once(lock_store: Optional[TTLStore] = None, max_workers: Optional[int] = None) -> dict:
    return run_subscription_sync(get_engine(), lock_store=lock_store, max_workers=max_workers)


def run_loop(interval_seconds: int, lock_store: Optional[TTLStore] = None, max_workers: Optional[int] = None) -> None:
    while True:
        started = time.monotonic()
        try:
            result = run_once(lock_store=lock_store, max_workers=max_workers)
            logger.info("[sync] loop iteration complete", extra={"result": result})
        except Exception:
            logger.exception("[sync] loop iteration failed")
        elapsed = time.monotonic() - started
        time.sleep(max(1.0, interval_seconds - elapsed))


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile active subscriptions against their providers.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", dest="loop", action="store_false", help="Run a single sync pass (default).")
    mode.add_argument("--loop", dest="loop", action="store_true", help="Run forever on --interval.")
    parser.add_argument("--interval", type=int, default=settings.SYNC_INTERVAL_SECONDS, help="Seconds between runs.")
    parser.add_argument("--max-workers", dest="max_workers", type=int, default=settings.SYNC_MAX_WORKERS)
    parser.add_argument("--no-redis", dest="use_redis", action="store_false", help="Use a process-local lock.")
    parser.set_defaults(loop=False, use_redis=True)
    args = parser.parse_args()

    configure_logging(settings.ENV)
    create_all_tables()
    lock_store = _lock_store(args.use_redis)

    if args.loop:
        run_loop(args.interval, lock_store=lock_store, max_workers=args.max_workers)
        return 0

    result = run_once(lock_store=lock_store, max_workers=args.max_workers)
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
