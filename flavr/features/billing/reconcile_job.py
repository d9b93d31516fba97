"""
Periodic subscription sync.

Drives reconcile_one over every record whose local status is active, to
catch drift from missed or lost webhooks. Records are independent: one
failure is tallied and logged, never allowed to stop the batch.

A TTL lock keeps a single run active across instances, and every run is
recorded in sync_job_runs.
"""
from __future__ import annotations

import contextvars
import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, update

from flavr.core.config import settings
from flavr.core.database import get_db_session, sync_job_runs
from flavr.core.kv_store import TTLStore
from flavr.core.logging import bind_request_id
from flavr.features.billing.service import with_datastore_retry
from flavr.features.entitlements import store as entitlement_store
from flavr.features.entitlements.service import ReconcileOutcome, ReconciliationEngine
from flavr.models.entitlement import EntitlementStatus


logger = logging.getLogger(__name__)

JOB_NAME = "subscription.sync"
LOCK_KEY = "lock:subscription-sync"


def _start_run(now: datetime) -> int:
    with get_db_session() as session:
        result = session.execute(
            insert(sync_job_runs).values(job_name=JOB_NAME, started_at=now, status="running")
        )
        return result.inserted_primary_key[0]


def _finish_run(run_id: int, status: str, stats: Dict[str, Any]) -> None:
    with get_db_session() as session:
        session.execute(
            update(sync_job_runs)
            .where(sync_job_runs.c.id == run_id)
            .values(
                finished_at=datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats, sort_keys=True),
            )
        )


def _reconcile_safely(engine: ReconciliationEngine, user_id: str) -> str:
    try:
        outcome = with_datastore_retry(lambda: engine.reconcile_one(user_id))
    except Exception:
        logger.exception(
            "[sync] reconcile failed",
            extra={"user_id": user_id, "outcome": "failed"},
        )
        return "failed"
    return outcome.value


def run_subscription_sync(
    engine: ReconciliationEngine,
    now: Optional[datetime] = None,
    *,
    store=entitlement_store,
    lock_store: Optional[TTLStore] = None,
    max_workers: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Reconcile every active record once.

    Returns:
        Tally per outcome plus run metadata, or {"skipped": True} when
        another instance holds the lock.
    """
    now = now or datetime.now(timezone.utc)
    token = uuid.uuid4().hex
    if lock_store is not None:
        acquired = lock_store.set(LOCK_KEY, token, settings.SYNC_LOCK_TTL_SECONDS, only_if_absent=True)
        if not acquired:
            logger.info("[sync] another run holds the lock", extra={"outcome": "skipped"})
            return {"skipped": True, "timestamp": now.isoformat()}

    stats: Dict[str, Any] = {outcome.value: 0 for outcome in ReconcileOutcome}
    stats["failed"] = 0
    run_id = _start_run(now)
    status = "success"
    try:
        with bind_request_id(f"sync-{run_id}-{token[:8]}"):
            user_ids = store.list_user_ids_by_status(EntitlementStatus.ACTIVE)
            stats["total"] = len(user_ids)
            workers = max(1, max_workers or settings.SYNC_MAX_WORKERS)

            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subscription-sync") as pool:
                # Worker threads do not inherit context; each task carries a copy
                futures = {
                    pool.submit(contextvars.copy_context().run, _reconcile_safely, engine, uid): uid
                    for uid in user_ids
                }
                for future in as_completed(futures):
                    outcome = future.result()
                    stats[outcome] += 1
                    logger.info(
                        "[sync] record processed",
                        extra={"user_id": futures[future], "outcome": outcome},
                    )
            logger.info("[sync] run complete", extra={"run_id": run_id, **stats})
    except Exception:
        status = "failed"
        raise
    finally:
        _finish_run(run_id, status, stats)
        if lock_store is not None:
            lock_store.delete_if_equals(LOCK_KEY, token)

    return {**stats, "run_id": run_id, "skipped": False, "timestamp": now.isoformat()}
