"""
Periodic subscription sync tests.

max_workers=1 throughout: the in-memory SQLite database is a single shared
connection.
"""
import json
from datetime import timedelta

from sqlalchemy import select

from flavr.core.database import get_db_session, sync_job_runs
from flavr.core.kv_store import InMemoryTTLStore
from flavr.features.billing.provider import VerificationResult, VerificationUnknownError
from flavr.features.billing.reconcile_job import JOB_NAME, LOCK_KEY, run_subscription_sync
from flavr.features.entitlements import store
from flavr.features.entitlements.service import ReconciliationEngine
from flavr.models.entitlement import EntitlementStatus, Provider, SubscriptionDelta, Tier


class ScriptedVerifier:
    """Per-subscription outcomes keyed by ref."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def verify(self, ref):
        self.calls.append(ref)
        outcome = self.outcomes[ref]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _activate(engine, clock, user_id, subscription_id):
    engine.apply_provider_event(
        user_id,
        Provider.STRIPE,
        SubscriptionDelta(
            status=EntitlementStatus.ACTIVE,
            tier=Tier.MONTHLY,
            period_end=clock.now + timedelta(days=10),
            linkage={"stripe_subscription_id": subscription_id},
            occurred_at=clock.now,
        ),
    )


def _result(active, expires_at):
    status = EntitlementStatus.ACTIVE if active else EntitlementStatus.CANCELED
    return VerificationResult(
        active=active,
        expires_at=expires_at,
        raw_status=status.value,
        status=status,
        tier=Tier.MONTHLY if active else Tier.FREE,
    )


def test_sync_tallies_outcomes_and_records_run(clock):
    same_expiry = clock.now + timedelta(days=10)
    verifier = ScriptedVerifier(
        {
            "sub_a": _result(True, same_expiry),
            "sub_b": _result(False, clock.now - timedelta(days=1)),
            "sub_c": VerificationUnknownError("timeout", provider="stripe"),
            "sub_d": RuntimeError("unexpected payload"),
        }
    )
    engine = ReconciliationEngine(verifiers={Provider.STRIPE: verifier}, now_fn=clock)
    for user_id, sub in (("a", "sub_a"), ("b", "sub_b"), ("c", "sub_c"), ("d", "sub_d")):
        _activate(engine, clock, user_id, sub)
    store.ensure_record("free-user", now=clock.now)

    result = run_subscription_sync(engine, now=clock.now, lock_store=InMemoryTTLStore(), max_workers=1)

    assert result["skipped"] is False
    assert result["total"] == 4
    assert result["unchanged"] == 1
    assert result["reconciled"] == 1
    assert result["unknown"] == 1
    assert result["failed"] == 1
    assert sorted(verifier.calls) == ["sub_a", "sub_b", "sub_c", "sub_d"]

    assert store.get_record("b").status == EntitlementStatus.CANCELED
    assert store.get_record("c").status == EntitlementStatus.ACTIVE

    with get_db_session() as session:
        runs = session.execute(select(sync_job_runs)).fetchall()
    assert len(runs) == 1
    assert runs[0].job_name == JOB_NAME
    assert runs[0].status == "success"
    assert json.loads(runs[0].stats_json)["reconciled"] == 1


def test_sync_skips_when_lock_held(clock):
    lock_store = InMemoryTTLStore()
    lock_store.set(LOCK_KEY, "other-instance", 600)
    engine = ReconciliationEngine(verifiers={}, now_fn=clock)

    result = run_subscription_sync(engine, now=clock.now, lock_store=lock_store, max_workers=1)

    assert result["skipped"] is True
    assert lock_store.get(LOCK_KEY) == "other-instance"
    with get_db_session() as session:
        assert session.execute(select(sync_job_runs)).fetchall() == []


def test_sync_releases_lock(clock):
    lock_store = InMemoryTTLStore()
    engine = ReconciliationEngine(verifiers={}, now_fn=clock)

    run_subscription_sync(engine, now=clock.now, lock_store=lock_store, max_workers=1)

    assert lock_store.get(LOCK_KEY) is None


def test_empty_sync(clock):
    engine = ReconciliationEngine(verifiers={}, now_fn=clock)
    result = run_subscription_sync(engine, now=clock.now, max_workers=1)
    assert result["total"] == 0
    assert result["run_id"] >= 1


def test_sync_leaves_lock_taken_over_by_another_instance(clock, monkeypatch):
    lock_store = InMemoryTTLStore()
    engine = ReconciliationEngine(verifiers={}, now_fn=clock)

    def lock_expires_mid_run(status):
        # Our TTL ran out and another instance acquired the lock
        lock_store.set(LOCK_KEY, "other-instance", 600)
        return []

    monkeypatch.setattr(store, "list_user_ids_by_status", lock_expires_mid_run)

    run_subscription_sync(engine, now=clock.now, lock_store=lock_store, max_workers=1)

    assert lock_store.get(LOCK_KEY) == "other-instance"
