"""
Entitlement store tests.

Single-statement guards: event ordering, provider compare-and-set, monthly
reset gating, and derived columns written with status.
"""
from datetime import datetime, timedelta, timezone

import pytest

from flavr.features.entitlements import store
from flavr.models.entitlement import UNLIMITED, EntitlementStatus, Provider


def test_ensure_record_is_idempotent(clock):
    first = store.ensure_record("u1", now=clock.now)
    store.increment_usage("u1", "recipe")
    second = store.ensure_record("u1", now=clock.now + timedelta(days=1))

    assert first.status == EntitlementStatus.NONE
    assert first.provider == Provider.NONE
    assert second.recipes_used == 1
    assert second.usage_reset_at == clock.now


def test_status_write_derives_entitlement_columns(clock):
    store.ensure_record("u1", now=clock.now)

    store.write_transition("u1", {"status": EntitlementStatus.TRIALING}, now=clock.now)
    record = store.get_record("u1")
    assert record.has_entitlement is True
    assert record.recipe_limit == UNLIMITED

    store.write_transition("u1", {"status": EntitlementStatus.PAST_DUE}, now=clock.now)
    record = store.get_record("u1")
    assert record.has_entitlement is False
    assert record.recipe_limit == 3


def test_event_guard_rejects_older_events(clock):
    store.ensure_record("u1", now=clock.now)

    assert store.write_transition("u1", {"status": "active"}, event_at=clock.now) is True
    assert store.write_transition("u1", {"status": "canceled"}, event_at=clock.now - timedelta(seconds=1)) is False
    assert store.write_transition("u1", {"status": "active"}, event_at=clock.now) is True
    assert store.get_record("u1").last_event_at == clock.now


def test_provider_guard(clock):
    store.ensure_record("u1", now=clock.now)
    store.write_transition("u1", {"provider": Provider.APPLE, "apple_original_transaction_id": "otx"})

    assert store.write_transition("u1", {"status": "inactive"}, expected_provider=Provider.STRIPE) is False
    assert store.write_transition("u1", {"status": "inactive"}, expected_provider=Provider.APPLE) is True


def test_unknown_column_rejected(clock):
    store.ensure_record("u1", now=clock.now)
    with pytest.raises(ValueError):
        store.write_transition("u1", {"plan_id": "creator"})


def test_find_user_by_linkage(clock):
    store.ensure_record("u1", now=clock.now)
    store.write_transition("u1", {"provider": "stripe", "stripe_subscription_id": "sub_1"})

    assert store.find_user_id_by_linkage("stripe_subscription_id", "sub_1") == "u1"
    assert store.find_user_id_by_linkage("stripe_subscription_id", "sub_2") is None
    assert store.find_user_id_by_linkage("stripe_subscription_id", None) is None
    with pytest.raises(ValueError):
        store.find_user_id_by_linkage("email", "a@b.c")


def test_monthly_reset_only_once(clock):
    store.ensure_record("u1", now=clock.now)
    store.increment_usage("u1", "image")

    assert store.reset_usage_if_new_month("u1", clock.now) is False
    april = datetime(2025, 4, 1, 0, 0, 1, tzinfo=timezone.utc)
    assert store.reset_usage_if_new_month("u1", april) is True
    assert store.reset_usage_if_new_month("u1", april + timedelta(hours=1)) is False
    assert store.get_record("u1").images_used == 0


def test_list_user_ids_by_status(clock):
    for user_id, status in (("b", "active"), ("a", "active"), ("c", "canceled")):
        store.ensure_record(user_id, now=clock.now)
        store.write_transition(user_id, {"status": status})

    assert store.list_user_ids_by_status(EntitlementStatus.ACTIVE) == ["a", "b"]


def test_pseudo_identity_lifecycle(clock):
    created = store.get_or_create_pseudo("anon", "fp", now=clock.now)
    store.increment_pseudo_usage("anon")
    again = store.get_or_create_pseudo("anon", "other-fp", now=clock.now)

    assert created.recipes_used == 0
    assert again.recipes_used == 1
    assert again.fingerprint == "fp"
    assert store.reset_pseudo_usage("anon", now=clock.now) is True
    assert store.get_pseudo("anon").recipes_used == 0


def test_ensure_record_raises_when_row_cannot_be_read_back(clock, monkeypatch):
    monkeypatch.setattr(store, "get_record", lambda user_id: None)
    with pytest.raises(LookupError, match="u1"):
        store.ensure_record("u1", now=clock.now)


def test_pseudo_create_raises_when_row_cannot_be_read_back(clock, monkeypatch):
    monkeypatch.setattr(store, "get_pseudo", lambda pseudo_id: None)
    with pytest.raises(LookupError, match="anon-1"):
        store.get_or_create_pseudo("anon-1", now=clock.now)


def test_verification_moves_last_event_forward_only(clock):
    store.ensure_record("u1", now=clock.now)
    store.write_transition("u1", {"status": "active"}, event_at=clock.now)

    earlier = clock.now - timedelta(hours=1)
    assert store.write_transition("u1", {"last_verified_at": earlier}, verified_at=earlier) is True
    assert store.get_record("u1").last_event_at == clock.now

    later = clock.now + timedelta(hours=1)
    store.write_transition("u1", {"last_verified_at": later}, verified_at=later)
    assert store.get_record("u1").last_event_at == later
    assert store.write_transition("u1", {"status": "canceled"}, event_at=clock.now + timedelta(minutes=30)) is False
