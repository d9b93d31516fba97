"""
flavr/features/entitlements/store.py

Entitlement state store.

Every mutation is a single UPDATE scoped to one key, so concurrent writers
(a webhook landing while a sync reconciliation is in flight) never interleave
partial updates:
- transitions recompute has_entitlement and limits inside the same statement
- pushed events carry a compare-and-set guard on last_event_at
- usage counters use `col = col + 1` at the storage layer
- monthly resets are gated by usage_reset_at in the WHERE clause
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import case, insert, or_, select, true, update
from sqlalchemy.exc import IntegrityError

from flavr.core.database import get_db_session, entitlement_records, pseudo_identities
from flavr.features.plans.service import TierName, get_tier_limits, get_pseudo_recipe_limit
from flavr.models.entitlement import (
    ALL_LINKAGE_FIELDS,
    ENTITLED_STATUSES,
    UNLIMITED,
    EntitlementRecord,
    EntitlementStatus,
    Provider,
    PseudoIdentityRecord,
)


logger = logging.getLogger(__name__)

_ENTITLED_VALUES = [s.value for s in ENTITLED_STATUSES]

USAGE_COLUMNS = {
    "recipe": "recipes_used",
    "image": "images_used",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to aware UTC (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_start(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _row_to_record(row) -> EntitlementRecord:
    data = dict(row._mapping)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = ensure_utc(value)
    return EntitlementRecord(**data)


def _row_to_pseudo(row) -> PseudoIdentityRecord:
    data = dict(row._mapping)
    data["usage_reset_at"] = ensure_utc(data["usage_reset_at"])
    return PseudoIdentityRecord(**data)


def _free_limits():
    return get_tier_limits(TierName.FREE)


def _entitlement_columns(
    *,
    new_status: Optional[EntitlementStatus] = None,
    new_override: Optional[bool] = None,
) -> Dict[str, Any]:
    """
    SET expressions for has_entitlement and limits.

    SET expressions see pre-update column values, so whichever input is not
    being changed is read from its column and the changing one is a literal.
    """
    t = entitlement_records
    free = _free_limits()

    if new_status is not None:
        if EntitlementStatus(new_status) in ENTITLED_STATUSES:
            return {"has_entitlement": true(), "recipe_limit": UNLIMITED, "image_limit": UNLIMITED}
        return {
            "has_entitlement": t.c.operator_override,
            "recipe_limit": case((t.c.operator_override == true(), UNLIMITED), else_=free.recipes),
            "image_limit": case((t.c.operator_override == true(), UNLIMITED), else_=free.images),
        }

    if new_override is not None:
        if new_override:
            return {"has_entitlement": true(), "recipe_limit": UNLIMITED, "image_limit": UNLIMITED}
        entitled = t.c.status.in_(_ENTITLED_VALUES)
        return {
            "has_entitlement": entitled,
            "recipe_limit": case((entitled, UNLIMITED), else_=free.recipes),
            "image_limit": case((entitled, UNLIMITED), else_=free.images),
        }

    return {}


def ensure_record(user_id: str, now: Optional[datetime] = None) -> EntitlementRecord:
    """Create the signup record (status=none, free tier) if it does not exist."""
    now = ensure_utc(now) or utc_now()
    free = _free_limits()
    try:
        with get_db_session() as session:
            session.execute(
                insert(entitlement_records).values(
                    user_id=user_id,
                    has_entitlement=False,
                    status=EntitlementStatus.NONE.value,
                    tier="free",
                    provider=Provider.NONE.value,
                    operator_override=False,
                    recipe_limit=free.recipes,
                    image_limit=free.images,
                    recipes_used=0,
                    images_used=0,
                    usage_reset_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Already created (possibly by a concurrent request)
        pass
    record = get_record(user_id)
    if record is None:
        raise LookupError(f"Entitlement record {user_id} missing after insert")
    return record


def get_record(user_id: str) -> Optional[EntitlementRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(entitlement_records).where(entitlement_records.c.user_id == user_id)
        ).first()
    return _row_to_record(row) if row else None


def find_user_id_by_linkage(field: str, value: Optional[str]) -> Optional[str]:
    """Look up the user owning a provider linkage value (e.g. stripe_subscription_id)."""
    if field not in ALL_LINKAGE_FIELDS:
        raise ValueError(f"Unknown linkage field: {field}")
    if not value:
        return None
    column = entitlement_records.c[field]
    with get_db_session() as session:
        row = session.execute(
            select(entitlement_records.c.user_id)
            .where(column == value)
            .order_by(entitlement_records.c.updated_at.desc())
            .limit(1)
        ).first()
    return row[0] if row else None


def list_user_ids_by_status(status: EntitlementStatus) -> List[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(entitlement_records.c.user_id)
            .where(entitlement_records.c.status == EntitlementStatus(status).value)
            .order_by(entitlement_records.c.user_id)
        ).fetchall()
    return [row[0] for row in rows]


def write_transition(
    user_id: str,
    values: Dict[str, Any],
    *,
    event_at: Optional[datetime] = None,
    verified_at: Optional[datetime] = None,
    expected_provider: Optional[Provider] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Apply absolute values to one record in a single UPDATE.

    Args:
        values: column -> value; enums are stored by value
        event_at: pushed-event timestamp; the write is skipped when the record
            already holds a newer event
        verified_at: time a provider confirmed the written state; last_event_at
            moves forward to it (never back) so older pushed events lose
        expected_provider: skip the write if the authoritative provider changed
            since the caller read the record

    Returns:
        True if a row was written, False if a guard rejected the write.
    """
    t = entitlement_records
    row_values: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in t.c:
            raise ValueError(f"Unknown entitlement column: {key}")
        if hasattr(value, "value"):
            value = value.value
        if isinstance(value, datetime):
            value = ensure_utc(value)
        row_values[key] = value

    if "status" in values:
        row_values.update(_entitlement_columns(new_status=EntitlementStatus(values["status"])))
    row_values["updated_at"] = ensure_utc(now) or utc_now()

    stmt = update(t).where(t.c.user_id == user_id)
    if event_at is not None:
        event_at = ensure_utc(event_at)
        stmt = stmt.where(or_(t.c.last_event_at.is_(None), t.c.last_event_at <= event_at))
        row_values["last_event_at"] = event_at
    elif verified_at is not None:
        verified_at = ensure_utc(verified_at)
        row_values["last_event_at"] = case(
            (or_(t.c.last_event_at.is_(None), t.c.last_event_at < verified_at), verified_at),
            else_=t.c.last_event_at,
        )
    if expected_provider is not None:
        stmt = stmt.where(t.c.provider == Provider(expected_provider).value)

    with get_db_session() as session:
        result = session.execute(stmt.values(**row_values))
        return result.rowcount > 0


def set_operator_override(user_id: str, enabled: bool, now: Optional[datetime] = None) -> bool:
    t = entitlement_records
    row_values: Dict[str, Any] = {"operator_override": bool(enabled), "updated_at": ensure_utc(now) or utc_now()}
    row_values.update(_entitlement_columns(new_override=bool(enabled)))
    with get_db_session() as session:
        result = session.execute(update(t).where(t.c.user_id == user_id).values(**row_values))
        return result.rowcount > 0


def reset_usage_if_new_month(user_id: str, now: datetime) -> bool:
    """Zero counters once per calendar month; only the first caller wins."""
    t = entitlement_records
    now = ensure_utc(now)
    with get_db_session() as session:
        result = session.execute(
            update(t)
            .where(t.c.user_id == user_id)
            .where(t.c.usage_reset_at < month_start(now))
            .values(recipes_used=0, images_used=0, usage_reset_at=now)
        )
        return result.rowcount > 0


def increment_usage(user_id: str, kind: str) -> None:
    column_name = USAGE_COLUMNS[kind]
    column = entitlement_records.c[column_name]
    with get_db_session() as session:
        session.execute(
            update(entitlement_records)
            .where(entitlement_records.c.user_id == user_id)
            .values({column_name: column + 1})
        )


def reset_usage(user_id: str, now: Optional[datetime] = None) -> bool:
    with get_db_session() as session:
        result = session.execute(
            update(entitlement_records)
            .where(entitlement_records.c.user_id == user_id)
            .values(recipes_used=0, images_used=0, usage_reset_at=ensure_utc(now) or utc_now())
        )
        return result.rowcount > 0


def get_or_create_pseudo(
    pseudo_id: str,
    fingerprint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PseudoIdentityRecord:
    now = ensure_utc(now) or utc_now()
    existing = get_pseudo(pseudo_id)
    if existing:
        return existing
    try:
        with get_db_session() as session:
            session.execute(
                insert(pseudo_identities).values(
                    pseudo_id=pseudo_id,
                    fingerprint=fingerprint,
                    recipes_used=0,
                    recipe_limit=get_pseudo_recipe_limit(),
                    usage_reset_at=now,
                    created_at=now,
                )
            )
    except IntegrityError:
        pass
    record = get_pseudo(pseudo_id)
    if record is None:
        raise LookupError(f"Pseudo identity {pseudo_id} missing after insert")
    return record


def get_pseudo(pseudo_id: str) -> Optional[PseudoIdentityRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(
                pseudo_identities.c.pseudo_id,
                pseudo_identities.c.fingerprint,
                pseudo_identities.c.recipes_used,
                pseudo_identities.c.recipe_limit,
                pseudo_identities.c.usage_reset_at,
            ).where(pseudo_identities.c.pseudo_id == pseudo_id)
        ).first()
    return _row_to_pseudo(row) if row else None


def reset_pseudo_usage_if_new_month(pseudo_id: str, now: datetime) -> bool:
    t = pseudo_identities
    now = ensure_utc(now)
    with get_db_session() as session:
        result = session.execute(
            update(t)
            .where(t.c.pseudo_id == pseudo_id)
            .where(t.c.usage_reset_at < month_start(now))
            .values(recipes_used=0, usage_reset_at=now)
        )
        return result.rowcount > 0


def increment_pseudo_usage(pseudo_id: str) -> None:
    t = pseudo_identities
    with get_db_session() as session:
        session.execute(
            update(t).where(t.c.pseudo_id == pseudo_id).values(recipes_used=t.c.recipes_used + 1)
        )


def reset_pseudo_usage(pseudo_id: str, now: Optional[datetime] = None) -> bool:
    t = pseudo_identities
    with get_db_session() as session:
        result = session.execute(
            update(t)
            .where(t.c.pseudo_id == pseudo_id)
            .values(recipes_used=0, usage_reset_at=ensure_utc(now) or utc_now())
        )
        return result.rowcount > 0
