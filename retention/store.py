"""
Persistence operations used by the decision engine.

Every function takes an open Session and leaves commit to the caller.
Counters are bumped with single UPDATE statements (x = x + 1) and
missing rows are created with insert-or-ignore, so concurrent requests
never lose an increment or trip over a unique key.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

import pandas as pd
from sqlalchemy import insert, select, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from .exceptions import InvalidInput, NotFound
from .money import share_of_cents, to_cents
from .models import (
    AIWeight,
    ChurnReason,
    Flow,
    MessagePerformance,
    OfferEvent,
    OfferPerformance,
    Subscription,
    User,
)
from .offers import ALL_SEGMENTS

logger = logging.getLogger(__name__)

WEIGHT_DESCRIPTIONS = {
    "behavior_weight": "Weight for behavioral factors",
    "value_weight": "Weight for user value factors",
    "history_weight": "Weight for historical factors",
    "cancel_attempts_weight": "Weight for cancel attempts",
}


def insert_ignore(session: Session, model, values: dict[str, Any], conflict_columns: list[str]) -> None:
    """Insert a row unless one with the same unique key already exists."""
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(
            index_elements=conflict_columns
        )
    elif dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing(
            index_elements=conflict_columns
        )
    elif dialect in ("mysql", "mariadb"):
        stmt = mysql_insert(model).values(**values)
        key = conflict_columns[0]
        stmt = stmt.on_duplicate_key_update({key: getattr(stmt.inserted, key)})
    else:
        existing = session.execute(
            select(model.id).filter_by(**{col: values[col] for col in conflict_columns})
        ).first()
        if existing is not None:
            return
        stmt = insert(model).values(**values)
    session.execute(stmt)


# === Users ===

def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound(f"User not found: {user_id}")
    return user


def get_user_by_external_id(session: Session, external_id: str) -> Optional[User]:
    return session.execute(
        select(User).where(User.external_id == external_id)
    ).scalar_one_or_none()


def find_or_create_user(
    session: Session,
    external_id: str,
    email: Optional[str] = None,
    plan: Optional[str] = None,
    region: Optional[str] = None,
    language: Optional[str] = None,
    default_language: str = "en",
) -> User:
    """
    Upsert a user keyed by the host product's identifier.

    Only non-empty values that differ from the stored ones are written.
    """
    if not isinstance(external_id, str) or not external_id.strip():
        raise InvalidInput("'external_id' must be a non-empty string")
    external_id = external_id.strip()

    insert_ignore(
        session,
        User,
        {
            "external_id": external_id,
            "email": email or None,
            "plan": plan or None,
            "region": region or None,
            "language": language or default_language,
            "churn_score": 0,
        },
        ["external_id"],
    )
    user = get_user_by_external_id(session, external_id)

    updates = {}
    if email and email != user.email:
        updates["email"] = email
    if plan and plan != user.plan:
        updates["plan"] = plan
    if region and region != user.region:
        updates["region"] = region
    if language and language != user.language:
        updates["language"] = language
    for field_name, value in updates.items():
        setattr(user, field_name, value)
    if updates:
        session.flush()
    return user


def update_user_plan(session: Session, user_id: int, plan: str) -> User:
    user = get_user(session, user_id)
    user.plan = plan
    session.flush()
    return user


def update_region(session: Session, user_id: int, region: str) -> User:
    user = get_user(session, user_id)
    user.region = region
    session.flush()
    return user


def update_churn_score(session: Session, user_id: int, score: int) -> None:
    if score < 0 or score > 100:
        raise InvalidInput("Churn score must be between 0 and 100")
    result = session.execute(
        update(User).where(User.id == user_id).values(churn_score=int(score))
    )
    if result.rowcount == 0:
        raise NotFound(f"User not found: {user_id}")


# === Subscriptions ===

def get_subscription_for_user(session: Session, user_id: int) -> Optional[Subscription]:
    return session.execute(
        select(Subscription).where(Subscription.user_id == user_id)
    ).scalar_one_or_none()


def get_subscription(session: Session, subscription_id: int) -> Subscription:
    subscription = session.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFound(f"Subscription not found: {subscription_id}")
    return subscription


def upsert_subscription(
    session: Session,
    user_id: int,
    billing_ref: Optional[str] = None,
    value=None,
    status: Optional[str] = None,
) -> Subscription:
    """Create the user's subscription lazily, or update it with any new data."""
    value_cents = to_cents(value)
    if value_cents is not None and value_cents < 0:
        raise InvalidInput("Subscription value cannot be negative")

    insert_ignore(
        session,
        Subscription,
        {
            "user_id": user_id,
            "billing_ref": billing_ref or None,
            "value_cents": value_cents,
            "status": status or "active",
            "cancel_attempts": 0,
        },
        ["user_id"],
    )
    subscription = get_subscription_for_user(session, user_id)

    if billing_ref and billing_ref != subscription.billing_ref:
        subscription.billing_ref = billing_ref
    if value_cents is not None and value_cents != subscription.value_cents:
        subscription.value_cents = value_cents
    if status and status != subscription.status:
        subscription.status = status
    session.flush()
    return subscription


def increment_cancel_attempts(session: Session, subscription_id: int) -> int:
    """Atomically bump the cancel-attempt counter and return the new count."""
    result = session.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(cancel_attempts=Subscription.cancel_attempts + 1)
    )
    if result.rowcount == 0:
        raise NotFound(f"Subscription not found: {subscription_id}")
    count = session.execute(
        select(Subscription.cancel_attempts).where(Subscription.id == subscription_id)
    ).scalar_one()
    subscription = session.get(Subscription, subscription_id)
    if subscription is not None:
        set_committed_value(subscription, "cancel_attempts", count)
    logger.debug("Subscription %s cancel attempts: %d", subscription_id, count)
    return count


def apply_pause(session: Session, subscription: Subscription) -> Subscription:
    subscription.status = "paused"
    session.flush()
    return subscription


def apply_downgrade(session: Session, subscription: Subscription, new_plan: str) -> Subscription:
    """Move the user to a lower plan; the subscription stays active."""
    user = get_user(session, subscription.user_id)
    user.plan = new_plan
    subscription.status = "active"
    session.flush()
    return subscription


def apply_discount(session: Session, subscription: Subscription, percent) -> Subscription:
    """Reduce the monthly value by a percentage (0-100)."""
    try:
        percent_value = float(percent)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Discount percentage must be numeric (got {percent!r})") from exc
    if math.isnan(percent_value) or percent_value < 0 or percent_value > 100:
        raise InvalidInput("Discount percentage must be between 0 and 100")

    if subscription.value_cents:
        discount_cents = share_of_cents(subscription.value_cents, percent_value / 100)
        remaining = subscription.value_cents - discount_cents
        subscription.value_cents = remaining
    session.flush()
    return subscription


# === Events ===

def log_event(
    session: Session,
    offer_type: str,
    user_id: Optional[int] = None,
    flow_id: Optional[int] = None,
    accepted: bool = False,
    revenue_saved_cents: int = 0,
    message_template: Optional[str] = None,
) -> OfferEvent:
    event = OfferEvent(
        user_id=user_id,
        flow_id=flow_id,
        offer_type=offer_type,
        accepted=bool(accepted),
        revenue_saved_cents=int(revenue_saved_cents or 0),
        message_template=message_template,
    )
    session.add(event)
    session.flush()
    return event


def get_event(session: Session, event_id: int) -> OfferEvent:
    event = session.get(OfferEvent, event_id)
    if event is None:
        raise NotFound(f"Offer event not found: {event_id}")
    return event


def latest_event_for_flow(session: Session, flow_id: int) -> Optional[OfferEvent]:
    """Most recent event on a flow that names a user."""
    return session.execute(
        select(OfferEvent)
        .where(OfferEvent.flow_id == flow_id, OfferEvent.user_id.is_not(None))
        .order_by(OfferEvent.created_at.desc(), OfferEvent.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def recent_history(session: Session, user_id: int, limit: int = 10) -> tuple[int, int]:
    """(total, accepted) over the user's newest offer events."""
    rows = session.execute(
        select(OfferEvent.accepted)
        .where(OfferEvent.user_id == user_id)
        .order_by(OfferEvent.created_at.desc(), OfferEvent.id.desc())
        .limit(limit)
    ).scalars().all()
    return len(rows), sum(1 for accepted in rows if accepted)


def events_frame_for_flow(session: Session, flow_id: int) -> pd.DataFrame:
    """All events of a flow as a DataFrame."""
    rows = session.execute(
        select(OfferEvent.offer_type, OfferEvent.accepted, OfferEvent.revenue_saved_cents)
        .where(OfferEvent.flow_id == flow_id)
        .order_by(OfferEvent.id)
    ).all()
    return pd.DataFrame(
        [tuple(row) for row in rows],
        columns=["OFFER_TYPE", "ACCEPTED", "REVENUE_SAVED_CENTS"],
    )


def log_churn_reason(
    session: Session,
    user_id: int,
    reason_code: str,
    reason_text: Optional[str] = None,
    flow_id: Optional[int] = None,
) -> ChurnReason:
    reason = ChurnReason(
        user_id=user_id,
        flow_id=flow_id,
        reason_code=reason_code,
        reason_text=reason_text or None,
    )
    session.add(reason)
    session.flush()
    return reason


# === Aggregates ===

def bump_offer_performance(
    session: Session,
    offer_type: str,
    segment: Optional[str],
    accepted: bool,
    revenue_saved_cents: int = 0,
) -> None:
    """
    Fold one outcome into the (offer type, segment) aggregate.

    Shown/accepted counters, the acceptance rate and the revenue total
    move in one UPDATE; the right-hand sides read the pre-update row.
    """
    segment_key = segment or ALL_SEGMENTS
    insert_ignore(
        session,
        OfferPerformance,
        {
            "offer_type": offer_type,
            "segment": segment_key,
            "total_shown": 0,
            "total_accepted": 0,
            "acceptance_rate": 0.0,
            "revenue_saved_cents": 0,
        },
        ["offer_type", "segment"],
    )
    accepted_inc = 1 if accepted else 0
    revenue_inc = int(revenue_saved_cents or 0) if accepted else 0
    session.execute(
        update(OfferPerformance)
        .where(
            OfferPerformance.offer_type == offer_type,
            OfferPerformance.segment == segment_key,
        )
        .values(
            total_shown=OfferPerformance.total_shown + 1,
            total_accepted=OfferPerformance.total_accepted + accepted_inc,
            acceptance_rate=(
                (OfferPerformance.total_accepted + accepted_inc) * 100.0
                / (OfferPerformance.total_shown + 1)
            ),
            revenue_saved_cents=OfferPerformance.revenue_saved_cents + revenue_inc,
        )
    )


def bump_message_performance(
    session: Session,
    offer_type: str,
    message_template: str,
    accepted: bool,
) -> None:
    insert_ignore(
        session,
        MessagePerformance,
        {
            "offer_type": offer_type,
            "message_template": message_template,
            "total_shown": 0,
            "total_accepted": 0,
            "acceptance_rate": 0.0,
        },
        ["offer_type", "message_template"],
    )
    accepted_inc = 1 if accepted else 0
    session.execute(
        update(MessagePerformance)
        .where(
            MessagePerformance.offer_type == offer_type,
            MessagePerformance.message_template == message_template,
        )
        .values(
            total_shown=MessagePerformance.total_shown + 1,
            total_accepted=MessagePerformance.total_accepted + accepted_inc,
            acceptance_rate=(
                (MessagePerformance.total_accepted + accepted_inc) * 100.0
                / (MessagePerformance.total_shown + 1)
            ),
        )
    )


def get_offer_performance(
    session: Session, offer_type: str, segment: Optional[str] = None
) -> Optional[OfferPerformance]:
    return session.execute(
        select(OfferPerformance).where(
            OfferPerformance.offer_type == offer_type,
            OfferPerformance.segment == (segment or ALL_SEGMENTS),
        )
    ).scalar_one_or_none()


def offer_performance_for_segment(session: Session, segment: str) -> list[OfferPerformance]:
    """Rows for a segment, best acceptance rate first."""
    return list(session.execute(
        select(OfferPerformance)
        .where(OfferPerformance.segment == segment)
        .order_by(
            OfferPerformance.acceptance_rate.desc(),
            OfferPerformance.total_shown.desc(),
            OfferPerformance.offer_type,
        )
    ).scalars())


def best_message_performance(session: Session, offer_type: str) -> Optional[MessagePerformance]:
    return session.execute(
        select(MessagePerformance)
        .where(MessagePerformance.offer_type == offer_type)
        .order_by(
            MessagePerformance.acceptance_rate.desc(),
            MessagePerformance.total_shown.desc(),
            MessagePerformance.message_template,
        )
        .limit(1)
    ).scalar_one_or_none()


# === AI weights ===

def initialize_weights(session: Session, defaults: dict[str, float]) -> None:
    """Seed default weights; existing values are left alone."""
    for name, value in defaults.items():
        insert_ignore(
            session,
            AIWeight,
            {
                "weight_name": name,
                "weight_value": float(value),
                "description": WEIGHT_DESCRIPTIONS.get(name),
            },
            ["weight_name"],
        )


def get_weights(session: Session) -> dict[str, float]:
    rows = session.execute(select(AIWeight.weight_name, AIWeight.weight_value)).all()
    return {name: float(value) for name, value in rows}


def set_weight(session: Session, name: str, value: float) -> None:
    """
    Store a weight as given.

    Weights are not required to sum to 1; only non-finite values are refused.
    """
    try:
        weight_value = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Weight '{name}' must be numeric (got {value!r})") from exc
    if math.isnan(weight_value) or math.isinf(weight_value):
        raise InvalidInput(f"Weight '{name}' must be finite")

    insert_ignore(
        session,
        AIWeight,
        {
            "weight_name": name,
            "weight_value": weight_value,
            "description": WEIGHT_DESCRIPTIONS.get(name),
        },
        ["weight_name"],
    )
    session.execute(
        update(AIWeight).where(AIWeight.weight_name == name).values(weight_value=weight_value)
    )


# === Flows ===

def get_flow(session: Session, flow_id: int, for_update: bool = False) -> Flow:
    stmt = select(Flow).where(Flow.id == flow_id)
    if for_update:
        stmt = stmt.with_for_update()
    flow = session.execute(stmt).scalar_one_or_none()
    if flow is None:
        raise NotFound(f"Flow not found: {flow_id}")
    return flow
