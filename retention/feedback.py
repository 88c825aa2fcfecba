"""
Feedback loop: fold decision outcomes into the performance aggregates
and use those aggregates to recommend offers and messages.

Outcome bookkeeping runs after the caller already has its response, so
every entry point here opens its own session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from . import store
from .config import EngineConfig, DEFAULT_CONFIG
from .db import session_scope
from .models import OfferPerformance
from .money import round_half_up
from .offers import RECOMMENDABLE_OFFERS, OfferType, offer_types_in
from .ranking import RankingContext, rank_offers
from .segmentation import segment_user

logger = logging.getLogger(__name__)


MESSAGE_TEMPLATES: dict[OfferType, list[str]] = {
    OfferType.PAUSE: [
        "Wait, before you go! Would you like to pause your subscription instead? You can resume anytime.",
        "Take a break without losing your data. Pause your subscription and come back when you're ready.",
        "We hate to see you leave! Pause your subscription and keep your account active.",
    ],
    OfferType.DOWNGRADE: [
        "Before you cancel, would you like to switch to a lower plan that might better fit your needs?",
        "We have a plan that might work better for you. Would you like to see your options?",
        "Instead of canceling, consider downgrading to a plan that matches your usage.",
    ],
    OfferType.DISCOUNT: [
        "We have a special offer just for you! Get {percentage}% off your next {duration} months.",
        "Don't go yet! We'd like to offer you {percentage}% off to stay with us.",
        "Special discount: {percentage}% off your subscription for the next {duration} months.",
    ],
    OfferType.SUPPORT: [
        "Our support team can help find a solution that works for you. Would you like to talk?",
        "Let's work together to find the right plan for you. Our team is here to help.",
        "Before you go, our support team would love to help you find a better solution.",
    ],
    OfferType.FEEDBACK: [
        "We'd love to hear why you're canceling. Your feedback helps us improve.",
        "Help us improve by sharing why you're leaving. Your opinion matters to us.",
        "Before you go, please let us know what we could have done better.",
    ],
}


@dataclass
class OfferRecommendation:
    offer_type: OfferType
    confidence: int
    reason: str
    expected_acceptance_rate: float


@dataclass
class MessageSuggestion:
    message: str
    template: str
    personalization: dict[str, str]


@dataclass
class PerformanceSummary:
    """Totals across all offer performance rows, plus the rows themselves."""

    total_shown: int
    total_accepted: int
    overall_acceptance_rate: float
    offers: pd.DataFrame
    weights: dict[str, float]


def _segment_for_user_id(session: Session, user_id: Optional[int], config: EngineConfig) -> Optional[str]:
    if user_id is None:
        return None
    user = store.get_user(session, user_id)
    subscription = store.get_subscription_for_user(session, user_id)
    return segment_user(user, subscription, config).value


def record_outcome(session: Session, event_id: int, config: EngineConfig = DEFAULT_CONFIG) -> None:
    """
    Add one offer event to the (offer type, segment) aggregate.

    Events without a user land in the "all" row.
    """
    event = store.get_event(session, event_id)
    segment = _segment_for_user_id(session, event.user_id, config)
    store.bump_offer_performance(
        session,
        offer_type=event.offer_type,
        segment=segment,
        accepted=event.accepted,
        revenue_saved_cents=event.revenue_saved_cents,
    )
    logger.debug(
        "Recorded outcome of event %s (%s, segment=%s, accepted=%s)",
        event_id, event.offer_type, segment, event.accepted,
    )


def record_message_outcome(session: Session, event_id: int) -> None:
    """Add one offer event to its message template's aggregate, if it has one."""
    event = store.get_event(session, event_id)
    if not event.message_template:
        return
    store.bump_message_performance(
        session,
        offer_type=event.offer_type,
        message_template=event.message_template,
        accepted=event.accepted,
    )


def recommend_best_offer(
    session: Session,
    user_id: int,
    flow_id: Optional[int] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> OfferRecommendation:
    """
    Best offer for a user's segment.

    Uses the best-performing offer for the segment when performance
    data exists, otherwise the first offer of the rule-based ranking.
    With a flow, only offer types present in that flow are considered.
    """
    user = store.get_user(session, user_id)
    subscription = store.get_subscription_for_user(session, user_id)
    segment = segment_user(user, subscription, config)

    candidates = list(RECOMMENDABLE_OFFERS)
    if flow_id is not None:
        flow = store.get_flow(session, flow_id)
        in_flow = offer_types_in(flow.step_objects)
        candidates = [offer for offer in candidates if offer in in_flow]

    allowed = {offer.value for offer in candidates}
    for row in store.offer_performance_for_segment(session, segment.value):
        if row.offer_type not in allowed:
            continue
        rate = float(row.acceptance_rate)
        return OfferRecommendation(
            offer_type=OfferType(row.offer_type),
            confidence=round_half_up(rate),
            reason=f"Best performing offer for {segment.value} segment ({rate:.1f}% acceptance rate)",
            expected_acceptance_rate=rate,
        )

    context = RankingContext(
        monthly_value=float(subscription.value) if subscription and subscription.value is not None else None,
        plan=user.plan,
        cancel_attempts=subscription.cancel_attempts if subscription else 0,
    )
    rankings = rank_offers(candidates or RECOMMENDABLE_OFFERS, context, config)
    best = rankings[0]
    return OfferRecommendation(
        offer_type=best.type,
        confidence=config.fallback_confidence,
        reason=best.reason,
        expected_acceptance_rate=config.fallback_acceptance_rate,
    )


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def suggest_message(
    session: Session,
    user_id: int,
    offer_type: OfferType | str,
    step_config: Optional[Mapping[str, Any]] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> MessageSuggestion:
    """
    Message text for an offer, personalised for the user.

    The best-performing stored template wins; otherwise the first canned
    template for the offer type. Placeholders: {percentage}, {duration},
    {userName}, {plan}.
    """
    offer = OfferType.parse(offer_type)
    user = store.get_user(session, user_id)
    step_config = step_config or {}

    best = store.best_message_performance(session, offer.value)
    template = best.message_template if best is not None else MESSAGE_TEMPLATES[offer][0]

    personalization = {
        "userName": user.email.split("@")[0] if user.email else "there",
        "plan": user.plan or "your plan",
    }
    replacements = {
        "{percentage}": _format_number(step_config.get("percentage", config.default_discount_percentage)),
        "{duration}": _format_number(step_config.get("duration", config.default_discount_duration)),
        "{userName}": personalization["userName"],
        "{plan}": personalization["plan"],
    }
    message = template
    for placeholder, value in replacements.items():
        message = message.replace(placeholder, value)

    return MessageSuggestion(message=message, template=template, personalization=personalization)


def performance_summary(session: Session) -> PerformanceSummary:
    rows = session.execute(
        select(OfferPerformance).order_by(OfferPerformance.offer_type, OfferPerformance.segment)
    ).scalars().all()

    offers = pd.DataFrame(
        [
            {
                "offer_type": row.offer_type,
                "segment": row.segment,
                "total_shown": row.total_shown,
                "total_accepted": row.total_accepted,
                "acceptance_rate": float(row.acceptance_rate),
                "avg_revenue_saved": float(row.avg_revenue_saved),
            }
            for row in rows
        ],
        columns=[
            "offer_type", "segment", "total_shown", "total_accepted",
            "acceptance_rate", "avg_revenue_saved",
        ],
    )
    total_shown = int(offers["total_shown"].sum()) if not offers.empty else 0
    total_accepted = int(offers["total_accepted"].sum()) if not offers.empty else 0
    overall = total_accepted / total_shown * 100 if total_shown else 0.0

    return PerformanceSummary(
        total_shown=total_shown,
        total_accepted=total_accepted,
        overall_acceptance_rate=overall,
        offers=offers,
        weights=store.get_weights(session),
    )


class FeedbackLoop:
    """Session-owning wrappers for the feedback operations."""

    def __init__(self, session_factory: sessionmaker, config: Optional[EngineConfig] = None):
        self.session_factory = session_factory
        self.config = config or DEFAULT_CONFIG

    def record_outcome(self, event_id: int) -> None:
        with session_scope(self.session_factory) as session:
            record_outcome(session, event_id, self.config)

    def record_message_outcome(self, event_id: int) -> None:
        with session_scope(self.session_factory) as session:
            record_message_outcome(session, event_id)

    def recommend_best_offer(self, user_id: int, flow_id: Optional[int] = None) -> OfferRecommendation:
        with session_scope(self.session_factory) as session:
            return recommend_best_offer(session, user_id, flow_id, self.config)

    def suggest_message(
        self,
        user_id: int,
        offer_type: OfferType | str,
        step_config: Optional[Mapping[str, Any]] = None,
    ) -> MessageSuggestion:
        with session_scope(self.session_factory) as session:
            return suggest_message(session, user_id, offer_type, step_config, self.config)

    def performance_summary(self) -> PerformanceSummary:
        with session_scope(self.session_factory) as session:
            return performance_summary(session)
