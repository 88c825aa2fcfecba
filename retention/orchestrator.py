"""
RetentionOrchestrator - sequences segmentation, flow selection, offer
ranking and the feedback loop into the two calls a cancellation
interception needs.

Usage:
    from retention import RetentionOrchestrator
    from retention.db import create_db_engine, init_db, make_session_factory

    engine = create_db_engine()
    init_db(engine)
    orchestrator = RetentionOrchestrator(make_session_factory(engine))

    started = orchestrator.start_flow("cus_123", plan="pro", value=49)
    decision = orchestrator.record_decision(
        started.flow_id, "pause", accepted=True, user_id=started.user_id
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional

import numpy as np
import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from . import store
from .config import EngineConfig, DEFAULT_CONFIG
from .db import session_scope
from .dispatch import FeedbackDispatcher
from .exceptions import InvalidInput, NoActiveFlow, NotFound
from .feedback import FeedbackLoop, MessageSuggestion, OfferRecommendation, PerformanceSummary
from .flows import FlowService, FlowValidationResult, flow_templates, recompute_flow_ranking, select_flow
from .models import Flow, Subscription, User
from .money import from_cents, share_of_cents, to_cents
from .offers import CANCEL_ATTEMPT, FlowStep, OfferType, Segment, offer_types_in
from .ranking import OfferRanking, RankingContext, order_steps, rank_offers
from .scorer import ChurnRiskResult, ChurnRiskScorer, ScoringResult
from .segmentation import segment_user

logger = logging.getLogger(__name__)

NO_OFFERS_MESSAGE = "No offers available"


@dataclass
class StartFlowResult:
    """Steps to show a cancelling user, best offer first."""

    flow_id: Optional[int]
    steps: list[FlowStep]
    language: str
    segment: Optional[Segment]
    rankings: list[OfferRanking] = field(default_factory=list)
    user_id: Optional[int] = None
    cancel_attempts: int = 0
    message: Optional[str] = None

    @property
    def has_offers(self) -> bool:
        return bool(self.steps)


@dataclass
class DecisionResult:
    success: bool
    message: str
    revenue_saved: Optional[Decimal]
    subscription_updated: bool
    event_id: int
    user_id: int


# === Offer effects (accepted offers only) ===

def _apply_pause(session, config, user, subscription, step_config):
    store.apply_pause(session, subscription)
    return "Subscription paused successfully", True


def _apply_downgrade(session, config, user, subscription, step_config):
    new_plan = step_config.get("plan") or f"{user.plan or config.default_plan}{config.downgrade_plan_suffix}"
    store.apply_downgrade(session, subscription, new_plan)
    return "Subscription downgraded successfully", True


def _apply_discount(session, config, user, subscription, step_config):
    percentage = step_config.get("percentage", config.default_discount_percentage)
    store.apply_discount(session, subscription, percentage)
    return f"Discount of {float(percentage):g}% applied successfully", True


def _apply_support(session, config, user, subscription, step_config):
    return "Support team will contact you shortly", False


def _apply_feedback(session, config, user, subscription, step_config):
    return "Thank you for your feedback", False


_OFFER_EFFECTS: dict[OfferType, Callable[..., tuple[str, bool]]] = {
    OfferType.PAUSE: _apply_pause,
    OfferType.DOWNGRADE: _apply_downgrade,
    OfferType.DISCOUNT: _apply_discount,
    OfferType.SUPPORT: _apply_support,
    OfferType.FEEDBACK: _apply_feedback,
}


def _step_config(flow: Flow, offer: OfferType) -> dict[str, Any]:
    """Config of the flow's first step of an offer type."""
    for step in flow.step_objects:
        if step.type is offer:
            return dict(step.config)
    return {}


def _ranking_context(user: User, subscription: Optional[Subscription]) -> RankingContext:
    value = subscription.value if subscription is not None else None
    return RankingContext(
        monthly_value=float(value) if value is not None else None,
        plan=user.plan,
        cancel_attempts=subscription.cancel_attempts if subscription is not None else 0,
    )


class RetentionOrchestrator:
    """
    Facade over the decision engine.

    Synchronous errors (NotFound, NoActiveFlow, InvalidInput,
    ValidationFailed) propagate. Feedback bookkeeping after a decision
    and churn-score write-backs go through the dispatcher and never
    fail the call that triggered them.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[EngineConfig] = None,
        dispatcher: Optional[FeedbackDispatcher] = None,
    ):
        self.session_factory = session_factory
        self.config = config or DEFAULT_CONFIG
        self.dispatcher = dispatcher or FeedbackDispatcher()
        self.scorer = ChurnRiskScorer(self.config)
        self.flows = FlowService(session_factory, self.config)
        self.feedback = FeedbackLoop(session_factory, self.config)

    # === Cancellation interception ===

    def start_flow(
        self,
        external_user_id: str,
        plan: Optional[str] = None,
        region: Optional[str] = None,
        email: Optional[str] = None,
        billing_ref: Optional[str] = None,
        value=None,
        language: Optional[str] = None,
    ) -> StartFlowResult:
        """
        Register a cancellation attempt and pick the steps to show.

        The cancel attempt is counted even when no flow is available.

        Raises:
            NoActiveFlow: If no active flow matches the user's language
            InvalidInput: If the identifier or value is malformed
        """
        with session_scope(self.session_factory) as session:
            user = store.find_or_create_user(
                session, external_user_id, email=email, plan=plan, region=region,
                language=language, default_language=self.config.default_language,
            )
            subscription = store.upsert_subscription(
                session, user.id, billing_ref=billing_ref, value=value
            )
            attempts = store.increment_cancel_attempts(session, subscription.id)
            segment = segment_user(user, subscription, self.config)
            flow_language = user.language or self.config.default_language

            flow = select_flow(session, flow_language)
            if flow is not None:
                steps = flow.step_objects
                rankings = rank_offers(
                    offer_types_in(steps), _ranking_context(user, subscription), self.config
                )
                ordered = order_steps(steps, rankings)
                store.log_event(session, CANCEL_ATTEMPT, user_id=user.id, flow_id=flow.id)
                result = StartFlowResult(
                    flow_id=flow.id,
                    steps=ordered,
                    language=flow.language,
                    segment=segment,
                    rankings=rankings,
                    user_id=user.id,
                    cancel_attempts=attempts,
                )
            user_id = user.id

        if flow is None:
            logger.warning("No active flow for language %r (user %s)", flow_language, user_id)
            raise NoActiveFlow(f"No active flow found for language {flow_language!r}")

        logger.info(
            "Started flow %s for user %s (segment=%s, attempts=%d, order=%s)",
            result.flow_id, user_id, segment.value, attempts,
            [step.type.value for step in result.steps],
        )
        return result

    def try_start_flow(self, external_user_id: str, **kwargs) -> StartFlowResult:
        """Like start_flow, but an empty "no offers available" result replaces NoActiveFlow."""
        try:
            return self.start_flow(external_user_id, **kwargs)
        except NoActiveFlow:
            return StartFlowResult(
                flow_id=None,
                steps=[],
                language=kwargs.get("language") or self.config.default_language,
                segment=None,
                message=NO_OFFERS_MESSAGE,
            )

    def record_decision(
        self,
        flow_id: int,
        offer_type: OfferType | str,
        accepted: bool,
        user_id: Optional[int] = None,
        revenue_value=None,
        reason_code: Optional[str] = None,
        reason_text: Optional[str] = None,
        message_template: Optional[str] = None,
    ) -> DecisionResult:
        """
        Record a user's answer to an offer and apply it if accepted.

        Without user_id the user of the flow's most recent event is used.
        revenue_value defaults to the subscription's monthly value.

        Raises:
            NotFound: If the flow, user or subscription does not exist
            InvalidInput: If the offer type or revenue value is malformed
        """
        offer = OfferType.parse(offer_type)

        with session_scope(self.session_factory) as session:
            flow = store.get_flow(session, flow_id)
            user = self._resolve_user(session, flow_id, user_id)
            subscription = store.get_subscription_for_user(session, user.id)
            if subscription is None:
                raise NotFound(f"Subscription not found for user {user.id}")

            step_config = _step_config(flow, offer)
            revenue_saved_cents = self._revenue_saved_cents(
                offer, accepted, revenue_value, subscription, step_config
            )
            event = store.log_event(
                session,
                offer.value,
                user_id=user.id,
                flow_id=flow.id,
                accepted=accepted,
                revenue_saved_cents=revenue_saved_cents,
                message_template=message_template,
            )

            if accepted:
                message, subscription_updated = _OFFER_EFFECTS[offer](
                    session, self.config, user, subscription, step_config
                )
            else:
                if reason_code:
                    store.log_churn_reason(session, user.id, reason_code, reason_text, flow.id)
                message, subscription_updated = "Offer declined", False

            result = DecisionResult(
                success=bool(accepted),
                message=message,
                revenue_saved=from_cents(revenue_saved_cents) if accepted else None,
                subscription_updated=subscription_updated,
                event_id=event.id,
                user_id=user.id,
            )

        logger.info(
            "Decision on flow %s: %s %s by user %s (saved %s)",
            flow_id, offer.value, "accepted" if accepted else "declined",
            result.user_id, result.revenue_saved,
        )
        self._dispatch_feedback(flow_id, result.event_id, message_template)
        return result

    def _resolve_user(self, session: Session, flow_id: int, user_id: Optional[int]) -> User:
        if user_id is not None:
            return store.get_user(session, user_id)
        latest = store.latest_event_for_flow(session, flow_id)
        if latest is None:
            raise NotFound(f"No user could be resolved for flow {flow_id}")
        return store.get_user(session, latest.user_id)

    def _revenue_saved_cents(
        self,
        offer: OfferType,
        accepted: bool,
        revenue_value,
        subscription: Subscription,
        step_config: Mapping[str, Any],
    ) -> int:
        """Revenue kept by an accepted offer: monthly value times the offer's share."""
        base_cents = to_cents(revenue_value) if revenue_value is not None else subscription.value_cents
        if base_cents is not None and base_cents < 0:
            raise InvalidInput("Revenue value cannot be negative")
        if not accepted or not base_cents:
            return 0
        share = step_config.get("revenue_share", self.config.get_revenue_share(offer.value))
        return share_of_cents(base_cents, share)

    def _dispatch_feedback(self, flow_id: int, event_id: int, message_template: Optional[str]) -> None:
        self.dispatcher.submit(f"recompute ranking of flow {flow_id}", self.flows.recompute, flow_id)
        self.dispatcher.submit(f"record outcome of event {event_id}", self.feedback.record_outcome, event_id)
        if message_template:
            self.dispatcher.submit(
                f"record message outcome of event {event_id}",
                self.feedback.record_message_outcome,
                event_id,
            )

    # === Churn risk ===

    def score_churn_risk(self, user_id: int) -> ChurnRiskResult:
        """
        Score one stored user and write the score back best-effort.

        Raises:
            NotFound: If the user does not exist
        """
        with session_scope(self.session_factory) as session:
            store.get_user(session, user_id)
            subscription = store.get_subscription_for_user(session, user_id)
            total, accepted = store.recent_history(session, user_id, self.config.history_window)
            weights = store.get_weights(session)

        record = {
            "USER_ID": user_id,
            "CANCEL_ATTEMPTS": subscription.cancel_attempts if subscription else 0,
            "MONTHLY_VALUE": float(subscription.value) if subscription and subscription.value is not None else np.nan,
            "HISTORY_TOTAL": total,
            "HISTORY_ACCEPTED": accepted,
        }
        result = self.scorer.score_single(record, weights)
        self.dispatcher.submit(
            f"churn score write-back for user {user_id}",
            self._write_churn_score,
            user_id,
            result.score,
        )
        return result

    def _write_churn_score(self, user_id: int, score: int) -> None:
        with session_scope(self.session_factory) as session:
            store.update_churn_score(session, user_id, score)

    def score_all_users(self) -> ScoringResult:
        """Score every stored user in one vectorized pass and persist the scores."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(User.id, Subscription.cancel_attempts, Subscription.value_cents)
                .outerjoin(Subscription, Subscription.user_id == User.id)
                .order_by(User.id)
            ).all()
            records = []
            for user_id, cancel_attempts, value_cents in rows:
                total, accepted = store.recent_history(session, user_id, self.config.history_window)
                records.append({
                    "USER_ID": user_id,
                    "CANCEL_ATTEMPTS": cancel_attempts or 0,
                    "MONTHLY_VALUE": value_cents / 100 if value_cents is not None else np.nan,
                    "HISTORY_TOTAL": total,
                    "HISTORY_ACCEPTED": accepted,
                })
            weights = store.get_weights(session)

        if not records:
            return ScoringResult(
                df=pd.DataFrame(columns=ChurnRiskScorer.REQUIRED_COLUMNS + ["RISK_SCORE", "SEGMENT"]),
                component_columns=[],
            )

        result = self.scorer.score(pd.DataFrame(records), weights)
        with session_scope(self.session_factory) as session:
            for user_id, score in zip(result.df["USER_ID"], result.df["RISK_SCORE"]):
                store.update_churn_score(session, int(user_id), int(score))
        logger.info("Scored %d users", len(result.df))
        return result

    # === Offers and messages ===

    def rank_offers(
        self, candidate_types: Iterable[OfferType | str], context: RankingContext
    ) -> list[OfferRanking]:
        return rank_offers(candidate_types, context, self.config)

    def recommend_best_offer(self, user_id: int, flow_id: Optional[int] = None) -> OfferRecommendation:
        return self.feedback.recommend_best_offer(user_id, flow_id)

    def suggest_message(
        self,
        user_id: int,
        offer_type: OfferType | str,
        step_config: Optional[Mapping[str, Any]] = None,
    ) -> MessageSuggestion:
        return self.feedback.suggest_message(user_id, offer_type, step_config)

    def performance_summary(self) -> PerformanceSummary:
        return self.feedback.performance_summary()

    # === Flows ===

    def create_flow(self, name: str, steps: Any, language: Optional[str] = None) -> Flow:
        return self.flows.create_flow(name, steps, language)

    def update_flow(self, flow_id: int, **changes) -> Flow:
        return self.flows.update_flow(flow_id, **changes)

    def duplicate_flow(self, flow_id: int, new_name: Optional[str] = None) -> Flow:
        return self.flows.duplicate_flow(flow_id, new_name)

    def delete_flow(self, flow_id: int) -> None:
        self.flows.delete_flow(flow_id)

    def get_flow(self, flow_id: int) -> Flow:
        return self.flows.get_flow(flow_id)

    def list_flows(self, language: Optional[str] = None) -> list[Flow]:
        return self.flows.list_flows(language)

    def validate_flow(self, flow_id: int) -> FlowValidationResult:
        return self.flows.validate(flow_id)

    def activate_flow(self, flow_id: int) -> Flow:
        return self.flows.activate(flow_id)

    def deactivate_flow(self, flow_id: int) -> Flow:
        return self.flows.deactivate(flow_id)

    def recompute_flow_ranking(self, flow_id: int) -> Flow:
        with session_scope(self.session_factory) as session:
            return recompute_flow_ranking(session, flow_id, self.config)

    def select_flow(self, language: Optional[str] = None) -> Optional[Flow]:
        return self.flows.select(language)

    def flow_templates(self) -> list[dict[str, Any]]:
        return flow_templates()

    def seed_templates(self) -> list[Flow]:
        return self.flows.seed_templates()

    # === Users and weights ===

    def update_user_plan(self, user_id: int, plan: str) -> User:
        with session_scope(self.session_factory) as session:
            return store.update_user_plan(session, user_id, plan)

    def update_region(self, user_id: int, region: str) -> User:
        with session_scope(self.session_factory) as session:
            return store.update_region(session, user_id, region)

    def initialize_weights(self) -> None:
        with session_scope(self.session_factory) as session:
            store.initialize_weights(session, self.config.default_weights)

    def get_weights(self) -> dict[str, float]:
        """Stored weights, with any unset factor weight reading as the missing-weight value."""
        with session_scope(self.session_factory) as session:
            stored = store.get_weights(session)
        weights = {name: self.config.missing_weight_value for name in self.config.default_weights}
        weights.update(stored)
        return weights

    def set_weight(self, name: str, value: float) -> None:
        with session_scope(self.session_factory) as session:
            store.set_weight(session, name, value)
        logger.info("Set weight %s = %s", name, value)
