"""
End-to-end tests for the retention orchestrator.
"""

import logging
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from retention import RetentionOrchestrator, store
from retention.db import session_scope
from retention.exceptions import InvalidInput, NoActiveFlow, NotFound
from retention.models import ChurnReason, MessagePerformance, OfferEvent, Subscription, User
from retention.offers import CANCEL_ATTEMPT, OfferType, Segment
from retention.orchestrator import _OFFER_EFFECTS

from conftest import STANDARD_STEPS


def load_subscription(session_factory, user_id):
    with session_scope(session_factory) as session:
        return store.get_subscription_for_user(session, user_id)


def load_user(session_factory, user_id):
    with session_scope(session_factory) as session:
        return session.get(User, user_id)


class TestStartFlow:
    """Cancellation interception."""

    def test_high_value_order(self, orchestrator, active_flow):
        """150/month on a first attempt: discount, pause, downgrade, then support."""
        result = orchestrator.start_flow("cus_1", plan="pro", value=150)

        assert result.flow_id == active_flow.id
        assert result.segment == Segment.HIGH_VALUE
        assert result.cancel_attempts == 1
        assert [s.type for s in result.steps] == [
            OfferType.DISCOUNT, OfferType.PAUSE, OfferType.DOWNGRADE, OfferType.SUPPORT,
        ]

    def test_repeat_canceller_sees_support_first(self, orchestrator, active_flow):
        """The second attempt escalates to support."""
        orchestrator.start_flow("cus_1", value=50)
        result = orchestrator.start_flow("cus_1")

        assert result.cancel_attempts == 2
        assert result.steps[0].type == OfferType.SUPPORT
        assert result.rankings[0].priority == 0

    def test_unranked_steps_follow(self, orchestrator):
        """Feedback steps keep their place after the ranked offers."""
        flow = orchestrator.create_flow("Mixed", [
            {"type": "feedback", "title": "Why?", "message": "Tell us"},
            {"type": "discount", "title": "Deal", "message": "Save", "config": {"percentage": 10}},
            {"type": "pause", "title": "Pause", "message": "Pause it"},
        ])
        orchestrator.activate_flow(flow.id)

        result = orchestrator.start_flow("cus_1", value=50)

        assert [s.type for s in result.steps] == [OfferType.PAUSE, OfferType.DISCOUNT, OfferType.FEEDBACK]

    def test_user_upsert_idempotent(self, orchestrator, active_flow, session_factory):
        """The same external id maps to one user; new data updates it."""
        first = orchestrator.start_flow("cus_1", plan="pro", email="a@example.com", value=30)
        second = orchestrator.start_flow("cus_1", plan="team", value=40)

        assert first.user_id == second.user_id
        user = load_user(session_factory, first.user_id)
        assert user.plan == "team"
        assert user.email == "a@example.com"
        assert load_subscription(session_factory, first.user_id).value == Decimal("40.00")

    def test_logs_cancel_attempt_event(self, orchestrator, active_flow, session_factory):
        """One synthetic cancel-attempt event per interception."""
        result = orchestrator.start_flow("cus_1", value=30)

        with session_scope(session_factory) as session:
            events = session.execute(select(OfferEvent)).scalars().all()

        assert [(e.offer_type, e.user_id, e.flow_id, e.accepted) for e in events] == [
            (CANCEL_ATTEMPT, result.user_id, active_flow.id, False),
        ]

    def test_trial_user(self, orchestrator, active_flow):
        """No subscription value means a trial user."""
        assert orchestrator.start_flow("cus_1").segment == Segment.TRIAL

    def test_no_active_flow(self, orchestrator, session_factory):
        """NoActiveFlow is raised, but the attempt is still counted."""
        with pytest.raises(NoActiveFlow):
            orchestrator.start_flow("cus_1", value=30)

        with session_scope(session_factory) as session:
            user = store.get_user_by_external_id(session, "cus_1")
            assert store.get_subscription_for_user(session, user.id).cancel_attempts == 1

    def test_language_mismatch(self, orchestrator, active_flow):
        """A Spanish-speaking user does not get the English flow."""
        with pytest.raises(NoActiveFlow):
            orchestrator.start_flow("cus_1", language="es")

    def test_try_start_flow_degrades(self, orchestrator):
        """The degraded path returns an empty result instead of raising."""
        result = orchestrator.try_start_flow("cus_1", value=30)

        assert result.flow_id is None
        assert not result.has_offers
        assert result.message == "No offers available"

    def test_blank_user_id_rejected(self, orchestrator, active_flow):
        """An external id is required."""
        with pytest.raises(InvalidInput):
            orchestrator.start_flow("  ")


class TestRecordDecision:
    """Recording offer outcomes."""

    def test_discount_revenue_scenario(self, orchestrator, active_flow, session_factory):
        """10/month, discount accepted, revenue value 50: saved 10.00."""
        started = orchestrator.start_flow("cus_1", value=10)

        result = orchestrator.record_decision(
            active_flow.id, "discount", accepted=True, user_id=started.user_id, revenue_value=50
        )

        assert result.success
        assert result.revenue_saved == Decimal("10.00")
        assert result.subscription_updated
        assert result.message == "Discount of 20% applied successfully"
        assert load_subscription(session_factory, started.user_id).value == Decimal("8.00")

    def test_pause_saves_full_value(self, orchestrator, active_flow, session_factory):
        """Without a revenue value the subscription's monthly value is used."""
        started = orchestrator.start_flow("cus_1", value=49.99)

        result = orchestrator.record_decision(active_flow.id, "pause", True, user_id=started.user_id)

        assert result.revenue_saved == Decimal("49.99")
        assert load_subscription(session_factory, started.user_id).status == "paused"

    def test_downgrade_uses_step_plan(self, orchestrator, active_flow, session_factory):
        """The downgrade step's plan becomes the user's plan; revenue share 30%."""
        started = orchestrator.start_flow("cus_1", plan="pro", value=100)

        result = orchestrator.record_decision(active_flow.id, "downgrade", True, user_id=started.user_id)

        assert result.revenue_saved == Decimal("30.00")
        assert load_user(session_factory, started.user_id).plan == "basic"
        assert load_subscription(session_factory, started.user_id).status == "active"

    def test_downgrade_default_plan(self, orchestrator, session_factory):
        """Without a plan in config the target is <plan>_downgrade."""
        flow = orchestrator.create_flow("D", [{"type": "downgrade", "title": "D", "message": "D"}])
        orchestrator.activate_flow(flow.id)
        started = orchestrator.start_flow("cus_1", plan="pro", value=60)

        orchestrator.record_decision(flow.id, "downgrade", True, user_id=started.user_id)

        assert load_user(session_factory, started.user_id).plan == "pro_downgrade"

    def test_step_revenue_share_override(self, orchestrator):
        """A step can override its revenue share."""
        flow = orchestrator.create_flow("D", [{
            "type": "discount", "title": "Deal", "message": "Half off",
            "config": {"percentage": 50, "revenue_share": 0.5},
        }])
        orchestrator.activate_flow(flow.id)
        started = orchestrator.start_flow("cus_1", value=80)

        result = orchestrator.record_decision(flow.id, "discount", True, user_id=started.user_id)

        assert result.revenue_saved == Decimal("40.00")
        assert result.message == "Discount of 50% applied successfully"

    def test_support_changes_nothing(self, orchestrator, active_flow, session_factory):
        """Support acceptance saves the full value without touching the subscription."""
        started = orchestrator.start_flow("cus_1", value=25)

        result = orchestrator.record_decision(active_flow.id, "support", True, user_id=started.user_id)

        assert result.revenue_saved == Decimal("25.00")
        assert not result.subscription_updated
        assert load_subscription(session_factory, started.user_id).status == "active"

    def test_decline_records_churn_reason(self, orchestrator, active_flow, session_factory):
        """Declines with a reason code persist a churn reason."""
        started = orchestrator.start_flow("cus_1", value=25)

        result = orchestrator.record_decision(
            active_flow.id, "pause", False, user_id=started.user_id,
            reason_code="too_expensive", reason_text="Budget cuts",
        )

        assert not result.success
        assert result.revenue_saved is None
        assert result.message == "Offer declined"
        with session_scope(session_factory) as session:
            reasons = session.execute(select(ChurnReason)).scalars().all()
        assert [(r.reason_code, r.reason_text, r.flow_id) for r in reasons] == [
            ("too_expensive", "Budget cuts", active_flow.id),
        ]

    def test_user_inferred_from_latest_event(self, orchestrator, active_flow):
        """Without user_id the flow's most recent user is used."""
        orchestrator.start_flow("cus_1", value=25)
        second = orchestrator.start_flow("cus_2", value=25)

        result = orchestrator.record_decision(active_flow.id, "pause", False)

        assert result.user_id == second.user_id

    def test_no_user_resolvable(self, orchestrator, active_flow):
        """A flow without events and no user_id cannot be attributed."""
        with pytest.raises(NotFound):
            orchestrator.record_decision(active_flow.id, "pause", True)

    def test_unknown_flow_and_user(self, orchestrator, active_flow):
        """Unknown ids raise NotFound."""
        started = orchestrator.start_flow("cus_1", value=25)

        with pytest.raises(NotFound):
            orchestrator.record_decision(999, "pause", True, user_id=started.user_id)
        with pytest.raises(NotFound):
            orchestrator.record_decision(active_flow.id, "pause", True, user_id=999)

    def test_unknown_offer_type(self, orchestrator, active_flow):
        """Offer types come from a closed set."""
        with pytest.raises(InvalidInput):
            orchestrator.record_decision(active_flow.id, "free_lunch", True, user_id=1)

    def test_every_offer_type_has_an_effect(self):
        """Offer effects cover the closed set exactly."""
        assert set(_OFFER_EFFECTS) == set(OfferType)


class TestFeedback:
    """Bookkeeping triggered by decisions."""

    def test_outcome_folded_into_segment_performance(self, orchestrator, active_flow, session_factory):
        """Each decision updates the (offer type, segment) aggregate."""
        started = orchestrator.start_flow("cus_1", value=150)
        orchestrator.record_decision(active_flow.id, "discount", True, user_id=started.user_id)
        orchestrator.record_decision(active_flow.id, "discount", False, user_id=started.user_id)

        with session_scope(session_factory) as session:
            perf = store.get_offer_performance(session, "discount", "high_value")

        assert perf.total_shown == 2
        assert perf.total_accepted == 1
        assert perf.acceptance_rate == pytest.approx(50.0)
        assert perf.avg_revenue_saved == Decimal("30.00")

    def test_flow_ranking_recomputed(self, orchestrator, active_flow):
        """Cancel attempt + accepted pause of 50.00: 50*0.6 + 5*0.4 = 32."""
        started = orchestrator.start_flow("cus_1", value=50)

        orchestrator.record_decision(active_flow.id, "pause", True, user_id=started.user_id)

        assert orchestrator.get_flow(active_flow.id).ranking_score == 32

    def test_message_performance_tracked(self, orchestrator, active_flow, session_factory):
        """A decision with a message template updates that template's aggregate."""
        started = orchestrator.start_flow("cus_1", value=50)
        orchestrator.record_decision(
            active_flow.id, "pause", True, user_id=started.user_id,
            message_template="Pause and keep your data.",
        )

        with session_scope(session_factory) as session:
            rows = session.execute(select(MessagePerformance)).scalars().all()

        assert [(r.offer_type, r.message_template, r.total_shown, r.total_accepted) for r in rows] == [
            ("pause", "Pause and keep your data.", 1, 1),
        ]

    def test_feedback_failure_not_surfaced(self, orchestrator, active_flow, monkeypatch, caplog):
        """Bookkeeping errors are logged, the decision still succeeds."""
        started = orchestrator.start_flow("cus_1", value=50)

        def broken(event_id):
            raise RuntimeError("aggregate store down")

        monkeypatch.setattr(orchestrator.feedback, "record_outcome", broken)
        with caplog.at_level(logging.ERROR, logger="retention.dispatch"):
            result = orchestrator.record_decision(active_flow.id, "pause", True, user_id=started.user_id)

        assert result.success
        assert "Feedback task failed" in caplog.text


class TestChurnRisk:
    """Scoring stored users."""

    def test_score_and_write_back(self, orchestrator, active_flow, session_factory):
        """Two attempts, 60/month, two declined events: 16 + 9 + 20 + 5 = 50."""
        orchestrator.start_flow("cus_1", value=60)
        started = orchestrator.start_flow("cus_1")

        result = orchestrator.score_churn_risk(started.user_id)

        assert result.score == 50
        assert result.factors == {
            "behavior": 40.0, "value": 30.0, "history": 100.0, "cancel_attempts": 50.0,
        }
        assert result.segment == Segment.MEDIUM_VALUE
        assert load_user(session_factory, started.user_id).churn_score == 50

    def test_unknown_user(self, orchestrator):
        """Unknown users raise NotFound."""
        with pytest.raises(NotFound):
            orchestrator.score_churn_risk(404)

    def test_write_back_failure_not_surfaced(self, orchestrator, active_flow, monkeypatch, caplog):
        """The caller gets the score even if persisting it fails."""
        started = orchestrator.start_flow("cus_1", value=60)

        def broken(session, user_id, score):
            raise RuntimeError("read-only replica")

        monkeypatch.setattr(store, "update_churn_score", broken)
        with caplog.at_level(logging.ERROR, logger="retention.dispatch"):
            result = orchestrator.score_churn_risk(started.user_id)

        assert 0 <= result.score <= 100
        assert "churn score write-back" in caplog.text

    def test_score_all_users(self, orchestrator, active_flow, session_factory):
        """Batch scoring persists every user's score."""
        a = orchestrator.start_flow("cus_a", value=200)
        b = orchestrator.start_flow("cus_b")

        result = orchestrator.score_all_users()

        assert len(result.df) == 2
        scores = dict(zip(result.df["USER_ID"], result.df["RISK_SCORE"]))
        assert load_user(session_factory, a.user_id).churn_score == scores[a.user_id]
        assert load_user(session_factory, b.user_id).churn_score == scores[b.user_id]

    def test_score_all_users_empty(self, orchestrator):
        """No users, empty result."""
        assert orchestrator.score_all_users().df.empty

    def test_update_churn_score_range(self, session_factory, orchestrator, active_flow):
        """Stored scores stay within 0-100."""
        started = orchestrator.start_flow("cus_1")

        with pytest.raises(InvalidInput):
            with session_scope(session_factory) as session:
                store.update_churn_score(session, started.user_id, 101)


class TestRecommendations:
    """Offer recommendation and message suggestion."""

    def test_rule_based_fallback(self, orchestrator, active_flow):
        """Without performance data the rule table decides."""
        started = orchestrator.start_flow("cus_1", value=150)

        rec = orchestrator.recommend_best_offer(started.user_id)

        assert rec.offer_type == OfferType.DISCOUNT
        assert rec.confidence == 60
        assert rec.expected_acceptance_rate == 40

    def test_fallback_restricted_to_flow(self, orchestrator, active_flow):
        """With a flow only its offer types are considered."""
        flow = orchestrator.create_flow("P", [
            {"type": "pause", "title": "Pause", "message": "Pause it"},
            {"type": "support", "title": "Help", "message": "Talk to us"},
        ])
        started = orchestrator.start_flow("cus_1", value=150)

        rec = orchestrator.recommend_best_offer(started.user_id, flow.id)

        assert rec.offer_type == OfferType.PAUSE

    def test_performance_data_wins(self, orchestrator, active_flow):
        """The best acceptance rate in the user's segment is recommended."""
        started = orchestrator.start_flow("cus_1", value=150)
        orchestrator.record_decision(active_flow.id, "pause", True, user_id=started.user_id)
        orchestrator.record_decision(active_flow.id, "discount", False, user_id=started.user_id)

        rec = orchestrator.recommend_best_offer(started.user_id)

        assert rec.offer_type == OfferType.PAUSE
        assert rec.confidence == 100
        assert "high_value" in rec.reason

    def test_suggest_default_message(self, orchestrator, active_flow):
        """The first canned template is filled in."""
        started = orchestrator.start_flow("cus_1", email="jane@example.com", value=30)

        suggestion = orchestrator.suggest_message(started.user_id, "discount")

        assert suggestion.message == (
            "We have a special offer just for you! Get 20% off your next 3 months."
        )
        assert suggestion.personalization["userName"] == "jane"

    def test_suggest_best_performing_message(self, orchestrator, active_flow):
        """A tracked template beats the canned default."""
        started = orchestrator.start_flow("cus_1", plan="pro", value=30)
        orchestrator.record_decision(
            active_flow.id, "pause", True, user_id=started.user_id,
            message_template="Keep your {plan} data, {userName}: pause instead.",
        )

        suggestion = orchestrator.suggest_message(started.user_id, "pause")

        assert suggestion.message == "Keep your pro data, there: pause instead."


class TestWeightsAndMetrics:
    """AI weights and performance metrics."""

    def test_weights_seeded(self, orchestrator):
        """Defaults are seeded once."""
        orchestrator.set_weight("behavior_weight", 0.5)
        orchestrator.initialize_weights()

        assert orchestrator.get_weights()["behavior_weight"] == 0.5

    def test_missing_weight_reads_as_one(self, session_factory):
        """Unseeded weights read as 1.0."""
        orchestrator = RetentionOrchestrator(session_factory)

        assert orchestrator.get_weights() == {
            "behavior_weight": 1.0,
            "value_weight": 1.0,
            "history_weight": 1.0,
            "cancel_attempts_weight": 1.0,
        }

    def test_non_finite_weight_rejected(self, orchestrator):
        """NaN and infinity cannot be stored."""
        with pytest.raises(InvalidInput):
            orchestrator.set_weight("value_weight", float("nan"))

    def test_unnormalized_weight_accepted(self, orchestrator):
        """Weights need not sum to 1."""
        orchestrator.set_weight("value_weight", 3.0)

        assert orchestrator.get_weights()["value_weight"] == 3.0

    def test_performance_summary(self, orchestrator, active_flow):
        """Totals across the performance table."""
        started = orchestrator.start_flow("cus_1", value=50)
        orchestrator.record_decision(active_flow.id, "pause", True, user_id=started.user_id)
        orchestrator.record_decision(active_flow.id, "discount", False, user_id=started.user_id)

        summary = orchestrator.performance_summary()

        assert summary.total_shown == 2
        assert summary.total_accepted == 1
        assert summary.overall_acceptance_rate == pytest.approx(50.0)
        assert set(summary.offers["offer_type"]) == {"pause", "discount"}
        assert summary.weights["history_weight"] == 0.2

    def test_update_plan_and_region(self, orchestrator, active_flow):
        """Plan and region can change outside a flow."""
        started = orchestrator.start_flow("cus_1", plan="pro", region="EU")

        assert orchestrator.update_user_plan(started.user_id, "team").plan == "team"
        assert orchestrator.update_region(started.user_id, "US").region == "US"
