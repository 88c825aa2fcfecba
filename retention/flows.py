"""
Flow management, selection and performance ranking.

A flow is eligible for selection only while its ranking score is
positive. The score moves in two ways: manual activation/deactivation,
and a recompute from the flow's offer events after every decision.
"""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from . import store
from .config import EngineConfig, DEFAULT_CONFIG
from .db import session_scope
from .exceptions import InvalidInput, ValidationFailed
from .models import Flow
from .money import round_half_up
from .offers import FlowStep, OfferType, parse_steps
from .schemas import OFFER_EVENT_SCHEMA

logger = logging.getLogger(__name__)


FLOW_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "Standard Retention Flow",
        "language": "en",
        "steps": [
            {
                "type": "pause",
                "title": "Wait, before you go...",
                "message": "We hate to see you leave! Would you like to pause your subscription instead?",
            },
            {
                "type": "discount",
                "title": "Special Offer Just For You",
                "message": "Get 20% off your next 3 months!",
                "config": {"percentage": 20, "duration": 3},
            },
            {
                "type": "feedback",
                "title": "Help Us Improve",
                "message": "We'd love to hear why you're canceling. Your feedback helps us improve.",
            },
        ],
    },
    {
        "name": "Aggressive Retention Flow",
        "language": "en",
        "steps": [
            {
                "type": "pause",
                "title": "Pause Your Subscription",
                "message": "Take a break without losing your data. You can resume anytime!",
            },
            {
                "type": "downgrade",
                "title": "Downgrade Instead?",
                "message": "Switch to a lower plan that might better fit your needs.",
                "config": {"plan": "basic"},
            },
            {
                "type": "discount",
                "title": "50% Off Next 6 Months",
                "message": "We want to keep you! Here's a special discount.",
                "config": {"percentage": 50, "duration": 6},
            },
            {
                "type": "support",
                "title": "Talk to Our Team",
                "message": "Our support team can help find a solution that works for you.",
            },
        ],
    },
    {
        "name": "Simple Feedback Flow",
        "language": "en",
        "steps": [
            {
                "type": "feedback",
                "title": "Why Are You Leaving?",
                "message": "Your feedback is valuable to us. Please let us know why you're canceling.",
            },
        ],
    },
]


@dataclass
class FlowValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _raw_step(step: Any) -> Any:
    return step.to_dict() if isinstance(step, FlowStep) else step


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def validate_flow(
    name: Optional[str],
    steps: Any,
    language: Optional[str] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> FlowValidationResult:
    """
    Check a flow's structure before it can be shown to users.

    Errors block activation. Warnings (long flows, downgrade without a
    target plan, odd language codes) are advisory.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if _is_blank(name):
        errors.append("Flow name is required")
    elif len(name) > config.max_flow_name_length:
        errors.append(f"Flow name must be {config.max_flow_name_length} characters or less")

    if not isinstance(steps, (list, tuple)):
        errors.append("Flow must have a steps array")
        return FlowValidationResult(valid=False, errors=errors, warnings=warnings)

    if len(steps) == 0:
        errors.append("Flow must have at least one step")
    if len(steps) > config.max_recommended_steps:
        warnings.append(
            f"Flows with more than {config.max_recommended_steps} steps "
            "may have lower conversion rates"
        )

    valid_types = {offer.value for offer in OfferType}
    for index, raw in enumerate(steps, start=1):
        raw = _raw_step(raw)
        if not isinstance(raw, Mapping):
            errors.append(f"Step {index}: Step must be an object")
            continue

        step_type = raw.get("type")
        step_type = step_type.value if isinstance(step_type, OfferType) else step_type
        if step_type not in valid_types:
            errors.append(f'Step {index}: Invalid step type "{step_type}"')
        if _is_blank(raw.get("title")):
            errors.append(f"Step {index}: Title is required")
        if _is_blank(raw.get("message")):
            errors.append(f"Step {index}: Message is required")

        step_config = raw.get("config") or {}
        if not isinstance(step_config, Mapping):
            errors.append(f"Step {index}: Config must be an object")
            continue

        if step_type == OfferType.DISCOUNT.value:
            percentage = step_config.get("percentage")
            if not percentage:
                errors.append(f"Step {index}: Discount step must have a percentage in config")
            elif isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
                errors.append(f"Step {index}: Discount percentage must be numeric")
            elif math.isnan(percentage) or percentage <= 0 or percentage > 100:
                errors.append(f"Step {index}: Discount percentage must be between 0 and 100")
        if step_type == OfferType.DOWNGRADE.value and not step_config.get("plan"):
            warnings.append(f"Step {index}: Downgrade step should specify a target plan")

    if language and len(language) != config.language_code_length:
        warnings.append('Language code should be 2 characters (e.g., "en", "es")')

    return FlowValidationResult(valid=not errors, errors=errors, warnings=warnings)


def select_flow(session: Session, language: str) -> Optional[Flow]:
    """Best-ranked active flow for a language; newest wins a tie, then highest id."""
    return session.execute(
        select(Flow)
        .where(Flow.language == language, Flow.ranking_score > 0)
        .order_by(Flow.ranking_score.desc(), Flow.created_at.desc(), Flow.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def recompute_flow_ranking(
    session: Session, flow_id: int, config: EngineConfig = DEFAULT_CONFIG
) -> Flow:
    """
    Recompute a flow's ranking score from all of its offer events.

    score = round(acceptance_rate * 0.6 + min(revenue_saved / 10, 100) * 0.4)

    A flow without events keeps its current score. The flow row is
    locked for the duration so concurrent recomputes serialize.
    """
    flow = store.get_flow(session, flow_id, for_update=True)
    events = store.events_frame_for_flow(session, flow_id)
    if events.empty:
        logger.debug("Flow %s has no events, ranking score stays %s", flow_id, flow.ranking_score)
        return flow

    events = OFFER_EVENT_SCHEMA.validate(events)
    total = len(events)
    accepted = events["ACCEPTED"]
    acceptance_rate = int(accepted.sum()) / total * 100

    revenue_saved_cents = int(events.loc[accepted, "REVENUE_SAVED_CENTS"].sum())
    revenue_factor = min(
        revenue_saved_cents / 100 / config.revenue_points_divisor,
        config.revenue_factor_cap,
    )

    ranking_score = round_half_up(
        acceptance_rate * config.acceptance_weight + revenue_factor * config.revenue_weight
    )
    if ranking_score != flow.ranking_score:
        logger.info(
            "Flow %s ranking score %s -> %s (%d events, %.1f%% accepted)",
            flow_id, flow.ranking_score, ranking_score, total, acceptance_rate,
        )
        flow.ranking_score = ranking_score
        session.flush()
    return flow


def flow_templates() -> list[dict[str, Any]]:
    """Pre-built flows, as fresh copies."""
    return copy.deepcopy(FLOW_TEMPLATES)


class FlowService:
    """Flow CRUD plus validation-gated activation."""

    def __init__(self, session_factory: sessionmaker, config: Optional[EngineConfig] = None):
        self.session_factory = session_factory
        self.config = config or DEFAULT_CONFIG

    def create_flow(self, name: str, steps: Any, language: Optional[str] = None) -> Flow:
        """New flows start inactive (score 0)."""
        if not isinstance(name, str):
            raise InvalidInput("Flow name must be a string")
        parsed = parse_steps(steps)
        with session_scope(self.session_factory) as session:
            flow = Flow(
                name=name,
                steps=[step.to_dict() for step in parsed],
                language=language or self.config.default_language,
                ranking_score=0,
            )
            session.add(flow)
            session.flush()
            logger.info("Created flow %s (%s)", flow.id, flow.name)
            return flow

    def update_flow(
        self,
        flow_id: int,
        name: Optional[str] = None,
        steps: Any = None,
        language: Optional[str] = None,
    ) -> Flow:
        """
        Partial update; fields left as None are unchanged.

        An active flow that no longer validates is deactivated, so it can
        not be served until it is fixed and activated again.
        """
        parsed = parse_steps(steps) if steps is not None else None
        with session_scope(self.session_factory) as session:
            flow = store.get_flow(session, flow_id, for_update=True)
            if name is not None:
                flow.name = name
            if parsed is not None:
                flow.steps = [step.to_dict() for step in parsed]
            if language is not None:
                flow.language = language
            if flow.is_active:
                result = validate_flow(flow.name, flow.steps, flow.language, self.config)
                if not result.valid:
                    logger.warning(
                        "Flow %s deactivated after invalid update: %s", flow_id, "; ".join(result.errors)
                    )
                    flow.ranking_score = 0
            session.flush()
            return flow

    def duplicate_flow(self, flow_id: int, new_name: Optional[str] = None) -> Flow:
        with session_scope(self.session_factory) as session:
            original = store.get_flow(session, flow_id)
            flow = Flow(
                name=new_name or f"Copy of {original.name}",
                steps=copy.deepcopy(original.steps),
                language=original.language,
                ranking_score=0,
            )
            session.add(flow)
            session.flush()
            return flow

    def delete_flow(self, flow_id: int) -> None:
        with session_scope(self.session_factory) as session:
            flow = store.get_flow(session, flow_id)
            session.delete(flow)
        logger.info("Deleted flow %s", flow_id)

    def get_flow(self, flow_id: int) -> Flow:
        with session_scope(self.session_factory) as session:
            return store.get_flow(session, flow_id)

    def list_flows(self, language: Optional[str] = None) -> list[Flow]:
        """All flows, best score first, then newest."""
        stmt = select(Flow)
        if language:
            stmt = stmt.where(Flow.language == language)
        stmt = stmt.order_by(Flow.ranking_score.desc(), Flow.created_at.desc(), Flow.id.desc())
        with session_scope(self.session_factory) as session:
            return list(session.execute(stmt).scalars())

    def validate(self, flow_id: int) -> FlowValidationResult:
        with session_scope(self.session_factory) as session:
            flow = store.get_flow(session, flow_id)
            return validate_flow(flow.name, flow.steps, flow.language, self.config)

    def activate(self, flow_id: int) -> Flow:
        """
        Make a flow selectable.

        Raises:
            ValidationFailed: If the flow has validation errors; the
                ranking score is left untouched.
        """
        with session_scope(self.session_factory) as session:
            flow = store.get_flow(session, flow_id, for_update=True)
            result = validate_flow(flow.name, flow.steps, flow.language, self.config)
            if not result.valid:
                raise ValidationFailed(result.errors, result.warnings)
            if flow.ranking_score == 0:
                flow.ranking_score = 1
                session.flush()
            logger.info("Activated flow %s (score %s)", flow_id, flow.ranking_score)
            return flow

    def deactivate(self, flow_id: int) -> Flow:
        with session_scope(self.session_factory) as session:
            flow = store.get_flow(session, flow_id, for_update=True)
            flow.ranking_score = 0
            session.flush()
            logger.info("Deactivated flow %s", flow_id)
            return flow

    def recompute(self, flow_id: int) -> Flow:
        with session_scope(self.session_factory) as session:
            return recompute_flow_ranking(session, flow_id, self.config)

    def select(self, language: Optional[str] = None) -> Optional[Flow]:
        with session_scope(self.session_factory) as session:
            return select_flow(session, language or self.config.default_language)

    def seed_templates(self, templates: Optional[Iterable[Mapping[str, Any]]] = None) -> list[Flow]:
        """Create the canned flows, skipping any whose name already exists for its language."""
        created = []
        for template in templates or flow_templates():
            language = template.get("language") or self.config.default_language
            with session_scope(self.session_factory) as session:
                exists = session.execute(
                    select(Flow.id).where(
                        Flow.name == template["name"], Flow.language == language
                    )
                ).first()
            if exists is not None:
                logger.debug("Template flow %r already present", template["name"])
                continue
            created.append(self.create_flow(template["name"], template["steps"], language))
        return created
