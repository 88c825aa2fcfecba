"""
Closed vocabularies for offers, segments and flow steps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .exceptions import InvalidInput


class OfferType(str, Enum):
    PAUSE = "pause"
    DOWNGRADE = "downgrade"
    DISCOUNT = "discount"
    SUPPORT = "support"
    FEEDBACK = "feedback"

    @classmethod
    def parse(cls, value: Any) -> "OfferType":
        """Parse a raw step/offer type, raising InvalidInput if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise InvalidInput(f"Invalid offer type: {value!r}") from exc


class Segment(str, Enum):
    TRIAL = "trial"
    LOW_VALUE = "low_value"
    MEDIUM_VALUE = "medium_value"
    HIGH_VALUE = "high_value"


# Offer types that take part in value-tier ranking
VALUE_TIER_OFFERS = (OfferType.DISCOUNT, OfferType.PAUSE, OfferType.DOWNGRADE)

# Offer types a recommendation can point at
RECOMMENDABLE_OFFERS = VALUE_TIER_OFFERS + (OfferType.SUPPORT,)

# Synthetic event row written once per cancellation interception
CANCEL_ATTEMPT = "cancel_attempt"

# Aggregate rows not tied to a segment
ALL_SEGMENTS = "all"


@dataclass(frozen=True)
class FlowStep:
    """One offer screen inside a flow."""

    type: OfferType
    title: str
    message: str
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FlowStep":
        if not isinstance(raw, Mapping):
            raise InvalidInput("Each step must be an object")
        config = raw.get("config") or {}
        if not isinstance(config, Mapping):
            raise InvalidInput("Step config must be an object")
        return cls(
            type=OfferType.parse(raw.get("type")),
            title=str(raw.get("title") or ""),
            message=str(raw.get("message") or ""),
            config=dict(config),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
        }
        if self.config:
            data["config"] = dict(self.config)
        return data


def parse_steps(raw_steps: Any) -> list[FlowStep]:
    """Parse a raw steps array, requiring at least one step of a known type."""
    if not isinstance(raw_steps, list) or not raw_steps:
        raise InvalidInput("Flow must have at least one step")
    return [FlowStep.from_dict(raw) for raw in raw_steps]


def offer_types_in(steps: Iterable[FlowStep]) -> list[OfferType]:
    """Distinct offer types in step order."""
    seen: list[OfferType] = []
    for step in steps:
        if step.type not in seen:
            seen.append(step.type)
    return seen
