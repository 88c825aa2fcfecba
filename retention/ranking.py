"""
Offer ranking by baseline rules.

Lower priority number = shown first. The value tier decides the base
order of discount/pause/downgrade; support is either forced to the front
(repeat cancellers) or appended as a last resort.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .config import EngineConfig, DEFAULT_CONFIG
from .offers import OfferType


@dataclass(frozen=True)
class RankingContext:
    """User context the ranking rules look at."""

    monthly_value: Optional[float] = None
    plan: Optional[str] = None
    cancel_attempts: int = 0


@dataclass(frozen=True)
class OfferRanking:
    type: OfferType
    priority: int
    reason: str


_TIER_LABELS = ("High-value user", "Medium-value user", "Low-value user")

_TIER_REASONS = {
    ("High-value user", OfferType.DISCOUNT): "discount most effective",
    ("High-value user", OfferType.PAUSE): "pause as backup",
    ("High-value user", OfferType.DOWNGRADE): "downgrade last resort",
    ("Medium-value user", OfferType.PAUSE): "pause preserves revenue",
    ("Medium-value user", OfferType.DISCOUNT): "discount as alternative",
    ("Medium-value user", OfferType.DOWNGRADE): "downgrade last resort",
    ("Low-value user", OfferType.DOWNGRADE): "downgrade maintains engagement",
    ("Low-value user", OfferType.PAUSE): "pause as alternative",
    ("Low-value user", OfferType.DISCOUNT): "discount less effective",
}


def _tier_for_value(monthly_value: float, config: EngineConfig) -> tuple[int, list[str]]:
    for index, (minimum, order) in enumerate(config.offer_order_tiers):
        if monthly_value >= minimum:
            return index, order
    return len(config.offer_order_tiers) - 1, config.offer_order_tiers[-1][1]


def rank_offers(
    candidate_types: Iterable[OfferType | str],
    context: RankingContext,
    config: EngineConfig = DEFAULT_CONFIG,
) -> list[OfferRanking]:
    """
    Order candidate offer types for a user context.

    Only candidates are emitted; absent types leave no gap-filling.
    Ties keep insertion order (sorted() is stable), so identical inputs
    always produce identical output.

    Example:
        >>> ctx = RankingContext(monthly_value=150, cancel_attempts=0)
        >>> [r.type.value for r in rank_offers({"pause", "discount", "downgrade"}, ctx)]
        ['discount', 'pause', 'downgrade']
    """
    candidates = {OfferType.parse(offer) for offer in candidate_types}
    monthly_value = float(context.monthly_value or 0)

    tier_index, order = _tier_for_value(monthly_value, config)
    label = _TIER_LABELS[min(tier_index, len(_TIER_LABELS) - 1)]

    rankings: list[OfferRanking] = []
    for priority, raw_type in enumerate(order, start=1):
        offer = OfferType(raw_type)
        if offer not in candidates:
            continue
        detail = _TIER_REASONS.get((label, offer), f"{offer.value} option")
        rankings.append(OfferRanking(offer, priority, f"{label} - {detail}"))

    if OfferType.SUPPORT in candidates:
        if context.cancel_attempts > config.support_escalation_attempts:
            rankings.insert(0, OfferRanking(
                OfferType.SUPPORT,
                config.support_lead_priority,
                "Multiple cancel attempts - support needed",
            ))
        else:
            rankings.append(OfferRanking(
                OfferType.SUPPORT,
                config.support_fallback_priority,
                "Support available",
            ))

    return sorted(rankings, key=lambda ranking: ranking.priority)


def order_steps(steps: list, rankings: list[OfferRanking]) -> list:
    """
    Reorder flow steps by offer ranking.

    Steps whose type has no ranking entry keep their relative order and
    follow the ranked ones.
    """
    priority = {ranking.type: ranking.priority for ranking in rankings}
    ranked = [step for step in steps if step.type in priority]
    unranked = [step for step in steps if step.type not in priority]
    return sorted(ranked, key=lambda step: priority[step.type]) + unranked
