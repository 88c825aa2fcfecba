"""
Retention Decision Engine

Decides which retention offers a cancelling SaaS customer sees, in what order,
and folds every outcome back into the signals used for the next decision.
"""

from .config import EngineConfig, DEFAULT_CONFIG
from .exceptions import (
    InvalidInput,
    NoActiveFlow,
    NotFound,
    RetentionError,
    ValidationFailed,
)
from .offers import FlowStep, OfferType, Segment
from .orchestrator import RetentionOrchestrator
from .ranking import rank_offers
from .scorer import ChurnRiskScorer
from .segmentation import segment_for_value, segment_user

__all__ = [
    "EngineConfig",
    "DEFAULT_CONFIG",
    "RetentionError",
    "NotFound",
    "ValidationFailed",
    "NoActiveFlow",
    "InvalidInput",
    "FlowStep",
    "OfferType",
    "Segment",
    "RetentionOrchestrator",
    "ChurnRiskScorer",
    "rank_offers",
    "segment_for_value",
    "segment_user",
]
__version__ = "1.0.0"
