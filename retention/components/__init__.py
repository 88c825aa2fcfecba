"""Churn risk factor components."""

from .base import BaseFactor
from .behavior import BehaviorFactor
from .value import ValueFactor
from .history import HistoryFactor
from .cancel_attempts import CancelAttemptsFactor

__all__ = [
    "BaseFactor",
    "BehaviorFactor",
    "ValueFactor",
    "HistoryFactor",
    "CancelAttemptsFactor",
]
