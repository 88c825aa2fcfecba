"""Value/risk segmentation of users."""

from typing import TYPE_CHECKING, Optional

import pandas as pd

from .config import EngineConfig, DEFAULT_CONFIG
from .offers import Segment

if TYPE_CHECKING:
    from .models import Subscription, User


def segment_for_value(
    monthly_value, config: EngineConfig = DEFAULT_CONFIG
) -> Segment:
    """
    Bucket a monthly subscription value into a segment.

    Missing or sub-unit values are trial users. Otherwise the first
    threshold met wins:
    - >= 100: high_value
    - >= 20: medium_value
    - else: low_value
    """
    if monthly_value is None or pd.isna(monthly_value):
        return Segment.TRIAL
    if monthly_value < config.trial_value_floor:
        return Segment.TRIAL

    for minimum, segment in config.segment_thresholds:
        if monthly_value >= minimum:
            return Segment(segment)
    return Segment.LOW_VALUE


def segment_user(
    user: "User",
    subscription: Optional["Subscription"] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Segment:
    """Segment a stored user. A missing subscription is a trial user."""
    if subscription is None:
        return Segment.TRIAL
    return segment_for_value(subscription.value, config)


def segment_series(values: pd.Series, config: EngineConfig = DEFAULT_CONFIG) -> pd.Series:
    """Segment a column of monthly values."""
    return values.map(lambda value: segment_for_value(value, config).value)
