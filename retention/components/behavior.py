"""Behavioral churn risk factor."""

import pandas as pd

from .base import BaseFactor


class BehaviorFactor(BaseFactor):
    """
    Score based on how often the user tried to cancel.

    Points:
    - 20 per cancel attempt, capped at 100
    """

    name = "behavior"
    weight_name = "behavior_weight"
    required_columns = ("CANCEL_ATTEMPTS",)

    def points(self, df: pd.DataFrame) -> pd.Series:
        return df["CANCEL_ATTEMPTS"] * self.config.behavior_points_per_attempt
