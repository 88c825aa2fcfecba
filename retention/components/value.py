"""Subscription value churn risk factor."""

import numpy as np
import pandas as pd

from .base import BaseFactor


class ValueFactor(BaseFactor):
    """
    Score based on monthly subscription value.

    Lower paying users are assumed more likely to leave.

    Points:
    - > 50/month: 30
    - > 20/month: 50
    - otherwise (or no subscription): 70
    """

    name = "value"
    weight_name = "value_weight"
    required_columns = ("MONTHLY_VALUE",)

    def points(self, df: pd.DataFrame) -> pd.Series:
        monthly_value = df["MONTHLY_VALUE"].fillna(0).astype(float)
        # first threshold exceeded wins
        return np.select(
            [monthly_value > min_value for min_value, _ in self.config.value_thresholds],
            [points for _, points in self.config.value_thresholds],
            default=self.config.value_default,
        )
