"""Offer history churn risk factor."""

import numpy as np
import pandas as pd

from .base import BaseFactor


class HistoryFactor(BaseFactor):
    """
    Score based on the user's recent offer events (newest 10).

    A user who keeps declining offers is at higher risk; a user with no
    history gets a neutral-low default.

    Points:
    - no history: 30
    - otherwise: 100 - acceptance rate (%)
    """

    name = "history"
    weight_name = "history_weight"
    required_columns = ("HISTORY_TOTAL", "HISTORY_ACCEPTED")

    def points(self, df: pd.DataFrame) -> pd.Series:
        total = df["HISTORY_TOTAL"].astype(float)
        accepted = df["HISTORY_ACCEPTED"].astype(float)
        declined_share = 100.0 - accepted / total.where(total > 0, 1.0) * 100.0
        return np.where(total > 0, declined_share, self.config.history_default)
