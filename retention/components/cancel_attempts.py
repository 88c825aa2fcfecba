"""Cancel attempt churn risk factor."""

import pandas as pd

from .base import BaseFactor


class CancelAttemptsFactor(BaseFactor):
    """Direct indicator from the cancel-attempt counter: 25 points each, capped at 100."""

    name = "cancel_attempts"
    weight_name = "cancel_attempts_weight"
    required_columns = ("CANCEL_ATTEMPTS",)

    def points(self, df: pd.DataFrame) -> pd.Series:
        return df["CANCEL_ATTEMPTS"] * self.config.cancel_attempt_points
