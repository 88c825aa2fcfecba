"""Base class for churn risk factors."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from ..config import EngineConfig


class BaseFactor(ABC):
    """
    One weighted input of the churn risk score.

    Subclasses turn their input columns into raw points; score() checks
    the columns, applies the points rule to every row at once and clips
    the result to 0..factor_cap.
    """

    name: str = "base"
    weight_name: str = "base_weight"
    required_columns: tuple[str, ...] = ()

    def __init__(self, config: "EngineConfig"):
        self.config = config

    @abstractmethod
    def points(self, df: pd.DataFrame) -> pd.Series:
        """Raw points per row, before clipping."""

    def score(self, df: pd.DataFrame) -> pd.Series:
        """
        Factor score for all rows.

        Raises:
            ValueError: If an input column is missing
        """
        missing = [col for col in self.required_columns if col not in df.columns]
        if missing:
            raise ValueError(f"{type(self).__name__} needs input columns {missing}")
        raw = pd.Series(self.points(df), index=df.index, dtype=float)
        return raw.clip(lower=0, upper=self.config.factor_cap)
