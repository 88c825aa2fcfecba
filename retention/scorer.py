"""
ChurnRiskScorer - combines churn risk factors into a 0-100 score.

Usage:
    from retention import ChurnRiskScorer

    scorer = ChurnRiskScorer()
    result = scorer.score(df, weights={"behavior_weight": 0.4, ...})

    print(result.df[["USER_ID", "RISK_SCORE", "SEGMENT"]])
    print(result.summary())
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import numpy as np
import pandas as pd

from .config import EngineConfig, DEFAULT_CONFIG
from .components import (
    BehaviorFactor,
    ValueFactor,
    HistoryFactor,
    CancelAttemptsFactor,
)
from .offers import Segment
from .schemas import CHURN_INPUT_SCHEMA, CHURN_OUTPUT_SCHEMA
from .segmentation import segment_series

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 1e-6


@dataclass
class ScoringResult:
    """
    Container for scoring results with factor breakdown.

    Attributes:
        df: Input DataFrame with factor scores, RISK_SCORE and SEGMENT added
        component_columns: List of factor score column names
    """

    df: pd.DataFrame
    component_columns: list[str]

    def get_high_risk(self, min_score: int = 70) -> pd.DataFrame:
        """Users at or above a risk score."""
        return self.df[self.df["RISK_SCORE"] >= min_score]

    def summary(self) -> pd.DataFrame:
        """Counts and average risk score per segment."""
        return (
            self.df.groupby("SEGMENT")
            .agg(
                count=("USER_ID", "count"),
                avg_score=("RISK_SCORE", "mean"),
            )
            .round(1)
        )

    def component_breakdown(self) -> pd.DataFrame:
        """Mean/max/min of each factor."""
        stats = {}
        for col in self.component_columns:
            factor_name = col.replace("_score", "")
            stats[factor_name] = {
                "mean": self.df[col].mean(),
                "max": self.df[col].max(),
                "min": self.df[col].min(),
            }
        return pd.DataFrame(stats).T.round(1)


@dataclass
class ChurnRiskResult:
    score: int
    factors: dict[str, float]
    segment: Segment
    explanation: str


class ChurnRiskScorer:
    """
    Vectorized churn risk scoring engine.

    Factor scores (each 0-100) are computed independently, blended with
    the persisted AI weights, clamped to [0, 100] and rounded half-up.
    Weights are used as given: a set that does not sum to 1 is logged,
    never normalized, and the clamp keeps the result in range.

    Factors:
    - Behavior: 20 points per cancel attempt
    - Value: 30/50/70 by monthly value
    - History: share of recent offers declined
    - Cancel attempts: 25 points per cancel attempt
    """

    REQUIRED_COLUMNS = [
        "USER_ID",
        "CANCEL_ATTEMPTS",
        "MONTHLY_VALUE",
        "HISTORY_TOTAL",
        "HISTORY_ACCEPTED",
    ]

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initialize scorer with configuration.

        Args:
            config: EngineConfig instance. Uses DEFAULT_CONFIG if None.
        """
        self.config = config or DEFAULT_CONFIG
        self._init_components()

    def _init_components(self) -> None:
        """Initialize all risk factors."""
        self.components = {
            "behavior": BehaviorFactor(self.config),
            "value": ValueFactor(self.config),
            "history": HistoryFactor(self.config),
            "cancel_attempts": CancelAttemptsFactor(self.config),
        }

    def validate_input(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Validate required columns and value ranges.

        Raises:
            ValueError: If required columns are missing
            pandera.errors.SchemaError: If values violate the input schema
            pandera.errors.SchemaErrors: If a column cannot be coerced
        """
        missing = set(self.REQUIRED_COLUMNS) - set(df.columns)
        if missing:
            raise ValueError(f"Missing required columns: {missing}")
        return CHURN_INPUT_SCHEMA.validate(df)

    def resolve_weights(self, weights: Optional[Mapping[str, float]] = None) -> dict[str, float]:
        """Weight per factor; names missing from the mapping read as 1.0."""
        source = self.config.default_weights if weights is None else weights
        resolved = {
            component.weight_name: float(
                source.get(component.weight_name, self.config.missing_weight_value)
            )
            for component in self.components.values()
        }
        total = sum(resolved.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            logger.warning("Churn weights sum to %.4f, not 1.0: %s", total, resolved)
        return resolved

    def score(
        self,
        df: pd.DataFrame,
        weights: Optional[Mapping[str, float]] = None,
    ) -> ScoringResult:
        """
        Calculate churn risk scores for all users.

        Args:
            df: DataFrame with required columns
            weights: AI weights by name. Uses config defaults if None.

        Returns:
            ScoringResult with scores and factor breakdown
        """
        result = self.validate_input(df).copy()
        resolved = self.resolve_weights(weights)

        component_cols = []
        weighted = pd.Series(0.0, index=result.index)
        for name, component in self.components.items():
            col_name = f"{name}_score"
            result[col_name] = component.score(result)
            component_cols.append(col_name)
            weighted = weighted + result[col_name] * resolved[component.weight_name]

        clamped = weighted.clip(lower=0, upper=self.config.factor_cap)
        result["RISK_SCORE"] = np.floor(clamped + 0.5).astype(int)
        result["SEGMENT"] = segment_series(result["MONTHLY_VALUE"], self.config)

        CHURN_OUTPUT_SCHEMA.validate(result)
        return ScoringResult(df=result, component_columns=component_cols)

    def score_single(
        self,
        record: Mapping,
        weights: Optional[Mapping[str, float]] = None,
    ) -> ChurnRiskResult:
        """
        Score a single user (convenience method).

        Args:
            record: Mapping with the required fields
            weights: AI weights by name

        Returns:
            ChurnRiskResult with score, factors, segment and explanation
        """
        df = pd.DataFrame([dict(record)])
        result = self.score(df, weights)
        row = result.df.iloc[0]
        return ChurnRiskResult(
            score=int(row["RISK_SCORE"]),
            factors={
                col.replace("_score", ""): float(row[col])
                for col in result.component_columns
            },
            segment=Segment(row["SEGMENT"]),
            explanation=self.explain(row),
        )

    @staticmethod
    def explain(row: Mapping) -> str:
        """Human-readable reasons behind a score."""
        explanations = []

        cancel_attempts = int(row["CANCEL_ATTEMPTS"])
        if cancel_attempts > 0:
            explanations.append(f"{cancel_attempts} previous cancel attempt(s)")

        monthly_value = row["MONTHLY_VALUE"]
        if monthly_value is not None and not pd.isna(monthly_value) and monthly_value > 0:
            explanations.append(f"${float(monthly_value):.2f}/month subscription")

        total = int(row["HISTORY_TOTAL"])
        if total > 0:
            explanations.append(f"{int(row['HISTORY_ACCEPTED'])}/{total} past offers accepted")

        if not explanations:
            explanations.append("New user with no history")

        return ", ".join(explanations)


def generate_sample_users(n_users: int = 100, seed: int = 42) -> pd.DataFrame:
    """
    Generate realistic sample scoring input for testing.

    - ~40% of users have never tried to cancel before
    - ~15% have no subscription value (trial)
    - Offer history is capped at the 10-event window
    """
    rng = np.random.default_rng(seed)

    cancel_attempts = rng.choice([0, 1, 2, 3, 5], size=n_users, p=[0.4, 0.3, 0.15, 0.1, 0.05])

    monthly_value = np.round(rng.gamma(shape=2.0, scale=30.0, size=n_users), 2)
    no_subscription = rng.random(n_users) < 0.15
    monthly_value = np.where(no_subscription, np.nan, monthly_value)

    history_total = rng.integers(0, 11, size=n_users)
    history_accepted = np.floor(history_total * rng.random(n_users)).astype(int)

    return pd.DataFrame(
        {
            "USER_ID": np.arange(1, n_users + 1),
            "CANCEL_ATTEMPTS": cancel_attempts,
            "MONTHLY_VALUE": monthly_value,
            "HISTORY_TOTAL": history_total,
            "HISTORY_ACCEPTED": history_accepted,
        }
    )
