"""
Decision engine configuration.

All heuristic thresholds, coefficients and default weights are defined here
for easy tuning. Values are static heuristics, not learned parameters.

Load from YAML:
    config = EngineConfig.from_yaml("configs/retention.yaml")

Override programmatically:
    config = EngineConfig(revenue_share={"discount": 0.25, ...})
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Tuple

import yaml


@dataclass
class EngineConfig:
    """
    Configuration for segmentation, offer ranking, churn scoring and
    flow ranking.

    Churn risk is a weighted blend of four 0-100 factors:
    - Behavior: points per cancel attempt
    - Value: lower monthly value = higher risk
    - History: share of recent offers declined
    - Cancel attempts: direct per-attempt indicator
    """

    # === Segmentation ===
    # Monthly value below the trial floor (or no subscription) is a trial user
    trial_value_floor: float = 1.0
    segment_thresholds: List[Tuple[float, str]] = field(default_factory=lambda: [
        (100.0, "high_value"),
        (20.0, "medium_value"),
        # below 20: low_value
    ])

    # === Offer ranking ===
    # First tier whose minimum value is met decides the base order
    offer_order_tiers: List[Tuple[float, List[str]]] = field(default_factory=lambda: [
        (100.0, ["discount", "pause", "downgrade"]),
        (20.0, ["pause", "discount", "downgrade"]),
        (0.0, ["downgrade", "pause", "discount"]),
    ])
    support_escalation_attempts: int = 1  # support leads when attempts exceed this
    support_lead_priority: int = 0
    support_fallback_priority: int = 99

    # === Churn risk factors (each 0-100) ===
    factor_cap: int = 100
    behavior_points_per_attempt: int = 20
    cancel_attempt_points: int = 25
    value_thresholds: List[Tuple[float, int]] = field(default_factory=lambda: [
        (50.0, 30),   # > 50/month: established customer
        (20.0, 50),   # > 20/month: moderate
        # <= 20/month: 70 points
    ])
    value_default: int = 70
    history_window: int = 10
    history_default: int = 30  # no offer history yet

    default_weights: Dict[str, float] = field(default_factory=lambda: {
        "behavior_weight": 0.4,
        "value_weight": 0.3,
        "history_weight": 0.2,
        "cancel_attempts_weight": 0.1,
    })
    missing_weight_value: float = 1.0

    # === Revenue saved on acceptance (share of monthly value) ===
    # A step may override its share with config["revenue_share"]
    revenue_share: Dict[str, float] = field(default_factory=lambda: {
        "pause": 1.0,
        "discount": 0.2,
        "downgrade": 0.3,
        "support": 1.0,
        "feedback": 0.0,
    })
    default_discount_percentage: float = 20.0
    default_discount_duration: int = 3
    default_plan: str = "basic"
    downgrade_plan_suffix: str = "_downgrade"

    # === Flow ranking ===
    acceptance_weight: float = 0.6
    revenue_weight: float = 0.4
    revenue_points_divisor: float = 10.0  # 1000 currency units saved = 100 points
    revenue_factor_cap: float = 100.0

    # === Flow validation ===
    max_flow_name_length: int = 255
    max_recommended_steps: int = 10
    language_code_length: int = 2
    default_language: str = "en"

    # === Rule-based recommendation fallback ===
    fallback_confidence: int = 60
    fallback_acceptance_rate: float = 40.0

    # === Metadata ===
    version: str = "1.0.0"

    @classmethod
    def from_yaml(cls, path: Path | str) -> "EngineConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        # YAML has no tuples; restore the pair structure
        for key in ("segment_thresholds", "offer_order_tiers", "value_thresholds"):
            if key in data:
                data[key] = [tuple(item) for item in data[key]]
        return cls(**data)

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()
        for key in ("segment_thresholds", "offer_order_tiers", "value_thresholds"):
            data[key] = [list(item) for item in data[key]]
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    def get_revenue_share(self, offer_type: str) -> float:
        """Default revenue-saved share for an offer type."""
        return self.revenue_share.get(offer_type, 0.0)


# Default configuration instance
DEFAULT_CONFIG = EngineConfig()
