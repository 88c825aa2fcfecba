"""
Tests for EngineConfig defaults and YAML persistence.
"""

from retention.config import DEFAULT_CONFIG, EngineConfig


class TestEngineConfig:
    """Configuration defaults and round trips."""

    def test_default_weights_sum_to_one(self):
        """Shipped weights are normalized."""
        assert abs(sum(DEFAULT_CONFIG.default_weights.values()) - 1.0) < 1e-9

    def test_default_revenue_shares(self):
        """Pause/support keep the full value; discount 20%, downgrade 30%."""
        config = EngineConfig()

        assert config.get_revenue_share("pause") == 1.0
        assert config.get_revenue_share("discount") == 0.2
        assert config.get_revenue_share("downgrade") == 0.3
        assert config.get_revenue_share("support") == 1.0
        assert config.get_revenue_share("feedback") == 0.0
        assert config.get_revenue_share("unknown") == 0.0

    def test_yaml_round_trip(self, tmp_path):
        """Saved config loads back equal, tuples included."""
        config = EngineConfig(
            revenue_share={"pause": 0.9, "discount": 0.25, "downgrade": 0.3,
                           "support": 1.0, "feedback": 0.0},
            support_escalation_attempts=2,
        )
        path = tmp_path / "configs" / "engine.yaml"

        config.to_yaml(path)
        loaded = EngineConfig.from_yaml(path)

        assert loaded == config
        assert loaded.segment_thresholds[0] == (100.0, "high_value")

    def test_partial_yaml_keeps_defaults(self, tmp_path):
        """Keys absent from the file keep their defaults."""
        path = tmp_path / "partial.yaml"
        path.write_text("acceptance_weight: 0.7\nrevenue_weight: 0.3\n")

        loaded = EngineConfig.from_yaml(path)

        assert loaded.acceptance_weight == 0.7
        assert loaded.history_window == 10
