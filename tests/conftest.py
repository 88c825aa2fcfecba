"""
Pytest fixtures for retention decision engine tests.
"""

import pandas as pd
import pytest

# Add package to path
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from retention.config import EngineConfig
from retention.db import create_db_engine, init_db, make_session_factory
from retention.orchestrator import RetentionOrchestrator
from retention.scorer import ChurnRiskScorer, generate_sample_users


STANDARD_STEPS = [
    {"type": "pause", "title": "Pause instead?", "message": "Take a break and come back later."},
    {
        "type": "discount",
        "title": "20% off",
        "message": "Stay and get 20% off for 3 months.",
        "config": {"percentage": 20, "duration": 3},
    },
    {
        "type": "downgrade",
        "title": "Switch plans",
        "message": "Move to a plan that fits.",
        "config": {"plan": "basic"},
    },
    {"type": "support", "title": "Talk to us", "message": "Our team can help."},
]


@pytest.fixture
def default_config():
    """Default engine configuration."""
    return EngineConfig()


@pytest.fixture
def scorer(default_config):
    """ChurnRiskScorer with default config."""
    return ChurnRiskScorer(default_config)


@pytest.fixture
def sample_users():
    """100 sample users with realistic distributions."""
    return generate_sample_users(n_users=100, seed=42)


@pytest.fixture
def edge_cases():
    """Specific edge cases for boundary conditions."""
    return pd.DataFrame([
        # Brand new trial user: no attempts, no subscription, no history
        {"USER_ID": 1, "CANCEL_ATTEMPTS": 0, "MONTHLY_VALUE": None,
         "HISTORY_TOTAL": 0, "HISTORY_ACCEPTED": 0},
        # Serial canceller on a cheap plan who declines everything
        {"USER_ID": 2, "CANCEL_ATTEMPTS": 6, "MONTHLY_VALUE": 9.0,
         "HISTORY_TOTAL": 10, "HISTORY_ACCEPTED": 0},
        # Loyal high-value user who always accepts
        {"USER_ID": 3, "CANCEL_ATTEMPTS": 0, "MONTHLY_VALUE": 250.0,
         "HISTORY_TOTAL": 5, "HISTORY_ACCEPTED": 5},
        # Exactly on the value thresholds
        {"USER_ID": 4, "CANCEL_ATTEMPTS": 1, "MONTHLY_VALUE": 50.0,
         "HISTORY_TOTAL": 2, "HISTORY_ACCEPTED": 1},
        {"USER_ID": 5, "CANCEL_ATTEMPTS": 1, "MONTHLY_VALUE": 20.0,
         "HISTORY_TOTAL": 2, "HISTORY_ACCEPTED": 1},
    ])


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database, fresh per test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'retention.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def orchestrator(session_factory, default_config):
    """Orchestrator with default weights seeded."""
    orchestrator = RetentionOrchestrator(session_factory, default_config)
    orchestrator.initialize_weights()
    return orchestrator


@pytest.fixture
def active_flow(orchestrator):
    """Activated English flow with pause, discount, downgrade and support steps."""
    flow = orchestrator.create_flow("Standard", STANDARD_STEPS, language="en")
    return orchestrator.activate_flow(flow.id)
