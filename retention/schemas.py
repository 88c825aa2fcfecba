"""
Data schema definitions for the decision engine's DataFrames.

Uses Pandera for runtime validation of scoring and ranking inputs so a
bad query or a corrupted aggregate is caught before it skews a decision.
"""

from pandera import Column, Check, DataFrameSchema

from .offers import CANCEL_ATTEMPT, OfferType, Segment


# Schema for churn scoring input data
CHURN_INPUT_SCHEMA = DataFrameSchema(
    {
        "USER_ID": Column(
            int,
            nullable=False,
            unique=True,
            description="Internal user identifier"
        ),
        "CANCEL_ATTEMPTS": Column(
            int,
            nullable=False,
            checks=Check.greater_than_or_equal_to(0),
            description="Monotonic cancel-attempt counter"
        ),
        "MONTHLY_VALUE": Column(
            float,
            nullable=True,  # No subscription yet
            checks=Check.greater_than_or_equal_to(0),
            description="Monthly subscription value"
        ),
        "HISTORY_TOTAL": Column(
            int,
            nullable=False,
            checks=Check.greater_than_or_equal_to(0),
            description="Offer events in the recent history window"
        ),
        "HISTORY_ACCEPTED": Column(
            int,
            nullable=False,
            checks=Check.greater_than_or_equal_to(0),
            description="Accepted offer events in the recent history window"
        ),
    },
    checks=Check(
        lambda df: df["HISTORY_ACCEPTED"] <= df["HISTORY_TOTAL"],
        error="HISTORY_ACCEPTED cannot exceed HISTORY_TOTAL",
    ),
    strict=False,  # Allow extra columns
    coerce=True,
    description="Schema for churn risk scoring input data"
)


# Schema for churn scoring output data
CHURN_OUTPUT_SCHEMA = DataFrameSchema(
    {
        "USER_ID": Column(int, nullable=False),
        "RISK_SCORE": Column(
            int,
            nullable=False,
            checks=[
                Check.greater_than_or_equal_to(0),
                Check.less_than_or_equal_to(100),
            ]
        ),
        "SEGMENT": Column(
            str,
            nullable=False,
            checks=Check.isin([segment.value for segment in Segment])
        ),
    },
    strict=False,  # Allow factor columns
    description="Schema for churn risk scoring output data"
)


# Schema for the offer events of one flow (ranking recompute input)
OFFER_EVENT_SCHEMA = DataFrameSchema(
    {
        "OFFER_TYPE": Column(
            str,
            nullable=False,
            checks=Check.isin([offer.value for offer in OfferType] + [CANCEL_ATTEMPT]),
        ),
        "ACCEPTED": Column(bool, nullable=False),
        "REVENUE_SAVED_CENTS": Column(
            int,
            nullable=False,
            checks=Check.greater_than_or_equal_to(0),
        ),
    },
    strict=False,
    coerce=True,
    description="Schema for offer events feeding flow ranking"
)


__all__ = [
    "CHURN_INPUT_SCHEMA",
    "CHURN_OUTPUT_SCHEMA",
    "OFFER_EVENT_SCHEMA",
]
