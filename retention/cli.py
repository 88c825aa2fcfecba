#!/usr/bin/env python3
"""
Command-line administration for the retention decision engine.

Usage:
    # Create tables and seed default weights
    python -m retention.cli init-db

    # Load the canned flows and make one selectable
    python -m retention.cli seed-templates
    python -m retention.cli activate 1

    # Inspect
    python -m retention.cli list-flows --language en
    python -m retention.cli score 42
    python -m retention.cli metrics

The database comes from RETENTION_DATABASE_URL (default sqlite:///retention.db).
"""

import argparse
import logging
import sys

from .config import EngineConfig
from .db import create_db_engine, init_db, make_session_factory
from .exceptions import RetentionError, ValidationFailed
from .orchestrator import RetentionOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="retention-engine",
        description="Retention decision engine administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  retention-engine init-db
  retention-engine seed-templates
  retention-engine validate 3
  retention-engine set-weight history_weight 0.25
        """,
    )
    parser.add_argument("--config", help="Path to YAML engine config")
    parser.add_argument("--database-url", help="Override RETENTION_DATABASE_URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create tables and seed default AI weights")
    sub.add_parser("seed-templates", help="Create the pre-built flows (inactive)")

    list_flows = sub.add_parser("list-flows", help="List flows by ranking score")
    list_flows.add_argument("--language", help="Only flows in this language")

    for name, help_text in [
        ("validate", "Validate a flow"),
        ("activate", "Validate and activate a flow"),
        ("deactivate", "Deactivate a flow"),
        ("recompute", "Recompute a flow's ranking score"),
    ]:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("flow_id", type=int)

    score = sub.add_parser("score", help="Churn risk score for a user")
    score.add_argument("user_id", type=int)

    sub.add_parser("metrics", help="Offer performance summary")

    set_weight = sub.add_parser("set-weight", help="Set a churn scoring weight")
    set_weight.add_argument("name")
    set_weight.add_argument("value", type=float)

    return parser


def run(args: argparse.Namespace) -> int:
    config = EngineConfig.from_yaml(args.config) if args.config else EngineConfig()
    engine = create_db_engine(args.database_url)
    logger.debug("Using database %s", engine.url.render_as_string(hide_password=True))
    orchestrator = RetentionOrchestrator(make_session_factory(engine), config)

    if args.command == "init-db":
        init_db(engine)
        orchestrator.initialize_weights()
        print(f"Initialized database at {engine.url.render_as_string(hide_password=True)}")

    elif args.command == "seed-templates":
        created = orchestrator.seed_templates()
        print(f"Created {len(created)} flow(s)")
        for flow in created:
            print(f"  [{flow.id}] {flow.name}")

    elif args.command == "list-flows":
        flows = orchestrator.list_flows(args.language)
        if not flows:
            print("No flows found.")
        for flow in flows:
            status = "active" if flow.is_active else "inactive"
            print(f"[{flow.id:>4}] {flow.name:<40} {flow.language}  score={flow.ranking_score:<4} {status}")

    elif args.command == "validate":
        result = orchestrator.validate_flow(args.flow_id)
        print("VALID" if result.valid else "INVALID")
        for error in result.errors:
            print(f"  error: {error}")
        for warning in result.warnings:
            print(f"  warning: {warning}")
        return 0 if result.valid else 1

    elif args.command == "activate":
        flow = orchestrator.activate_flow(args.flow_id)
        print(f"Activated flow {flow.id} (score={flow.ranking_score})")

    elif args.command == "deactivate":
        flow = orchestrator.deactivate_flow(args.flow_id)
        print(f"Deactivated flow {flow.id}")

    elif args.command == "recompute":
        flow = orchestrator.recompute_flow_ranking(args.flow_id)
        print(f"Flow {flow.id} ranking score: {flow.ranking_score}")

    elif args.command == "score":
        result = orchestrator.score_churn_risk(args.user_id)
        print(f"User {args.user_id}: risk {result.score}/100 ({result.segment.value})")
        for factor, value in result.factors.items():
            print(f"  {factor:<16} {value:>6.1f}")
        print(f"  {result.explanation}")

    elif args.command == "metrics":
        summary = orchestrator.performance_summary()
        print(f"Offers shown:    {summary.total_shown}")
        print(f"Offers accepted: {summary.total_accepted}")
        print(f"Acceptance rate: {summary.overall_acceptance_rate:.1f}%")
        if not summary.offers.empty:
            print()
            print(summary.offers.to_string(index=False))
        print()
        for name, value in sorted(summary.weights.items()):
            print(f"{name:<24} {value}")

    elif args.command == "set-weight":
        orchestrator.set_weight(args.name, args.value)
        print(f"{args.name} = {args.value}")

    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return run(args)
    except ValidationFailed as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        for warning in exc.warnings:
            print(f"  warning: {warning}", file=sys.stderr)
        return 1
    except RetentionError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
