"""CLI entrypoint: simulate traffic, load it into the warehouse and analyze it.

Usage:
    python -m src.simulator.generate
    python -m src.simulator.generate --users 5000 --days 30
    python -m src.simulator.generate --traffic 50 --export data/results.json
"""

import argparse
import dataclasses
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.ab.assignment import AssignmentCoordinator
from src.ab.experiment import PRICING_PAGE_EXPERIMENT
from src.analysis.service import analyze_experiment
from src.analysis.stats import AnalysisConfig, format_report
from src.collector.schemas import Event
from src.simulator.config import SimulationConfig
from src.simulator.engine import generate_events
from src.warehouse.assignments import DuckDBAssignmentStore
from src.warehouse.db import DuckDBResultsSource, get_connection, init_db, insert_events


def _events_to_dicts(events: list[Event]) -> list[dict]:
    return [e.model_dump(mode="json") for e in events]


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Simulate an experiment and analyze it")
    parser.add_argument("--users", type=int, default=2000, help="Number of visitors")
    parser.add_argument("--days", type=int, default=14, help="Simulation window in days")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--db", type=str, default="data/analytics.duckdb", help="Database path")
    parser.add_argument("--traffic", type=float, default=100, help="Traffic allocation percentage")
    parser.add_argument("--mde", type=float, default=0.02, help="Minimum detectable effect (absolute)")
    parser.add_argument("--alpha", type=float, default=0.05, help="Significance level")
    parser.add_argument("--power", type=float, default=0.8, help="Statistical power")
    parser.add_argument("--export", type=str, default=None, help="Write the analysis JSON here")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    opts = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if opts.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = SimulationConfig(num_users=opts.users, days=opts.days, seed=opts.seed)
    experiment = dataclasses.replace(
        PRICING_PAGE_EXPERIMENT,
        traffic_percentage=opts.traffic,
        started_at=datetime.now(timezone.utc) - timedelta(days=opts.days + 1),
    )

    print(f"Experiment: {experiment.name} ({experiment.experiment_id})")
    total_weight = sum(experiment.weights)
    for v in experiment.variants:
        print(f"  {v.name}: {v.weight / total_weight:.0%} of included traffic")
    print(f"  traffic allocation: {experiment.traffic_percentage:g}%")

    conn = get_connection(opts.db)
    init_db(conn)
    coordinator = AssignmentCoordinator(DuckDBAssignmentStore(conn))

    print(f"Generating events for {config.num_users} visitors over {config.days} days (seed={config.seed})...")
    events = generate_events(config, experiment, coordinator)
    print(f"Generated {len(events)} events")

    by_type = {}
    for e in events:
        by_type[e.event_type.value] = by_type.get(e.event_type.value, 0) + 1
    print("Event breakdown:")
    for etype, count in sorted(by_type.items()):
        print(f"  {etype}: {count}")

    print(f"\nLoading into warehouse at {opts.db}...")
    inserted, dupes = insert_events(conn, _events_to_dicts(events))
    print(f"Inserted: {inserted}, Duplicates skipped: {dupes}\n")

    analysis_config = AnalysisConfig(
        minimum_detectable_effect=opts.mde,
        significance_level=opts.alpha,
        power=opts.power,
    )
    result = analyze_experiment(experiment, DuckDBResultsSource(conn), analysis_config)
    conn.close()
    print(format_report(result))

    if opts.export:
        path = Path(opts.export)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(result.to_dict(), indent=2, allow_nan=False))
        print(f"\nExported analysis to {path}")


if __name__ == "__main__":
    main()
