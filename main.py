#!/usr/bin/env python3
# mbalit-dispatch/main.py
"""
Command-Line Interface for the Mbalit dispatch simulation.

Runs the real dispatcher against a simulated day of pickups, either from a
bundled dataset, from your own CSV files, or from a synthetic fleet.

Usage:
    python main.py                                  # Run with defaults
    python main.py --dataset banjul_20              # Run specific dataset
    python main.py --jobs j.csv --collectors c.csv  # Run your own data
    python main.py --synthetic 200 15 --seed 7      # Random fleet around Banjul
    python main.py --verbose                        # Debug logging

Exit Codes:
    0: Success
    1: Data loading error
    2: Simulation error
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

from mbalit_dispatch import config
from mbalit_dispatch.pricing import format_price
from mbalit_dispatch.simulation import SimCollector, SimJob, Simulation

logger = logging.getLogger("mbalit_dispatch.cli")

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")

# Available datasets
DATASETS: Dict[str, Dict[str, str]] = {
    "banjul_20": {
        "jobs": os.path.join(DATA_DIR, "banjul_jobs_20.csv"),
        "collectors": os.path.join(DATA_DIR, "banjul_collectors_8.csv"),
        "description": "20 jobs, 8 collectors around Banjul and Serrekunda",
    },
    "banjul_short_staffed": {
        "jobs": os.path.join(DATA_DIR, "banjul_jobs_20.csv"),
        "collectors": os.path.join(DATA_DIR, "banjul_collectors_3.csv"),
        "description": "Same 20 jobs, only 3 collectors (retries and cancellations)",
    },
}

# Rows of the result table: (label, result key)
RESULT_ROWS: List[Tuple[str, str]] = [
    ("Total Jobs", "total_jobs"),
    ("Completed", "jobs_completed"),
    ("Cancelled (no collector)", "jobs_cancelled"),
    ("Awaiting Payment", "jobs_awaiting_payment"),
    ("Unfinished", "jobs_unfinished"),
    ("Completion Rate", "completion_rate_pct"),
    ("Avg Wait to Assign", "avg_wait_to_assign_min"),
    ("Avg Pickup Distance", "avg_pickup_distance_km"),
    ("Avg ETA", "avg_eta_min"),
    ("Collectors Used", "collectors_used"),
    ("Collector Utilization", "collector_utilization_pct"),
    ("Total Credited", "total_credited"),
]


def print_header() -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print("  MBALIT - Waste Pickup Dispatch Simulation")
    print("  Nearest-Available Collector Matching")
    print("=" * 60 + "\n")


def format_value(key: str, value: Any) -> str:
    """Render one KPI for the table."""
    if key.endswith("_pct"):
        return f"{value:.1f}%"
    if key.endswith("_min"):
        return f"{value:.1f} min"
    if key.endswith("_km"):
        return f"{value:.2f} km"
    if key == "total_credited":
        return format_price(value)
    return str(value)


def print_results_table(results: Dict[str, Any]) -> None:
    """
    Print a formatted table of simulation results.

    Args:
        results: KPI dictionary returned by Simulation.run
    """
    print("\n" + "=" * 60)
    print("  RESULTS")
    print("=" * 60 + "\n")

    print(f"| {'Metric':<27} | {'Value':^24} |")
    print("|" + "-" * 29 + "|" + "-" * 26 + "|")
    for label, key in RESULT_ROWS:
        value = results.get(key)
        shown = "N/A" if value is None else format_value(key, value)
        print(f"| {label:<27} | {shown:^24} |")

    print("\n" + "=" * 60)
    print(f"  Simulated {results.get('simulated_minutes', 0)} minutes, "
          f"{results.get('collectors_used', 0)}/{results.get('total_collectors', 0)} collectors worked")
    print("=" * 60 + "\n")


def load_data_safe(
    jobs_file: Optional[str],
    collectors_file: Optional[str],
    dataset_name: Optional[str],
) -> Optional[Tuple[List[SimCollector], List[SimJob]]]:
    """
    Load data with graceful error handling.

    Explicit file paths win over a named dataset.

    Returns:
        Tuple of (collectors, jobs) or None if error
    """
    if jobs_file or collectors_file:
        if not (jobs_file and collectors_file):
            print("ERROR: --jobs and --collectors must be given together")
            return None
        source = f"{jobs_file} / {collectors_file}"
    else:
        if dataset_name not in DATASETS:
            print(f"ERROR: Unknown dataset '{dataset_name}'")
            print(f"Available datasets: {', '.join(DATASETS.keys())}")
            return None
        jobs_file = DATASETS[dataset_name]["jobs"]
        collectors_file = DATASETS[dataset_name]["collectors"]
        source = f"'{dataset_name}' dataset"

    try:
        collectors, jobs = Simulation.load_data(jobs_file, collectors_file)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        print("Please ensure the data/ directory contains the required CSV files.")
        return None
    except ValueError as e:
        print(f"ERROR: Failed to load data: {e}")
        return None

    print(f"Loaded {len(jobs)} jobs and {len(collectors)} collectors from {source}")
    return collectors, jobs


def run_simulation_safe(
    collectors: List[SimCollector],
    jobs: List[SimJob],
    max_attempts: int,
    retry_delay_minutes: int,
    verbose: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Run simulation with error handling.

    Returns:
        Results dictionary or None if error
    """
    try:
        sim = Simulation(
            collectors, jobs,
            max_attempts=max_attempts,
            retry_delay_minutes=retry_delay_minutes,
        )
        return sim.run(verbose=verbose)
    except Exception:
        logger.exception("Simulation failed")
        return None


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="Mbalit waste pickup dispatch simulation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                   # Default: banjul_20
  python main.py --dataset banjul_short_staffed    # Fleet too small, see retries
  python main.py --synthetic 300 20 --seed 42      # Random day around Banjul
  python main.py --list-datasets                   # Show available datasets
        """
    )

    parser.add_argument(
        "--dataset", "-d",
        type=str,
        default="banjul_20",
        help=f"Dataset to use (default: banjul_20). Options: {', '.join(DATASETS.keys())}"
    )
    parser.add_argument("--jobs", type=str, help="Path to a jobs CSV")
    parser.add_argument("--collectors", type=str, help="Path to a collectors CSV")
    parser.add_argument(
        "--synthetic",
        nargs=2, type=int, metavar=("JOBS", "COLLECTORS"),
        help="Generate a random scenario instead of loading CSV files"
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed for --synthetic")
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=config.DISPATCH_MAX_ATTEMPTS,
        help=f"Matching rounds before a job is cancelled (default: {config.DISPATCH_MAX_ATTEMPTS})"
    )
    parser.add_argument(
        "--retry-delay-minutes",
        type=int,
        default=1,
        help="Simulated minutes between matching rounds (default: 1)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show simulation progress and debug logging"
    )
    parser.add_argument(
        "--list-datasets",
        action="store_true",
        help="List available datasets and exit"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    if not args.verbose:
        # Per-job dispatch logs drown the table otherwise
        logging.getLogger("mbalit_dispatch").setLevel(logging.WARNING)

    # List datasets mode
    if args.list_datasets:
        print("\nAvailable Datasets:")
        print("-" * 50)
        for name, info in DATASETS.items():
            exists = "OK" if (os.path.exists(info["jobs"]) and os.path.exists(info["collectors"])) else "MISSING"
            print(f"  {name:22} [{exists}] - {info['description']}")
        return 0

    if args.max_attempts < 1 or args.retry_delay_minutes < 0:
        print("ERROR: --max-attempts must be >= 1 and --retry-delay-minutes >= 0")
        return 1

    print_header()

    if args.synthetic:
        n_jobs, n_collectors = args.synthetic
        if n_jobs < 0 or n_collectors < 0:
            print("ERROR: --synthetic counts must not be negative")
            return 1
        collectors, jobs = Simulation.generate_synthetic(n_jobs, n_collectors, seed=args.seed)
        print(f"Generated {len(jobs)} jobs and {len(collectors)} collectors (seed={args.seed})")
    else:
        data = load_data_safe(args.jobs, args.collectors, args.dataset)
        if data is None:
            return 1
        collectors, jobs = data

    print(f"\nRetry policy: {args.max_attempts} attempt(s), {args.retry_delay_minutes} min apart")
    print("-" * 40)

    results = run_simulation_safe(
        collectors, jobs,
        max_attempts=args.max_attempts,
        retry_delay_minutes=args.retry_delay_minutes,
        verbose=args.verbose,
    )
    if results is None:
        print("ERROR: Simulation did not complete")
        return 2

    print_results_table(results)
    return 0


if __name__ == "__main__":
    sys.exit(main())
