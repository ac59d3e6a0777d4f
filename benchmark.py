# mbalit-dispatch/benchmark.py
"""
Concurrency benchmark for the Mbalit dispatcher.

Fires `Dispatcher.dispatch` for every job of a scenario at once from a thread
pool and then checks the two at-most-one guarantees:
- no collector holds two jobs
- no job was assigned twice
Outputs a summary table and, with --output, CSV/JSON files for analysis.
"""

import argparse
import csv
import json
import logging
import os
import random
import sys
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List

from mbalit_dispatch import config
from mbalit_dispatch.config import DispatchConfig
from mbalit_dispatch.dispatch import Dispatcher
from mbalit_dispatch.errors import NoEligibleCollector
from mbalit_dispatch.jobs import InMemoryJobStore
from mbalit_dispatch.models import GeoLocation, JobStatus, PaymentStatus, WasteType
from mbalit_dispatch.presence import InMemoryPresenceStore, PresenceRegistry
from mbalit_dispatch.wallet import InMemoryWallet

# Define all test scenarios
SCENARIOS = [
    {"name": "Balanced_50x50", "jobs": 50, "collectors": 50, "spread_km": 3.0},
    {"name": "Contended_100x10", "jobs": 100, "collectors": 10, "spread_km": 3.0},
    {"name": "SingleCollector_40x1", "jobs": 40, "collectors": 1, "spread_km": 1.0},
    {"name": "Crowded_200x25", "jobs": 200, "collectors": 25, "spread_km": 0.5},
    {"name": "MixedWaste_150x30", "jobs": 150, "collectors": 30, "spread_km": 5.0, "mixed": True},
]

# KPIs written to the summary CSV
CSV_KPIS = [
    "jobs",
    "collectors",
    "workers",
    "assigned",
    "cancelled",
    "expected_assigned",
    "double_booked_collectors",
    "double_assigned_jobs",
    "orphaned_claims",
    "wall_time_ms",
    "dispatches_per_sec",
    "passed",
]


def _scatter(rng: random.Random, spread_km: float) -> GeoLocation:
    center_lat, center_lng = config.SIMULATION_CENTER
    spread = spread_km / 111.0
    return GeoLocation(
        center_lat + rng.uniform(-spread, spread),
        center_lng + rng.uniform(-spread, spread),
    )


def run_scenario(scenario: Dict[str, Any], workers: int, seed: int) -> Dict[str, Any]:
    """Dispatch every job of a scenario concurrently and audit the result."""
    rng = random.Random(seed)
    # No waiting between rounds: the benchmark measures contention, not patience
    dispatch_config = DispatchConfig(max_attempts=config.DISPATCH_MAX_ATTEMPTS, retry_delay_seconds=0)

    jobs = InMemoryJobStore()
    registry = PresenceRegistry(InMemoryPresenceStore(), dispatch_config)
    dispatcher = Dispatcher(jobs, registry, InMemoryWallet(), config=dispatch_config, sleep=lambda _: None)

    waste_types = list(WasteType) if scenario.get("mixed") else [WasteType.HOUSEHOLD]

    for i in range(scenario["collectors"]):
        registry.report_presence(
            f"C{i:04d}", online=True,
            location=_scatter(rng, scenario["spread_km"]),
            capabilities=set(rng.sample(waste_types, min(len(waste_types), 3))) | {waste_types[0]},
        )

    job_ids: List[str] = []
    for i in range(scenario["jobs"]):
        job_ids.append(jobs.create_job(
            customer_id=f"U{i:04d}",
            waste_type=rng.choice(waste_types),
            pickup=_scatter(rng, scenario["spread_km"]),
            amount=100.0,
            payment_status=PaymentStatus.PAID,
        ))

    def dispatch_one(job_id: str) -> str:
        try:
            return dispatcher.dispatch(job_id).status.value
        except NoEligibleCollector:
            return JobStatus.CANCELLED.value

    started = time.perf_counter()
    with ThreadPoolExecutor(max_workers=workers) as pool:
        statuses = list(pool.map(dispatch_one, job_ids))
    elapsed = time.perf_counter() - started

    # Audit
    final_jobs = {job_id: jobs.get_job(job_id) for job_id in job_ids}
    assigned_jobs = [j for j in final_jobs.values() if j.status is JobStatus.ASSIGNED]
    per_collector = Counter(j.assigned_collector_id for j in assigned_jobs)
    double_booked = sum(1 for count in per_collector.values() if count > 1)

    orphaned = 0
    double_assigned = 0
    for presence in registry.store.list_presences():
        if presence.current_job_id is None:
            continue
        job = final_jobs.get(presence.current_job_id)
        if job is None or job.status is not JobStatus.ASSIGNED or job.assigned_collector_id != presence.collector_id:
            orphaned += 1
    for job in assigned_jobs:
        holder = registry.get(job.assigned_collector_id)
        if holder is None or holder.current_job_id != job.job_id:
            double_assigned += 1

    # Every eligible collector ends up with a job unless jobs ran out first
    served = {j.assigned_collector_id for j in assigned_jobs}
    expected = len(assigned_jobs) if scenario.get("mixed") else min(scenario["jobs"], scenario["collectors"])

    counts = Counter(statuses)
    passed = (
        double_booked == 0 and double_assigned == 0 and orphaned == 0
        and len(assigned_jobs) == expected == len(served)
        and counts[JobStatus.ASSIGNED.value] + counts[JobStatus.CANCELLED.value] == scenario["jobs"]
    )

    return {
        "scenario": scenario["name"],
        "jobs": scenario["jobs"],
        "collectors": scenario["collectors"],
        "workers": workers,
        "assigned": len(assigned_jobs),
        "cancelled": counts[JobStatus.CANCELLED.value],
        "expected_assigned": expected,
        "double_booked_collectors": double_booked,
        "double_assigned_jobs": double_assigned,
        "orphaned_claims": orphaned,
        "wall_time_ms": round(elapsed * 1000, 2),
        "dispatches_per_sec": round(len(job_ids) / elapsed, 1) if elapsed > 0 else 0.0,
        "passed": passed,
    }


def save_summary_csv(all_results: List[Dict[str, Any]], output_dir: str, timestamp: str) -> str:
    """One row per scenario."""
    filename = f"{output_dir}/SUMMARY_{timestamp}.csv"
    with open(filename, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(["scenario"] + CSV_KPIS)
        for result in all_results:
            writer.writerow([result["scenario"]] + [result.get(kpi, "") for kpi in CSV_KPIS])
    print(f"✓ Saved summary: {filename}")
    return filename


def print_summary(all_results: List[Dict[str, Any]]) -> None:
    print(f"\n{'Scenario':<24} {'Assigned':>9} {'Cancelled':>10} {'ms':>9} {'Result':>8}")
    print("-" * 64)
    for r in all_results:
        verdict = "PASS" if r["passed"] else "FAIL"
        print(f"{r['scenario']:<24} {r['assigned']:>9} {r['cancelled']:>10} {r['wall_time_ms']:>9.1f} {verdict:>8}")


def main() -> int:
    """Run the full benchmark suite."""
    parser = argparse.ArgumentParser(description="Mbalit dispatcher concurrency benchmark")
    parser.add_argument("--workers", type=int, default=16, help="Concurrent dispatch threads (default: 16)")
    parser.add_argument("--seed", type=int, default=7, help="Random seed (default: 7)")
    parser.add_argument("--rounds", type=int, default=1, help="Repeat each scenario N times")
    parser.add_argument("--output", type=str, default=None, help="Directory for CSV/JSON results")
    args = parser.parse_args()

    logging.basicConfig(level=logging.ERROR)

    print("=" * 60)
    print("MBALIT DISPATCH CONCURRENCY BENCHMARK")
    print("=" * 60)

    all_results: List[Dict[str, Any]] = []
    for scenario in SCENARIOS:
        for round_no in range(args.rounds):
            result = run_scenario(scenario, args.workers, args.seed + round_no)
            all_results.append(result)
            mark = "✓" if result["passed"] else "✗"
            print(f"  {mark} {scenario['name']} (round {round_no + 1}): "
                  f"{result['assigned']} assigned, {result['cancelled']} cancelled")

    print_summary(all_results)

    if args.output:
        os.makedirs(args.output, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        save_summary_csv(all_results, args.output, timestamp)
        json_file = f"{args.output}/benchmark_{timestamp}.json"
        with open(json_file, 'w') as f:
            json.dump(all_results, f, indent=2, default=str)
        print(f"✓ Saved JSON: {json_file}")

    failed = [r["scenario"] for r in all_results if not r["passed"]]
    if failed:
        print(f"\nInvariant violations in: {', '.join(sorted(set(failed)))}")
        return 1
    print("\nAll invariants held.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
