"""
Data health checks on job billing records.

Flags jobs whose numbers cannot be trusted by the revenue views:
missing billing, billing that disagrees with the requirement prices,
requirements priced at $0, time estimates over the hour cap, and due dates
before start dates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List

import pandas as pd

from .analysis import pct, requirements_billing
from .etl import Job, safe_float


# =============================================================================
# CONFIG
# =============================================================================

DISCREPANCY_MIN_PCT = 5.0
DISCREPANCY_MIN_AMOUNT = 10.0

ISSUE_LABELS = {
    "missing_billing": "Missing billing",
    "discrepancy": "Billing discrepancy",
    "zero_pricing": "$0 pricing",
    "hours_exceeded": "Hours exceeded",
    "due_before_start": "Due before start",
}


# =============================================================================
# DETECTORS
# =============================================================================

def recorded_billing(job: Job) -> float:
    if safe_float(job.billing_rate) > 0:
        return safe_float(job.billing_rate)
    return safe_float(job.total_billing)


@dataclass
class Discrepancy:
    calculated: float
    recorded: float
    amount: float
    percent: float

    @property
    def flagged(self) -> bool:
        # nothing recorded is "missing billing", not a discrepancy
        if self.recorded <= 0:
            return False
        return self.percent > DISCREPANCY_MIN_PCT and self.amount > DISCREPANCY_MIN_AMOUNT

def billing_discrepancy(job: Job) -> Discrepancy:
    calculated = requirements_billing(job)
    recorded = recorded_billing(job)
    amount = abs(calculated - recorded)
    return Discrepancy(calculated, recorded, amount, pct(amount, max(calculated, recorded)))


def has_missing_billing(job: Job) -> bool:
    if recorded_billing(job) > 0:
        return False
    if job.requirements:
        return True
    return job.quantity > 0

def has_zero_pricing(job: Job) -> bool:
    return any(safe_float(r.price_per_m) == 0 for r in job.requirements)

def has_hours_exceeded(job: Job) -> bool:
    if job.max_hours is None or job.time_estimate is None:
        return False
    return job.time_estimate > job.max_hours

def has_due_before_start(job: Job) -> bool:
    if job.start_date is None or job.due_date is None:
        return False
    return job.due_date < job.start_date


DETECTORS: Dict[str, Callable[[Job], bool]] = {
    "missing_billing": has_missing_billing,
    "discrepancy": lambda job: billing_discrepancy(job).flagged,
    "zero_pricing": has_zero_pricing,
    "hours_exceeded": has_hours_exceeded,
    "due_before_start": has_due_before_start,
}


def jobs_with_issue(jobs: Iterable[Job], issue: str) -> List[Job]:
    """Jobs flagged by one detector; ``"all"`` returns every job."""
    jobs = list(jobs)
    if issue == "all":
        return jobs
    check = DETECTORS[issue]
    return [j for j in jobs if check(j)]


# =============================================================================
# REPORTS
# =============================================================================

def analyze_jobs(jobs: Iterable[Job]) -> pd.DataFrame:
    """One row per job with its issue list and the billing comparison."""
    rows = []
    for job in jobs:
        d = billing_discrepancy(job)
        rows.append({
            "Job_Id": job.id,
            "Job_Number": job.job_number,
            "Job_Name": job.job_name,
            "Client": job.client.name,
            "Issues": [name for name, check in DETECTORS.items() if check(job)],
            "Calculated_Billing": d.calculated,
            "Recorded_Billing": d.recorded,
            "Discrepancy_Amount": d.amount,
            "Discrepancy_Pct": d.percent,
            "Time_Estimate": job.time_estimate,
            "Max_Hours": job.max_hours,
        })
    cols = [
        "Job_Id", "Job_Number", "Job_Name", "Client", "Issues",
        "Calculated_Billing", "Recorded_Billing", "Discrepancy_Amount", "Discrepancy_Pct",
        "Time_Estimate", "Max_Hours",
    ]
    return pd.DataFrame.from_records(rows, columns=cols)


@dataclass
class HealthSummary:
    total_jobs: int
    missing_billing: int
    discrepancies: int
    zero_pricing: int
    hours_exceeded: int
    due_before_start: int
    healthy_jobs: int
    health_pct: float

def health_summary(jobs: Iterable[Job]) -> HealthSummary:
    jobs = list(jobs)
    counts = {name: 0 for name in DETECTORS}
    with_issues = set()
    for job in jobs:
        for name, check in DETECTORS.items():
            if check(job):
                counts[name] += 1
                with_issues.add(job.id)

    total = len(jobs)
    healthy = total - len(with_issues)
    return HealthSummary(
        total_jobs=total,
        missing_billing=counts["missing_billing"],
        discrepancies=counts["discrepancy"],
        zero_pricing=counts["zero_pricing"],
        hours_exceeded=counts["hours_exceeded"],
        due_before_start=counts["due_before_start"],
        healthy_jobs=healthy,
        health_pct=pct(healthy, total) if total else 100.0,
    )
