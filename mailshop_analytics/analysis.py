"""
Revenue & Risk Analytics — Billing vs Cost per Job
==================================================

This module powers the CFO dashboard.

Core business definitions (IMPORTANT)
------------------------------------
1) BILLING (revenue) = what the client is charged for the job.
   - Explicit billing_rate when recorded (> 0).
   - Else the recorded total_billing (> 0).
   - Else derived: Σ (quantity / 1000) × price_per_m over the job's requirements,
     plus add_on_charges.

2) COST = what the job costs us to produce.
   - Actual: (quantity / 1000) × actual_cost_per_m, when a cost entry exists.
   - Else the estimated_cost recorded on the job.
   - Else ext_price (base price before add-ons) as the legacy approximation.

3) PROFIT = Billing - Cost
   PROFIT % = Profit / Billing × 100, and 0 when billing is 0.

Grouping note
-------------
A job with several process types (insert + inkjet + fold) has its revenue,
profit and pieces split evenly across those types, so the process-type rollup
adds up to the same total as the client rollup.

Period note
-----------
Jobs run from start_date to due_date. Period rollups spread each job over the
periods it overlaps, in proportion to the overlap.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from .etl import Job, safe_float
from .tiers import job_process_types, process_type_label


# =============================================================================
# CONFIG
# =============================================================================

@dataclass(frozen=True)
class RiskThresholds:
    """
    Every threshold used by the detectors, alerts and colour bands.

    Percentages are on the 0-100 scale; ``cluster_share`` is a 0-1 fraction.
    """
    # Job margin
    at_risk_profit_pct: float = 20.0   # red band + jobs-at-risk detector
    healthy_profit_pct: float = 30.0   # green band starts here
    low_margin_pct: float = 10.0

    # Concentration (client or process type share of revenue)
    concentration_high_pct: float = 20.0
    concentration_moderate_pct: float = 10.0
    concentration_top_n: int = 3
    concentration_critical_pct: float = 30.0  # executive alert, top client

    # Delivery
    cluster_share: float = 0.3
    due_soon_days: int = 3
    at_risk_critical_count: int = 5

    # Revenue trend vs previous period
    revenue_decline_critical_pct: float = -15.0
    revenue_decline_warning_pct: float = -5.0
    revenue_growth_info_pct: float = 20.0

    # Capacity utilisation
    capacity_critical_pct: float = 95.0
    capacity_warning_pct: float = 85.0
    capacity_low_pct: float = 40.0


DEFAULT_THRESHOLDS = RiskThresholds()

SORT_COLUMNS = {"revenue": "Revenue", "volume": "Quantity", "profit": "Profit"}

GROUP_VALUE_COLS = ["Revenue", "Profit", "Quantity"]

JOB_FRAME_COLUMNS = [
    "Job_Id", "Job_Number", "Job_Name", "Client_Id", "Client",
    "Quantity", "Billing_Rate", "Cost", "Profit", "Profit_Pct", "Has_Actual_Cost",
    "Start_Date", "Due_Date", "Process_Types", "Facility_Id",
]

UNKNOWN_PROCESS = "Unknown"


# =============================================================================
# HELPERS
# =============================================================================

def safe_div(n, d):
    """Vector-safe divide. Supports scalars, numpy arrays, and pandas Series."""
    n_arr = np.asarray(n, dtype="float64")
    d_arr = np.asarray(d, dtype="float64")
    out = np.zeros_like(n_arr, dtype="float64")
    np.divide(n_arr, d_arr, out=out, where=d_arr != 0)
    # Preserve scalar return type when inputs are scalar
    return float(out) if out.shape == () else out

def pct(n, d):
    """Percent = (n/d)*100 with vector-safe divide."""
    return safe_div(n, d) * 100.0

def pct_change(current: float, previous: float) -> float:
    # 0 when there is nothing to compare against
    return pct(current - previous, previous) if previous > 0 else 0.0


# =============================================================================
# FORMATTING
# =============================================================================

def format_currency(value: float, compact: bool = False) -> str:
    value = safe_float(value)
    if compact and abs(value) >= 1000:
        if abs(value) >= 1_000_000:
            return f"${value / 1_000_000:.1f}M"
        return f"${value / 1000:.0f}K"
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.0f}"

def format_percentage(value: float, decimals: int = 1) -> str:
    return f"{safe_float(value):.{decimals}f}%"

def format_number(value: float) -> str:
    return f"{int(round(safe_float(value))):,}"

def trend_indicator(percent_change: float) -> str:
    if percent_change > 1:
        return "↑"
    if percent_change < -1:
        return "↓"
    return "→"

def change_color(percent_change: float, inverse: bool = False) -> str:
    if abs(percent_change) < 1:
        return "gray"
    positive = percent_change < 0 if inverse else percent_change > 0
    return "green" if positive else "red"

def profit_color(profit_pct: float, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> str:
    """Traffic-light band for a margin %: red / amber / green."""
    if profit_pct < thresholds.at_risk_profit_pct:
        return "red"
    if profit_pct < thresholds.healthy_profit_pct:
        return "amber"
    return "green"

def profit_status(profit_pct: float) -> str:
    if profit_pct < 0:
        return "loss"
    if profit_pct < 10:
        return "warning"
    if profit_pct < 25:
        return "good"
    return "excellent"

def margin_label(profit_pct: float) -> str:
    if profit_pct >= 25:
        return "Excellent"
    if profit_pct >= 15:
        return "Good"
    if profit_pct >= 10:
        return "Fair"
    if profit_pct >= 0:
        return "Low"
    return "Loss"


# =============================================================================
# PER-JOB METRICS
# =============================================================================

def requirements_billing(job: Job) -> float:
    """Σ (quantity/1000) × price_per_m over requirements, plus add-on charges."""
    per_m = sum(safe_float(r.price_per_m) for r in job.requirements)
    return (job.quantity / 1000.0) * per_m + safe_float(job.add_on_charges)

def job_billing_rate(job: Job) -> float:
    if safe_float(job.billing_rate) > 0:
        return safe_float(job.billing_rate)
    if safe_float(job.total_billing) > 0:
        return safe_float(job.total_billing)
    return requirements_billing(job)

def job_cost(job: Job) -> float:
    actual = safe_float(job.actual_cost_per_m)
    if actual > 0:
        return (job.quantity / 1000.0) * actual
    if safe_float(job.estimated_cost) > 0:
        return safe_float(job.estimated_cost)
    return safe_float(job.ext_price)

def job_profit_pct(job: Job) -> float:
    billing = job_billing_rate(job)
    return pct(billing - job_cost(job), billing)


def build_job_frame(jobs: Iterable[Job]) -> pd.DataFrame:
    """
    One row per job with the canonical billing / cost / profit fields.
    Rebuilt wholesale whenever the job set changes.
    """
    rows = []
    for job in jobs:
        rows.append({
            "Job_Id": job.id,
            "Job_Number": job.job_number,
            "Job_Name": job.job_name,
            "Client_Id": job.client.id,
            "Client": job.client.name,
            "Quantity": int(job.quantity),
            "Billing_Rate": job_billing_rate(job),
            "Cost": job_cost(job),
            "Has_Actual_Cost": safe_float(job.actual_cost_per_m) > 0,
            "Start_Date": job.start_date,
            "Due_Date": job.due_date,
            "Process_Types": job_process_types(job),
            "Facility_Id": job.facilities_id,
        })

    out = pd.DataFrame.from_records(rows, columns=[c for c in JOB_FRAME_COLUMNS if c not in {"Profit", "Profit_Pct"}])
    out["Billing_Rate"] = out["Billing_Rate"].astype(float)
    out["Cost"] = out["Cost"].astype(float)
    out["Profit"] = out["Billing_Rate"] - out["Cost"]
    out["Profit_Pct"] = np.where(out["Billing_Rate"] > 0, pct(out["Profit"], out["Billing_Rate"]), 0.0)
    out["Start_Date"] = pd.to_datetime(out["Start_Date"])
    out["Due_Date"] = pd.to_datetime(out["Due_Date"])
    return out[JOB_FRAME_COLUMNS]


def jobs_in_window(frame: pd.DataFrame, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    """Jobs whose [start, due] span touches [start, end). Undated jobs are dropped."""
    js = frame["Start_Date"].fillna(frame["Due_Date"])
    jd = frame["Due_Date"].fillna(frame["Start_Date"])
    mask = js.notna() & (js < end) & (jd >= start)
    return frame.loc[mask].copy()


# =============================================================================
# PERIODS
# =============================================================================

@dataclass(frozen=True)
class TimeRange:
    """Labelled half-open interval [start, end)."""
    label: str
    start: pd.Timestamp
    end: pd.Timestamp

    def contains(self, ts) -> bool:
        return ts is not None and not pd.isna(ts) and self.start <= ts < self.end


_PERIOD_FREQ = {"day": "D", "week": "W-SAT", "month": "M", "quarter": "Q"}

def _period_label(p: pd.Period, granularity: str) -> str:
    s = p.start_time
    if granularity in {"day", "week"}:
        return f"{s.month}/{s.day}"
    if granularity == "month":
        return s.strftime("%b %Y")
    return f"Q{p.quarter} {str(p.year)[-2:]}"

def build_time_ranges(start, end, granularity: str = "week") -> List[TimeRange]:
    """Consecutive periods covering [start, end]. Weeks start on Sunday."""
    if granularity not in _PERIOD_FREQ:
        raise ValueError(f"Unknown granularity: {granularity!r}")
    start = pd.Timestamp(start).normalize()
    end = pd.Timestamp(end)
    if end < start:
        return []
    periods = pd.period_range(start=start, end=end, freq=_PERIOD_FREQ[granularity])
    return [
        TimeRange(_period_label(p, granularity), p.start_time, (p + 1).start_time)
        for p in periods
    ]

def previous_window(start, end):
    """The window of equal length immediately before [start, end)."""
    start, end = pd.Timestamp(start), pd.Timestamp(end)
    return start - (end - start), start


# =============================================================================
# AGGREGATIONS (Job → Client / Process Type / Period)
# =============================================================================

def _finish_groups(agg: pd.DataFrame, sort_by: str) -> pd.DataFrame:
    if sort_by not in SORT_COLUMNS:
        raise ValueError(f"sort_by must be one of {sorted(SORT_COLUMNS)}")
    out = agg.copy()
    out["Pct_Of_Total"] = pct(out["Revenue"], out["Revenue"].sum()) if len(out) else 0.0
    # mergesort is stable: ties keep first-seen order
    out = out.sort_values(SORT_COLUMNS[sort_by], ascending=False, kind="mergesort")
    return out.reset_index(drop=True)

def revenue_by_client(frame: pd.DataFrame, sort_by: str = "revenue") -> pd.DataFrame:
    keys = ["Client_Id", "Client"]
    if frame.empty:
        return _finish_groups(pd.DataFrame(columns=keys + GROUP_VALUE_COLS + ["Job_Count"]), sort_by)

    base = frame.rename(columns={"Billing_Rate": "Revenue"})
    agg = base.groupby(keys, sort=False, dropna=False).agg(
        Revenue=("Revenue", "sum"),
        Profit=("Profit", "sum"),
        Quantity=("Quantity", "sum"),
        Job_Count=("Job_Id", "nunique"),
    ).reset_index()
    return _finish_groups(agg, sort_by)


def explode_process_types(frame: pd.DataFrame) -> pd.DataFrame:
    """One row per (job, process type) with revenue/profit/pieces/cost split evenly."""
    out = frame.copy()
    out["Process_Type"] = out["Process_Types"].map(lambda t: list(t) if len(t) else [UNKNOWN_PROCESS])
    out["_Share"] = 1.0 / out["Process_Type"].map(len)
    out = out.explode("Process_Type")
    out["Revenue"] = out["Billing_Rate"] * out["_Share"]
    out["Profit"] = out["Profit"] * out["_Share"]
    out["Cost"] = out["Cost"] * out["_Share"]
    out["Quantity"] = out["Quantity"] * out["_Share"]
    return out.drop(columns=["_Share"]).reset_index(drop=True)

def revenue_by_process_type(frame: pd.DataFrame, sort_by: str = "revenue") -> pd.DataFrame:
    cols = ["Process_Type", "Label"] + GROUP_VALUE_COLS + ["Job_Count"]
    if frame.empty:
        return _finish_groups(pd.DataFrame(columns=cols), sort_by)

    base = explode_process_types(frame)
    agg = base.groupby("Process_Type", sort=False).agg(
        Revenue=("Revenue", "sum"),
        Profit=("Profit", "sum"),
        Quantity=("Quantity", "sum"),
        Job_Count=("Job_Id", "nunique"),
    ).reset_index()
    agg["Label"] = agg["Process_Type"].map(process_type_label)
    return _finish_groups(agg[cols], sort_by)


def _overlap_weights(frame: pd.DataFrame, period: TimeRange) -> np.ndarray:
    """Share of each job's [start, due] span that falls inside ``period``."""
    start = frame["Start_Date"].fillna(frame["Due_Date"])
    end = frame["Due_Date"].fillna(frame["Start_Date"])
    duration = (end - start).dt.total_seconds().to_numpy(dtype="float64", na_value=np.nan)

    o_start = start.where(start > period.start, period.start)
    o_end = end.where(end < period.end, period.end)
    overlap = (o_end - o_start).dt.total_seconds().to_numpy(dtype="float64", na_value=np.nan)

    # Point-in-time (or inverted) jobs count fully in the period containing them
    point = (start >= period.start) & (start < period.end)
    w = np.where(
        duration > 0,
        np.clip(safe_div(np.nan_to_num(overlap), np.nan_to_num(duration)), 0.0, 1.0),
        point.to_numpy(dtype=bool).astype(float),
    )
    return np.nan_to_num(w)

def revenue_by_period(frame: pd.DataFrame, periods: List[TimeRange]) -> pd.DataFrame:
    cols = ["Period", "Start", "End"] + GROUP_VALUE_COLS + ["Job_Count"]
    rows = []
    for period in periods:
        if frame.empty:
            rows.append([period.label, period.start, period.end, 0.0, 0.0, 0, 0])
            continue
        w = _overlap_weights(frame, period)
        rows.append([
            period.label, period.start, period.end,
            float((frame["Billing_Rate"].to_numpy() * w).sum()),
            float((frame["Profit"].to_numpy() * w).sum()),
            int(round((frame["Quantity"].to_numpy() * w).sum())),
            int((w > 0).sum()),
        ])
    return pd.DataFrame(rows, columns=cols)


def top_clients(frame: pd.DataFrame, n: int = 10, sort_by: str = "revenue") -> pd.DataFrame:
    return revenue_by_client(frame, sort_by=sort_by).head(n)

def client_diversification_score(frame: pd.DataFrame) -> float:
    """
    0-100, higher is better. Herfindahl-Hirschman index of client revenue shares,
    rescaled so one client = 0 and a perfectly even spread = 100.
    """
    groups = revenue_by_client(frame)
    n = len(groups)
    if n <= 1 or groups["Revenue"].sum() <= 0:
        return 0.0
    hhi = float(((groups["Pct_Of_Total"] / 100.0) ** 2).sum())
    min_hhi = 1.0 / n
    return float(np.clip((1.0 - hhi) / (1.0 - min_hhi) * 100.0, 0.0, 100.0))


# =============================================================================
# RISK DETECTORS
# =============================================================================

@dataclass
class RiskResult:
    jobs: pd.DataFrame
    revenue: float

    @property
    def count(self) -> int:
        return len(self.jobs)

def _risk(frame: pd.DataFrame, mask) -> RiskResult:
    hits = frame.loc[mask].sort_values("Profit_Pct", kind="mergesort")
    return RiskResult(jobs=hits, revenue=float(hits["Billing_Rate"].sum()))

def jobs_at_risk(frame: pd.DataFrame, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> RiskResult:
    """Billed jobs whose margin sits below the at-risk line."""
    mask = (frame["Billing_Rate"] > 0) & (frame["Profit_Pct"] < thresholds.at_risk_profit_pct)
    return _risk(frame, mask)

def low_margin_jobs(frame: pd.DataFrame, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> RiskResult:
    mask = (frame["Billing_Rate"] > 0) & (frame["Profit_Pct"] < thresholds.low_margin_pct)
    return _risk(frame, mask)

def jobs_due_soon(
    frame: pd.DataFrame,
    now: Optional[pd.Timestamp] = None,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> RiskResult:
    """Schedule risk: due within ``due_soon_days`` or already in progress."""
    now = pd.Timestamp.now() if now is None else pd.Timestamp(now)
    horizon = now + pd.Timedelta(days=thresholds.due_soon_days)
    due, start = frame["Due_Date"], frame["Start_Date"]
    due_soon = due.notna() & (due >= now) & (due <= horizon)
    in_progress = start.notna() & due.notna() & (start < now) & (due > now)
    hits = frame.loc[due_soon | in_progress].sort_values("Due_Date", kind="mergesort")
    return RiskResult(jobs=hits, revenue=float(hits["Billing_Rate"].sum()))


@dataclass
class ConcentrationResult:
    high: pd.DataFrame
    moderate: pd.DataFrame
    top_n_pct: float
    top_name: str = "N/A"
    top_pct: float = 0.0

def concentration_risk(groups: pd.DataFrame, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> ConcentrationResult:
    """
    Flag client or process-type groups holding a large share of revenue.
    ``groups`` is the output of revenue_by_client / revenue_by_process_type.
    """
    if groups.empty:
        return ConcentrationResult(high=groups, moderate=groups, top_n_pct=0.0)

    ranked = groups.sort_values("Pct_Of_Total", ascending=False, kind="mergesort")
    share = ranked["Pct_Of_Total"]
    high = ranked.loc[share >= thresholds.concentration_high_pct]
    moderate = ranked.loc[(share >= thresholds.concentration_moderate_pct) & (share < thresholds.concentration_high_pct)]

    name_col = "Client" if "Client" in ranked.columns else "Label" if "Label" in ranked.columns else ranked.columns[0]
    top = ranked.iloc[0]
    return ConcentrationResult(
        high=high,
        moderate=moderate,
        top_n_pct=float(share.head(thresholds.concentration_top_n).sum()),
        top_name=str(top[name_col]),
        top_pct=float(top["Pct_Of_Total"]),
    )


@dataclass
class ClusterResult:
    periods: pd.DataFrame   # every period: Period, Job_Count, Share, Revenue, Is_Cluster
    clusters: pd.DataFrame  # rows of ``periods`` above the cluster share

def job_clustering(
    frame: pd.DataFrame,
    periods: List[TimeRange],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> ClusterResult:
    """Bucket jobs by due date; flag periods holding too many of the bucketed jobs."""
    rows = []
    for period in periods:
        due = frame["Due_Date"]
        mask = due.notna() & (due >= period.start) & (due < period.end)
        rows.append([period.label, int(mask.sum()), float(frame.loc[mask, "Billing_Rate"].sum())])

    out = pd.DataFrame(rows, columns=["Period", "Job_Count", "Revenue"])
    total = int(out["Job_Count"].sum()) if len(out) else 0
    out["Share"] = safe_div(out["Job_Count"], total) if total else 0.0
    out["Is_Cluster"] = out["Share"] > thresholds.cluster_share
    return ClusterResult(periods=out, clusters=out.loc[out["Is_Cluster"]].reset_index(drop=True))


# =============================================================================
# PERIOD COMPARISON
# =============================================================================

@dataclass
class RevenueTrend:
    current: float
    previous: float
    change: float
    percent_change: float

@dataclass
class PeriodComparison:
    metric: str
    current: float
    previous: float
    change: float
    percent_change: float
    is_positive: bool

def revenue_trend(current: pd.DataFrame, previous: pd.DataFrame) -> RevenueTrend:
    cur = float(current["Billing_Rate"].sum())
    prev = float(previous["Billing_Rate"].sum())
    return RevenueTrend(cur, prev, cur - prev, pct_change(cur, prev))

def _compare(metric: str, cur: float, prev: float) -> PeriodComparison:
    return PeriodComparison(metric, cur, prev, cur - prev, pct_change(cur, prev), cur >= prev)

def compare_periods(current: pd.DataFrame, previous: pd.DataFrame) -> List[PeriodComparison]:
    def totals(df):
        revenue = float(df["Billing_Rate"].sum())
        n = len(df)
        return revenue, n, float(df["Quantity"].sum()), safe_div(revenue, n), float(df["Profit"].sum())

    c, p = totals(current), totals(previous)
    names = ["Revenue", "Jobs", "Total Pieces", "Avg Job Value", "Profit"]
    return [_compare(name, c[i], p[i]) for i, name in enumerate(names)]

def compare_period_series(
    current: pd.DataFrame,
    current_periods: List[TimeRange],
    previous: pd.DataFrame,
    previous_periods: List[TimeRange],
    metric: str = "revenue",
) -> pd.DataFrame:
    """Period-by-period current vs previous for charting; periods are paired by position."""
    col = SORT_COLUMNS[metric]
    cur = revenue_by_period(current, current_periods)
    prev = revenue_by_period(previous, previous_periods)
    n = min(len(cur), len(prev))
    out = pd.DataFrame({
        "Period": cur["Period"].iloc[:n].to_numpy(),
        "Previous_Period": prev["Period"].iloc[:n].to_numpy(),
        "Current": cur[col].iloc[:n].astype(float).to_numpy(),
        "Previous": prev[col].iloc[:n].astype(float).to_numpy(),
    })
    out["Change"] = out["Current"] - out["Previous"]
    out["Pct_Change"] = np.where(out["Previous"] > 0, pct(out["Change"], out["Previous"]), 0.0)
    return out


# =============================================================================
# EXECUTIVE ALERTS
# =============================================================================

SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

@dataclass
class ExecutiveAlert:
    id: str
    severity: str  # critical | warning | info
    title: str
    description: str
    impact: Optional[str] = None
    action: Optional[str] = None
    value: Optional[float] = None
    # drill-down rows (jobs or groups) behind the alert
    details: Optional[pd.DataFrame] = None


def _concentration_alert(frame: pd.DataFrame, t: RiskThresholds) -> Optional[ExecutiveAlert]:
    clients = revenue_by_client(frame)
    if clients.empty:
        return None
    top = clients.iloc[0]
    share = float(top["Pct_Of_Total"])
    desc = f"{top['Client']} represents {share:.1f}% of revenue"
    if share > t.concentration_critical_pct:
        return ExecutiveAlert(
            "client-concentration-critical", "critical", "High Client Concentration Risk", desc,
            impact=f"{format_currency(top['Revenue'])} at risk if client is lost",
            action="Diversify client base and reduce dependency",
            value=share, details=clients.head(t.concentration_top_n),
        )
    if share > t.concentration_high_pct:
        return ExecutiveAlert(
            "client-concentration-warning", "warning", "Moderate Client Concentration", desc,
            impact="Consider diversification strategies",
            action="Monitor and plan for client diversification",
            value=share, details=clients.head(t.concentration_top_n),
        )
    return None

def _capacity_alert(capacity: float, t: RiskThresholds) -> Optional[ExecutiveAlert]:
    desc = f"Capacity utilization at {capacity:.1f}%"
    if capacity > t.capacity_critical_pct:
        return ExecutiveAlert("capacity-bottleneck", "critical", "Capacity Bottleneck", desc,
                              impact="May delay jobs and impact revenue",
                              action="Consider adding capacity or adjusting schedule", value=capacity)
    if capacity > t.capacity_warning_pct:
        return ExecutiveAlert("capacity-high", "warning", "High Capacity Utilization", desc,
                              impact="Limited flexibility for rush jobs",
                              action="Monitor closely and plan for peak periods", value=capacity)
    if capacity < t.capacity_low_pct:
        return ExecutiveAlert("capacity-low", "warning", "Low Capacity Utilization", desc,
                              impact="Underutilized resources",
                              action="Increase sales efforts or adjust capacity", value=capacity)
    return None

def _trend_alert(frame: pd.DataFrame, previous: pd.DataFrame, t: RiskThresholds) -> Optional[ExecutiveAlert]:
    trend = revenue_trend(frame, previous)
    change = trend.percent_change
    if change < t.revenue_decline_critical_pct:
        return ExecutiveAlert("revenue-decline", "critical", "Significant Revenue Decline",
                              f"Revenue down {abs(change):.1f}% vs previous period",
                              impact=f"{format_currency(abs(trend.change))} revenue decrease",
                              action="Investigate cause and implement recovery plan", value=change)
    if change < t.revenue_decline_warning_pct:
        return ExecutiveAlert("revenue-decline-warning", "warning", "Revenue Decline",
                              f"Revenue down {abs(change):.1f}% vs previous period",
                              impact="Trending downward",
                              action="Monitor and identify growth opportunities", value=change)
    if change > t.revenue_growth_info_pct:
        return ExecutiveAlert("revenue-growth", "info", "Strong Revenue Growth",
                              f"Revenue up {change:.1f}% vs previous period",
                              impact=f"{format_currency(trend.change)} revenue increase",
                              action="Ensure capacity can support growth", value=change)
    return None

def generate_executive_alerts(
    frame: pd.DataFrame,
    previous: Optional[pd.DataFrame] = None,
    capacity_utilization: Optional[float] = None,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    periods: Optional[List[TimeRange]] = None,
) -> List[ExecutiveAlert]:
    """All alerts for the current job set, critical first."""
    t = thresholds
    alerts: List[ExecutiveAlert] = []

    alert = _concentration_alert(frame, t)
    if alert:
        alerts.append(alert)

    at_risk = jobs_at_risk(frame, t)
    if at_risk.count > 0:
        alerts.append(ExecutiveAlert(
            "jobs-at-risk",
            "critical" if at_risk.count > t.at_risk_critical_count else "warning",
            f"{at_risk.count} Jobs At Risk",
            f"{at_risk.count} jobs are below {t.at_risk_profit_pct:.0f}% profit margin",
            impact=f"{format_currency(at_risk.revenue)} revenue at risk",
            action="Review pricing and production costs",
            value=at_risk.revenue, details=at_risk.jobs,
        ))

    losses = frame.loc[(frame["Billing_Rate"] > 0) & (frame["Profit"] < 0)]
    if len(losses):
        alerts.append(ExecutiveAlert(
            "loss-making-jobs", "warning", f"{len(losses)} Loss-Making Jobs",
            f"{len(losses)} jobs cost more to produce than they bill",
            impact=f"{format_currency(abs(losses['Profit'].sum()))} total loss",
            action="Re-quote repeat work and check cost entries",
            value=float(losses["Profit"].sum()), details=losses,
        ))

    if periods:
        clusters = job_clustering(frame, periods, t).clusters
        for _, row in clusters.iterrows():
            alerts.append(ExecutiveAlert(
                f"job-cluster-{row['Period']}", "warning", f"Due-Date Cluster: {row['Period']}",
                f"{row['Job_Count']} jobs ({row['Share'] * 100:.0f}% of scheduled work) are due in {row['Period']}",
                impact=f"{format_currency(row['Revenue'])} due in one period",
                action="Balance the schedule or add shifts for this period",
                value=float(row["Share"]),
            ))

    if capacity_utilization is not None:
        alert = _capacity_alert(capacity_utilization, t)
        if alert:
            alerts.append(alert)

    if previous is not None and len(previous) > 0:
        alert = _trend_alert(frame, previous, t)
        if alert:
            alerts.append(alert)

    # stable: detector order is kept within a severity
    return sorted(alerts, key=lambda a: SEVERITY_ORDER[a.severity])


# =============================================================================
# CFO SUMMARY (INSIGHTS)
# =============================================================================

@dataclass
class CFOSummaryMetrics:
    total_revenue: float = 0.0
    total_profit: float = 0.0
    profit_pct: float = 0.0
    total_jobs: int = 0
    total_quantity: int = 0
    average_job_value: float = 0.0
    average_job_profit: float = 0.0
    capacity_utilization: float = 0.0
    top_client_concentration: float = 0.0
    top_client_name: str = "N/A"
    jobs_at_risk: int = 0
    revenue_at_risk: float = 0.0
    diversification_score: float = 0.0
    top_profitable_jobs: pd.DataFrame = field(default_factory=pd.DataFrame)
    cost_per_piece_by_process: pd.DataFrame = field(default_factory=pd.DataFrame)


def cost_per_piece_by_process(frame: pd.DataFrame, n: Optional[int] = None) -> pd.DataFrame:
    cols = ["Process_Type", "Label", "Cost", "Quantity", "Cost_Per_Piece"]
    if frame.empty:
        return pd.DataFrame(columns=cols)
    base = explode_process_types(frame)
    agg = base.groupby("Process_Type", sort=False).agg(Cost=("Cost", "sum"), Quantity=("Quantity", "sum")).reset_index()
    agg = agg.loc[agg["Quantity"] > 0].copy()
    agg["Label"] = agg["Process_Type"].map(process_type_label)
    agg["Cost_Per_Piece"] = safe_div(agg["Cost"], agg["Quantity"])
    agg = agg.sort_values("Cost_Per_Piece", ascending=False, kind="mergesort")[cols].reset_index(drop=True)
    return agg.head(n) if n else agg

def cfo_summary(
    frame: pd.DataFrame,
    capacity_utilization: Optional[float] = None,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    top_n: int = 5,
) -> CFOSummaryMetrics:
    revenue = float(frame["Billing_Rate"].sum())
    profit = float(frame["Profit"].sum())
    n = len(frame)

    clients = revenue_by_client(frame)
    top = clients.iloc[0] if len(clients) else None
    at_risk = jobs_at_risk(frame, thresholds)

    return CFOSummaryMetrics(
        total_revenue=revenue,
        total_profit=profit,
        profit_pct=pct(profit, revenue),
        total_jobs=n,
        total_quantity=int(frame["Quantity"].sum()),
        average_job_value=safe_div(revenue, n),
        average_job_profit=safe_div(profit, n),
        capacity_utilization=float(capacity_utilization or 0.0),
        top_client_concentration=float(top["Pct_Of_Total"]) if top is not None else 0.0,
        top_client_name=str(top["Client"]) if top is not None else "N/A",
        jobs_at_risk=at_risk.count,
        revenue_at_risk=at_risk.revenue,
        diversification_score=client_diversification_score(frame),
        top_profitable_jobs=frame.nlargest(top_n, "Profit")[
            ["Job_Number", "Job_Name", "Client", "Billing_Rate", "Cost", "Profit", "Profit_Pct"]
        ],
        cost_per_piece_by_process=cost_per_piece_by_process(frame, top_n),
    )


def generate_headlines(
    summary: CFOSummaryMetrics,
    trend: Optional[RevenueTrend] = None,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> List[str]:
    """
    Simple narrative bullets.
    """
    headlines: List[str] = []

    # Core
    headlines.append(
        f"Portfolio: {summary.total_jobs:,} jobs | "
        f"{summary.total_quantity:,} pieces | "
        f"Revenue {format_currency(summary.total_revenue)} "
        f"(avg {format_currency(summary.average_job_value)} per job)."
    )
    headlines.append(
        f"Profit: {format_currency(summary.total_profit)} | "
        f"Margin: {summary.profit_pct:.1f}% ({margin_label(summary.profit_pct)})."
    )

    if trend is not None and trend.previous > 0:
        direction = "up" if trend.change >= 0 else "down"
        headlines.append(
            f"Revenue is {direction} {abs(trend.percent_change):.1f}% vs the previous period "
            f"({format_currency(trend.change)})."
        )

    # Concentration
    tc = summary.top_client_concentration
    if tc > thresholds.concentration_critical_pct:
        headlines.append(
            f"Client concentration is high: {summary.top_client_name} alone is {tc:.1f}% of revenue."
        )
    elif tc > thresholds.concentration_high_pct:
        headlines.append(
            f"Client concentration is elevated: {summary.top_client_name} is {tc:.1f}% of revenue."
        )

    # Risk
    if summary.jobs_at_risk > 0:
        headlines.append(
            f"{summary.jobs_at_risk:,} jobs are below {thresholds.at_risk_profit_pct:.0f}% margin "
            f"({format_currency(summary.revenue_at_risk)} of revenue)."
        )

    if summary.capacity_utilization > 0:
        headlines.append(f"Capacity utilisation is {summary.capacity_utilization:.1f}%.")

    return headlines


METRIC_DEFINITIONS = {
    "Billing_Rate": {"name": "Revenue (Billing)", "formula": "billing_rate, else total_billing, else Σ (Quantity/1000 × price_per_m) + add-ons", "description": "What the client is charged for the job."},
    "Cost": {"name": "Cost", "formula": "Quantity/1000 × actual_cost_per_m, else estimated_cost, else ext_price", "description": "Production cost; actual when a cost entry exists."},
    "Profit": {"name": "Profit ($)", "formula": "Revenue - Cost", "description": "Job contribution."},
    "Profit_Pct": {"name": "Profit (%)", "formula": "(Profit / Revenue) × 100", "description": "Job margin; 0 when the job has no billing."},
    "Pct_Of_Total": {"name": "Share of Revenue (%)", "formula": "(Group Revenue / Total Revenue) × 100", "description": "Concentration of revenue in one client or process type."},
    "Top_N_Concentration": {"name": "Top-N Concentration (%)", "formula": "Σ share of the N largest groups", "description": "Dependency on a handful of clients or services."},
    "Diversification": {"name": "Client Diversification (0-100)", "formula": "(1 - HHI) / (1 - 1/n) × 100", "description": "100 = revenue spread evenly over clients; 0 = one client."},
    "Cost_Per_Piece": {"name": "Cost per Piece", "formula": "Cost / Quantity (split across a job's process types)", "description": "Unit production cost by process type."},
}
