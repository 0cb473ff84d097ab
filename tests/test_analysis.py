import math

import pandas as pd
import pytest

from conftest import make_job
from mailshop_analytics.analysis import (
    DEFAULT_THRESHOLDS, RiskThresholds, TimeRange, build_job_frame, build_time_ranges, cfo_summary,
    client_diversification_score, compare_period_series, compare_periods, concentration_risk,
    format_currency, format_percentage, generate_executive_alerts, generate_headlines, job_billing_rate,
    job_clustering, job_cost, jobs_at_risk, jobs_due_soon, jobs_in_window, low_margin_jobs, margin_label,
    profit_color, profit_status, revenue_by_client, revenue_by_period, revenue_by_process_type,
    revenue_trend, top_clients, trend_indicator,
)


# --- per-job metrics ---------------------------------------------------------

def test_billing_prefers_explicit_rate_then_recorded_then_requirements():
    reqs = [{"process_type": "insert", "price_per_m": "50"}, {"process_type": "fold", "price_per_m": "40"}]
    derived = make_job(1, quantity=2000, requirements=reqs, add_on_charges="20")
    assert job_billing_rate(derived) == pytest.approx(200.0)

    recorded = make_job(2, quantity=2000, billing=300, requirements=reqs)
    assert job_billing_rate(recorded) == 300.0

    explicit = make_job(3, quantity=2000, billing=300, billing_rate="450", requirements=reqs)
    assert job_billing_rate(explicit) == 450.0


def test_cost_prefers_actual_then_estimated_then_ext_price():
    assert job_cost(make_job(1, quantity=2000, cost=90, actual_cost_per_m=30)) == pytest.approx(60.0)
    assert job_cost(make_job(2, quantity=2000, cost=90)) == 90.0
    assert job_cost(make_job(3, quantity=2000, ext_price="$1,250")) == 1250.0


def test_profit_pct_is_zero_when_billing_is_zero():
    frame = build_job_frame([make_job(1, billing=0, cost=50)])
    value = frame.loc[0, "Profit_Pct"]
    assert value == 0.0
    assert not math.isnan(value)


def test_malformed_numbers_degrade_to_zero():
    job = make_job(1, billing="undefined", cost="null", quantity="abc")
    frame = build_job_frame([job])
    assert frame.loc[0, "Billing_Rate"] == 0.0
    assert frame.loc[0, "Quantity"] == 0


def test_status_bands():
    assert [profit_status(p) for p in (-1, 5, 20, 25)] == ["loss", "warning", "good", "excellent"]
    assert [margin_label(p) for p in (-1, 5, 12, 20, 30)] == ["Loss", "Low", "Fair", "Good", "Excellent"]
    assert [profit_color(p) for p in (10, 25, 35)] == ["red", "amber", "green"]


# --- grouping ----------------------------------------------------------------

def test_revenue_by_client_conserves_revenue(frame):
    groups = revenue_by_client(frame)
    assert groups["Revenue"].sum() == pytest.approx(frame["Billing_Rate"].sum())
    assert groups["Pct_Of_Total"].sum() == pytest.approx(100.0)
    assert groups["Client"].tolist() == ["Acme", "Beta Mail", "Gamma"]
    assert groups.loc[0, "Job_Count"] == 2


def test_revenue_by_client_sort_by_volume_and_profit(frame):
    by_volume = revenue_by_client(frame, sort_by="volume")
    assert by_volume["Client"].tolist() == ["Acme", "Beta Mail", "Gamma"]
    by_profit = revenue_by_client(frame, sort_by="profit")
    assert by_profit["Client"].tolist() == ["Acme", "Beta Mail", "Gamma"]
    assert by_profit["Profit"].tolist() == pytest.approx([450.0, 300.0, -20.0])


def test_top_clients_limits_sorted_groups(frame):
    top = top_clients(frame, n=2)
    assert top["Client"].tolist() == ["Acme", "Beta Mail"]
    assert top_clients(frame, n=1, sort_by="profit")["Profit"].tolist() == pytest.approx([450.0])


def test_ties_keep_input_order():
    frame = build_job_frame([
        make_job(1, client="Zeta", client_id=9, billing=100),
        make_job(2, client="Alpha", client_id=8, billing=100),
    ])
    assert revenue_by_client(frame)["Client"].tolist() == ["Zeta", "Alpha"]


def test_unknown_sort_key_is_rejected(frame):
    with pytest.raises(ValueError):
        revenue_by_client(frame, sort_by="margin")


def test_empty_input_gives_empty_groups():
    frame = build_job_frame([])
    assert revenue_by_client(frame).empty
    assert revenue_by_process_type(frame).empty
    assert "Pct_Of_Total" in revenue_by_client(frame).columns


def test_process_type_rollup_splits_multi_process_jobs(frame):
    groups = revenue_by_process_type(frame).set_index("Process_Type")
    assert groups.loc["insert", "Revenue"] == pytest.approx(1000.0)  # 500 (split) + 500
    assert groups.loc["inkjet", "Revenue"] == pytest.approx(500.0)
    assert groups.loc["fold", "Revenue"] == pytest.approx(400.0)
    assert groups.loc["Unknown", "Revenue"] == pytest.approx(100.0)
    assert groups.loc["insert", "Job_Count"] == 2
    assert groups.loc["insert", "Label"] == "Insert"
    assert groups["Revenue"].sum() == pytest.approx(frame["Billing_Rate"].sum())
    assert groups["Pct_Of_Total"].sum() == pytest.approx(100.0)


def test_revenue_by_period_spreads_by_overlap():
    job = make_job(1, billing=590, start="2025-01-01", due="2025-03-01")
    frame = build_job_frame([job])
    periods = build_time_ranges("2025-01-01", "2025-02-28", "month")
    out = revenue_by_period(frame, periods)
    assert out["Period"].tolist() == ["Jan 2025", "Feb 2025"]
    assert out["Revenue"].tolist() == pytest.approx([310.0, 280.0])
    assert out["Job_Count"].tolist() == [1, 1]


def test_revenue_by_period_counts_point_jobs_in_one_period():
    job = make_job(1, billing=100, start="2025-02-10", due="2025-02-10")
    frame = build_job_frame([job])
    periods = build_time_ranges("2025-01-01", "2025-02-28", "month")
    out = revenue_by_period(frame, periods)
    assert out["Revenue"].tolist() == [0.0, 100.0]


def test_build_time_ranges():
    weeks = build_time_ranges("2025-01-08", "2025-01-20", "week")
    assert [w.label for w in weeks] == ["1/5", "1/12", "1/19"]
    assert weeks[0].start == pd.Timestamp("2025-01-05")
    assert weeks[0].end == weeks[1].start

    quarters = build_time_ranges("2025-01-15", "2025-06-01", "quarter")
    assert [q.label for q in quarters] == ["Q1 25", "Q2 25"]

    with pytest.raises(ValueError):
        build_time_ranges("2025-01-01", "2025-02-01", "fortnight")


def test_jobs_in_window(frame):
    out = jobs_in_window(frame, pd.Timestamp("2025-01-13"), pd.Timestamp("2025-01-20"))
    assert out["Job_Id"].tolist() == [2]


def test_client_diversification_score():
    one = build_job_frame([make_job(1, billing=100)])
    assert client_diversification_score(one) == 0.0
    even = build_job_frame([
        make_job(1, client="A", client_id=1, billing=100),
        make_job(2, client="B", client_id=2, billing=100),
    ])
    assert client_diversification_score(even) == pytest.approx(100.0)


# --- risk --------------------------------------------------------------------

def test_concentration_flags_high_clients_and_top_three_share():
    frame = build_job_frame([
        make_job(1, client="A", client_id=1, billing=400),
        make_job(2, client="B", client_id=2, billing=350),
        make_job(3, client="C", client_id=3, billing=250),
    ])
    result = concentration_risk(revenue_by_client(frame))
    assert result.top_name == "A"
    assert result.top_pct == pytest.approx(40.0)
    assert "A" in result.high["Client"].tolist()
    assert result.top_n_pct == pytest.approx(100.0)
    assert result.moderate.empty


def test_concentration_moderate_band(frame):
    result = concentration_risk(revenue_by_client(frame))
    assert result.high["Client"].tolist() == ["Acme", "Beta Mail"]
    assert result.moderate.empty
    custom = concentration_risk(revenue_by_client(frame), RiskThresholds(concentration_high_pct=50))
    assert custom.moderate["Client"].tolist() == ["Beta Mail"]


def test_jobs_at_risk_and_low_margin(frame):
    at_risk = jobs_at_risk(frame)
    assert sorted(at_risk.jobs["Job_Id"]) == [2, 4]
    assert at_risk.revenue == pytest.approx(600.0)

    low = low_margin_jobs(frame)
    assert low.jobs["Job_Id"].tolist() == [4]


def test_jobs_due_soon(frame):
    now = pd.Timestamp("2025-01-15")
    result = jobs_due_soon(frame, now)
    assert result.jobs["Job_Id"].tolist() == [2]


def test_job_clustering_flags_crowded_period():
    jobs = [make_job(i, billing=100, start="2025-01-01", due="2025-01-07") for i in range(1, 5)]
    jobs.append(make_job(5, billing=100, start="2025-01-01", due="2025-01-14"))
    frame = build_job_frame(jobs)
    periods = [
        TimeRange("wk1", pd.Timestamp("2025-01-05"), pd.Timestamp("2025-01-12")),
        TimeRange("wk2", pd.Timestamp("2025-01-12"), pd.Timestamp("2025-01-19")),
    ]
    result = job_clustering(frame, periods)
    assert result.periods["Share"].tolist() == pytest.approx([0.8, 0.2])
    assert result.clusters["Period"].tolist() == ["wk1"]


# --- comparison ---------------------------------------------------------------

def test_compare_with_empty_previous_has_zero_change(frame):
    empty = build_job_frame([])
    comps = compare_periods(frame, empty)
    assert [c.metric for c in comps] == ["Revenue", "Jobs", "Total Pieces", "Avg Job Value", "Profit"]
    assert all(c.percent_change == 0 for c in comps)
    assert revenue_trend(frame, empty).percent_change == 0


def test_revenue_trend(frame):
    previous = build_job_frame([make_job(9, billing=1000)])
    trend = revenue_trend(frame, previous)
    assert trend.change == pytest.approx(1000.0)
    assert trend.percent_change == pytest.approx(100.0)


def test_compare_period_series_pairs_by_position():
    current = build_job_frame([make_job(1, billing=200, start="2025-02-03", due="2025-02-03")])
    previous = build_job_frame([make_job(2, billing=100, start="2025-01-06", due="2025-01-06")])
    out = compare_period_series(
        current, build_time_ranges("2025-02-02", "2025-02-08", "week"),
        previous, build_time_ranges("2025-01-05", "2025-01-11", "week"),
    )
    assert out.loc[0, "Current"] == 200.0
    assert out.loc[0, "Previous"] == 100.0
    assert out.loc[0, "Pct_Change"] == pytest.approx(100.0)


# --- alerts / summary -----------------------------------------------------------

def test_alerts_sorted_by_severity(frame):
    previous = build_job_frame([make_job(9, billing=1000)])
    alerts = generate_executive_alerts(frame, previous, capacity_utilization=30)
    severities = [a.severity for a in alerts]
    assert severities == sorted(severities, key=["critical", "warning", "info"].index)
    ids = {a.id for a in alerts}
    assert "client-concentration-critical" in ids  # Acme is 75%
    assert "capacity-low" in ids
    assert "revenue-growth" in ids
    assert "jobs-at-risk" in ids


def test_at_risk_alert_turns_critical_above_count():
    jobs = [make_job(i, client=f"C{i}", client_id=i, billing=100, cost=95) for i in range(1, 8)]
    alerts = generate_executive_alerts(build_job_frame(jobs))
    at_risk = next(a for a in alerts if a.id == "jobs-at-risk")
    assert at_risk.severity == "critical"
    assert len(at_risk.details) == 7


def test_cfo_summary(frame):
    summary = cfo_summary(frame, capacity_utilization=72.5, top_n=2)
    assert summary.total_revenue == pytest.approx(2000.0)
    assert summary.total_jobs == 4
    assert summary.total_quantity == 18000
    assert summary.average_job_value == pytest.approx(500.0)
    assert summary.top_client_name == "Acme"
    assert summary.top_client_concentration == pytest.approx(75.0)
    assert summary.jobs_at_risk == 2
    assert summary.top_profitable_jobs["Job_Number"].tolist() == [1001, 1003]
    assert len(summary.cost_per_piece_by_process) == 2

    headlines = generate_headlines(summary, thresholds=DEFAULT_THRESHOLDS)
    assert headlines[0].startswith("Portfolio: 4 jobs")
    assert any("Acme" in h for h in headlines)


def test_formatting():
    assert format_currency(1500) == "$1,500"
    assert format_currency(-1500) == "-$1,500"
    assert format_currency(1_234_567, compact=True) == "$1.2M"
    assert format_currency(45_000, compact=True) == "$45K"
    assert format_percentage(12.345) == "12.3%"
    assert [trend_indicator(x) for x in (5, -5, 0.5)] == ["↑", "↓", "→"]
