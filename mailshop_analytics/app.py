"""
Mailshop CFO Dashboard
======================
Streamlit app for revenue, margin and risk across print/mail production jobs.

Structure:
1. Summary cards + headlines
2. Revenue by period
3. Client analysis (concentration)
4. Service mix (process types)
5. Period comparison
6. Executive alerts (with drill-down)
7. Data health
8. Production import (Excel / CSV)

Run with: streamlit run mailshop_analytics/app.py
"""

import io
import json
import logging
from datetime import date, timedelta

import altair as alt
import pandas as pd
import streamlit as st

from mailshop_analytics.analysis import (
    RiskThresholds, build_job_frame, build_time_ranges, cfo_summary, compare_period_series,
    compare_periods, concentration_risk, format_currency, format_number, generate_executive_alerts,
    generate_headlines, jobs_in_window, previous_window, profit_color, revenue_by_client,
    revenue_by_period, revenue_by_process_type, revenue_trend, top_clients, trend_indicator,
)
from mailshop_analytics.backend import BackendClient, BackendError, upload_in_chunks
from mailshop_analytics.etl import (
    ValidationOptions, duplicate_check_window, entries_to_upload, parse_jobs, parse_production_file, preview_frame,
    validate_production_rows, validate_upload, validation_summary, write_import_template,
)
from mailshop_analytics.health import ISSUE_LABELS, analyze_jobs, health_summary
from mailshop_analytics.settings import get_settings
from mailshop_analytics.tiers import (
    TieredFilter, apply_tiered_filter, build_tiered_index, describe_filter, sub_category_fields,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# =============================================================================
# PAGE CONFIGURATION
# =============================================================================

st.set_page_config(
    page_title="Mailshop CFO Dashboard",
    page_icon="📊",
    layout="wide",
    initial_sidebar_state="expanded"
)

BAND_COLORS = {"red": "#e53935", "amber": "#fb8c00", "green": "#43a047"}
SEVERITY_ICONS = {"critical": "🚨", "warning": "⚠️", "info": "ℹ️"}

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def fmt_currency(val):
    if pd.isna(val):
        return "$0"
    return format_currency(val, compact=True)

def fmt_pct(val):
    if pd.isna(val):
        return "N/A"
    return f"{val:.1f}%"

def fmt_delta(pct_change):
    return f"{trend_indicator(pct_change)} {pct_change:+.1f}%"

MONEY_FORMAT = {
    "Revenue": "${:,.0f}", "Profit": "${:,.0f}", "Cost": "${:,.0f}", "Billing_Rate": "${:,.0f}",
    "Quantity": "{:,.0f}", "Pct_Of_Total": "{:.1f}%", "Profit_Pct": "{:.1f}%",
}

def show_table(df: pd.DataFrame, height=None):
    fmt = {k: v for k, v in MONEY_FORMAT.items() if k in df.columns}
    st.dataframe(df.style.format(fmt), use_container_width=True, height=height)


# =============================================================================
# DATA LOADING (CACHED)
# =============================================================================

@st.cache_data(ttl=300)
def load_jobs_from_backend(facilities_id):
    with BackendClient(settings) as client:
        return client.fetch_jobs(facilities_id)

@st.cache_data
def load_jobs_from_export(raw: bytes):
    data = json.loads(raw)
    records = data.get("jobs", []) if isinstance(data, dict) else data
    return parse_jobs(records)

@st.cache_data
def job_frame(jobs):
    return build_job_frame(jobs)

@st.cache_data
def tiered_index(jobs):
    return build_tiered_index(jobs)

@st.cache_data(ttl=60)
def load_existing_entries(start, end, facilities_id):
    with BackendClient(settings) as client:
        return client.fetch_production_entries(start, end, facilities_id)

@st.cache_data
def import_template_bytes():
    buf = io.BytesIO()
    write_import_template(buf)
    return buf.getvalue()


# =============================================================================
# SIDEBAR
# =============================================================================

def sidebar_jobs():
    st.sidebar.header("📁 Data Source")
    source = st.sidebar.radio("Load jobs from", ["Backend", "JSON export"], horizontal=True)

    if source == "Backend":
        if not settings.backend_enabled:
            st.warning("⚠️ Set MAILSHOP_API_BASE_URL and MAILSHOP_API_TOKEN, or upload a JSON export")
            st.stop()
        try:
            with st.spinner("Loading jobs..."):
                jobs = load_jobs_from_backend(settings.default_facility_id)
        except BackendError as e:
            logger.error("Job fetch failed: %s", e)
            st.error(f"Error: {e}")
            st.stop()
    else:
        uploaded = st.sidebar.file_uploader("Upload jobs JSON", type=["json"])
        if not uploaded:
            st.info("Upload a JSON export of jobs to begin.")
            st.stop()
        try:
            jobs = load_jobs_from_export(uploaded.getvalue())
        except (ValueError, AttributeError) as e:
            st.error(f"Error: could not read export ({e})")
            st.stop()

    st.sidebar.success(f"✅ {len(jobs):,} jobs loaded")
    return jobs


def sidebar_tier_filter(jobs) -> TieredFilter:
    st.sidebar.header("🎛️ Filters")
    index = tiered_index(jobs)
    flt = TieredFilter()

    ptypes = {t.value: f"{t.label} ({t.count})" for t in index.process_types}
    choice = st.sidebar.selectbox("Process Type", [""] + list(ptypes), format_func=lambda v: ptypes.get(v, "All"))
    if not choice:
        return flt
    flt.process_type = choice

    cats = {c.value: f"{c.label} ({c.count})" for c in index.primary_categories.get(choice, [])}
    if cats:
        cat = st.sidebar.selectbox("Primary Category", [""] + list(cats), format_func=lambda v: cats.get(v, "All"))
        if cat:
            flt.primary_category = cat
            subs = index.sub_categories.get((choice, cat), {})
            for f in sub_category_fields(choice):
                items = subs.get(f.name)
                if items:
                    picked = st.sidebar.multiselect(f.label, [i.value for i in items])
                    if picked:
                        flt.sub_categories[f.name] = picked
    return flt


def sidebar_thresholds() -> RiskThresholds:
    with st.sidebar.expander("Risk thresholds", expanded=False):
        at_risk = st.slider("At-risk margin below %", 5, 50, 20)
        healthy = st.slider("Healthy margin from %", at_risk, 80, max(30, at_risk))
        low = st.slider("Low margin below %", 0, at_risk, min(10, at_risk))
        cluster = st.slider("Due-date cluster share", 0.1, 1.0, 0.3, 0.05)
    return RiskThresholds(
        at_risk_profit_pct=at_risk, healthy_profit_pct=healthy, low_margin_pct=low, cluster_share=cluster,
    )


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    # -------------------------------------------------------------------------
    # HEADER
    # -------------------------------------------------------------------------
    st.title("📊 Mailshop CFO Dashboard")
    st.markdown("*Revenue, margin and risk across production jobs*")

    jobs = sidebar_jobs()
    flt = sidebar_tier_filter(jobs)

    today = date.today()
    picked = st.sidebar.date_input("Date range", (today - timedelta(days=90), today))
    if len(picked) != 2:
        st.info("Pick an end date.")
        st.stop()
    start, end = picked
    granularity = st.sidebar.selectbox("Granularity", ["week", "month", "quarter"], index=1)
    capacity = st.sidebar.number_input("Capacity utilisation %", 0.0, 150.0, 0.0, 1.0)
    thresholds = sidebar_thresholds()

    filtered_jobs = apply_tiered_filter(jobs, flt)
    if flt.process_type:
        st.caption(f"Filter: {describe_filter(flt)}")

    frame_all = job_frame(filtered_jobs)
    win_start = pd.Timestamp(start)
    win_end = pd.Timestamp(end) + pd.Timedelta(days=1)
    frame = jobs_in_window(frame_all, win_start, win_end)
    prev_start, prev_end = previous_window(win_start, win_end)
    previous = jobs_in_window(frame_all, prev_start, prev_end)

    if len(frame) == 0:
        st.warning("No jobs in the selected period.")
        st.stop()

    periods = build_time_ranges(win_start, win_end - pd.Timedelta(days=1), granularity)
    prev_periods = build_time_ranges(prev_start, prev_end - pd.Timedelta(days=1), granularity)
    capacity_value = capacity if capacity > 0 else None

    summary = cfo_summary(frame, capacity_value, thresholds)
    trend = revenue_trend(frame, previous)

    # =========================================================================
    # SECTION 1: SUMMARY
    # =========================================================================
    st.subheader("📈 Summary")
    c1, c2, c3, c4, c5 = st.columns(5)
    c1.metric("Revenue", fmt_currency(summary.total_revenue), delta=fmt_delta(trend.percent_change))
    c2.metric("Jobs", format_number(summary.total_jobs))
    c3.metric("Pieces", format_number(summary.total_quantity))
    c4.metric("Avg Job Value", fmt_currency(summary.average_job_value))
    c5.metric("Avg Job Profit", fmt_currency(summary.average_job_profit))

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Margin", fmt_pct(summary.profit_pct))
    c2.metric("Top Client", summary.top_client_name[:24], delta=fmt_pct(summary.top_client_concentration),
              delta_color="off")
    c3.metric("Jobs At Risk", f"{summary.jobs_at_risk} / {summary.total_jobs}",
              delta=fmt_currency(summary.revenue_at_risk), delta_color="inverse")
    c4.metric("Client Diversification", f"{summary.diversification_score:.0f} / 100")

    for line in generate_headlines(summary, trend, thresholds):
        st.markdown(f"- {line}")

    with st.expander("🏆 Most Profitable Jobs", expanded=False):
        show_table(summary.top_profitable_jobs)

    st.markdown("---")

    # =========================================================================
    # SECTION 2: REVENUE BY PERIOD
    # =========================================================================
    st.header("💵 Revenue by Period")
    by_period = revenue_by_period(frame, periods)
    bars = alt.Chart(by_period).mark_bar(color="#1e88e5").encode(
        x=alt.X("Period:N", sort=None, title=""),
        y=alt.Y("Revenue:Q", title="Revenue ($)"),
        tooltip=["Period", alt.Tooltip("Revenue:Q", format="$,.0f"),
                 alt.Tooltip("Profit:Q", format="$,.0f"), "Job_Count", alt.Tooltip("Quantity:Q", format=",")]
    )
    line = alt.Chart(by_period).mark_line(color="#43a047", point=True).encode(
        x=alt.X("Period:N", sort=None), y="Profit:Q"
    )
    st.altair_chart((bars + line).properties(height=320), use_container_width=True)
    st.caption("Bars: revenue. Line: profit. Jobs spanning several periods are split by overlap.")

    st.markdown("---")

    # =========================================================================
    # SECTION 3: CLIENT ANALYSIS
    # =========================================================================
    st.header("👥 Client Analysis")
    sort_label = st.radio("Sort clients by", ["revenue", "volume", "profit"], horizontal=True)
    clients = revenue_by_client(frame, sort_by=sort_label)
    conc = concentration_risk(clients, thresholds)

    c1, c2, c3 = st.columns(3)
    c1.metric(f"Top {thresholds.concentration_top_n} Concentration", fmt_pct(conc.top_n_pct))
    c2.metric("High-Concentration Clients", len(conc.high))
    c3.metric("Moderate-Concentration Clients", len(conc.moderate))

    top = top_clients(frame, 15, sort_label).copy()
    top["Band"] = top["Pct_Of_Total"].map(
        lambda s: "High" if s >= thresholds.concentration_high_pct
        else "Moderate" if s >= thresholds.concentration_moderate_pct else "Normal"
    )
    chart = alt.Chart(top).mark_bar().encode(
        x=alt.X(f"{'Quantity' if sort_label == 'volume' else sort_label.title()}:Q", title=sort_label.title()),
        y=alt.Y("Client:N", sort=None, title=""),
        color=alt.Color("Band:N", scale=alt.Scale(domain=["High", "Moderate", "Normal"],
                                                   range=["#e53935", "#fb8c00", "#1e88e5"])),
        tooltip=["Client", alt.Tooltip("Revenue:Q", format="$,.0f"), alt.Tooltip("Profit:Q", format="$,.0f"),
                 alt.Tooltip("Pct_Of_Total:Q", format=".1f", title="% of revenue"), "Job_Count"]
    ).properties(height=max(250, len(top) * 24))
    st.altair_chart(chart, use_container_width=True)

    with st.expander("📋 Client Table", expanded=False):
        show_table(clients.drop(columns=["Client_Id"]), height=400)

    st.markdown("---")

    # =========================================================================
    # SECTION 4: SERVICE MIX
    # =========================================================================
    st.header("🧩 Service Mix")
    services = revenue_by_process_type(frame, sort_by=sort_label)
    col1, col2 = st.columns(2)
    with col1:
        pie = alt.Chart(services).mark_arc(innerRadius=60).encode(
            theta="Revenue:Q", color=alt.Color("Label:N", title="Process"),
            tooltip=["Label", alt.Tooltip("Revenue:Q", format="$,.0f"),
                     alt.Tooltip("Pct_Of_Total:Q", format=".1f", title="% of revenue")]
        )
        st.altair_chart(pie, use_container_width=True)
    with col2:
        show_table(services.drop(columns=["Process_Type"]))
        st.caption("Multi-process jobs are split evenly across their process types.")

    if len(summary.cost_per_piece_by_process):
        st.subheader("Cost per Piece by Process")
        cpp = summary.cost_per_piece_by_process
        st.dataframe(cpp.style.format({"Cost": "${:,.0f}", "Quantity": "{:,.0f}", "Cost_Per_Piece": "${:,.4f}"}),
                     use_container_width=True)

    st.markdown("---")

    # =========================================================================
    # SECTION 5: PERIOD COMPARISON
    # =========================================================================
    st.header("🔁 Period Comparison")
    st.markdown(f"*{start:%d %b %Y} – {end:%d %b %Y} vs the previous {(win_end - win_start).days} days*")
    comps = compare_periods(frame, previous)
    cols = st.columns(len(comps))
    for col, comp in zip(cols, comps):
        shown = fmt_currency(comp.current) if comp.metric in {"Revenue", "Avg Job Value", "Profit"} \
            else format_number(comp.current)
        col.metric(comp.metric, shown, delta=fmt_delta(comp.percent_change))

    metric = st.selectbox("Compare", ["revenue", "volume", "profit"], key="cmp_metric")
    series = compare_period_series(frame, periods, previous, prev_periods, metric)
    if len(series):
        melted = series.melt(id_vars=["Period"], value_vars=["Current", "Previous"], var_name="Window",
                             value_name="Value")
        cmp_chart = alt.Chart(melted).mark_bar().encode(
            x=alt.X("Period:N", sort=None, title=""), y=alt.Y("Value:Q", title=metric.title()),
            color=alt.Color("Window:N", scale=alt.Scale(domain=["Current", "Previous"],
                                                        range=["#1e88e5", "#b0bec5"])),
            xOffset="Window:N",
            tooltip=["Period", "Window", alt.Tooltip("Value:Q", format=",.0f")]
        ).properties(height=300)
        st.altair_chart(cmp_chart, use_container_width=True)

    st.markdown("---")

    # =========================================================================
    # SECTION 6: EXECUTIVE ALERTS
    # =========================================================================
    st.header("🚨 Executive Alerts")
    alerts = generate_executive_alerts(frame, previous, capacity_value, thresholds, periods)
    if not alerts:
        st.success("✅ No alerts for the selected period.")
    for alert in alerts:
        with st.expander(f"{SEVERITY_ICONS[alert.severity]} {alert.title} — {alert.description}",
                         expanded=alert.severity == "critical"):
            if alert.impact:
                st.markdown(f"**Impact:** {alert.impact}")
            if alert.action:
                st.markdown(f"**Action:** {alert.action}")
            if alert.details is not None and len(alert.details):
                details = alert.details.drop(columns=["Process_Types", "Client_Id"], errors="ignore")
                show_table(details)

    with st.expander("📋 Job Margins", expanded=False):
        margins = frame[["Job_Number", "Job_Name", "Client", "Billing_Rate", "Cost", "Profit", "Profit_Pct"]].copy()
        margins["Band"] = margins["Profit_Pct"].map(lambda p: profit_color(p, thresholds))
        st.dataframe(
            margins.style.format({k: v for k, v in MONEY_FORMAT.items() if k in margins.columns})
            .apply(lambda col: [f"color: {BAND_COLORS[b]}" for b in margins["Band"]], subset=["Profit_Pct"]),
            use_container_width=True, height=400,
        )

    st.markdown("---")

    # =========================================================================
    # SECTION 7: DATA HEALTH
    # =========================================================================
    st.header("🩺 Data Health")
    health = health_summary(filtered_jobs)
    c1, c2, c3, c4, c5, c6 = st.columns(6)
    c1.metric("Healthy", fmt_pct(health.health_pct))
    c2.metric("Missing Billing", health.missing_billing)
    c3.metric("Discrepancies", health.discrepancies)
    c4.metric("$0 Pricing", health.zero_pricing)
    c5.metric("Hours Exceeded", health.hours_exceeded)
    c6.metric("Due Before Start", health.due_before_start)

    issues = analyze_jobs(filtered_jobs)
    issues = issues.loc[issues["Issues"].map(len) > 0].copy()
    if len(issues):
        issues["Issues"] = issues["Issues"].map(lambda xs: ", ".join(ISSUE_LABELS[x] for x in xs))
        with st.expander(f"📋 {len(issues)} jobs with issues", expanded=False):
            st.dataframe(issues.style.format({
                "Calculated_Billing": "${:,.0f}", "Recorded_Billing": "${:,.0f}",
                "Discrepancy_Amount": "${:,.0f}", "Discrepancy_Pct": "{:.1f}%",
            }), use_container_width=True)

    st.markdown("---")

    # =========================================================================
    # SECTION 8: PRODUCTION IMPORT
    # =========================================================================
    production_import(jobs)

    # Footer
    st.markdown("---")
    st.caption("**Mailshop CFO Dashboard** | Revenue = billing rate | Built with Streamlit")


def production_import(jobs):
    st.header("📥 Production Import")
    st.download_button(
        "Download template", import_template_bytes(), file_name="production_import_template.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )
    uploaded = st.file_uploader("Upload production file", type=["xlsx", "xls", "csv"], key="prod_upload")
    if not uploaded:
        return

    problem = validate_upload(uploaded.name, uploaded.size)
    if problem:
        st.error(problem)
        return

    parsed = parse_production_file(uploaded, uploaded.name)
    for issue in parsed.errors:
        where = f"Row {issue.row_index}: " if issue.row_index else ""
        st.error(f"{where}{issue.message}")
    for issue in parsed.warnings:
        st.warning(issue.message)
    if not parsed.rows:
        return

    options = ValidationOptions(facilities_id=settings.default_facility_id, now=pd.Timestamp.now())
    if settings.backend_enabled:
        start, end = duplicate_check_window(parsed.rows, options)
        try:
            options.existing_entries = load_existing_entries(start, end, settings.default_facility_id)
            options.check_duplicates = True
        except BackendError as e:
            logger.warning("Duplicate check skipped: %s", e)
            st.warning(f"Could not load existing entries; duplicate check skipped ({e})")
    validated = validate_production_rows(parsed.rows, jobs, options)
    summary = validation_summary(validated)

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Rows", summary.total)
    c2.metric("Valid", summary.valid)
    c3.metric("Invalid", summary.invalid)
    c4.metric("Total Quantity", format_number(summary.total_quantity))
    if summary.warnings:
        st.warning(f"{summary.warnings} rows have warnings; they will still be uploaded.")

    st.dataframe(preview_frame(validated), use_container_width=True, height=350)

    entries = entries_to_upload(validated)
    if not entries:
        st.info("No valid rows to upload.")
        return
    if not settings.backend_enabled:
        st.info("Backend not configured; upload disabled.")
        return

    if st.button(f"Upload {len(entries)} entries"):
        bar = st.progress(0.0, text="Uploading...")

        def progress(done, total):
            bar.progress(done / total, text=f"Uploaded {done} of {total}")

        with BackendClient(settings) as client:
            result = upload_in_chunks(entries, client.create_production_entries, settings.upload_chunk_size, progress)
        if result.success:
            st.success(f"✅ Uploaded {result.created} production entries.")
        else:
            st.error(f"Upload stopped after {result.created} of {result.total} entries: {result.error}")


if __name__ == "__main__":
    main()
