from __future__ import annotations

import html
import json
import time

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from dashboard import DashboardData
from dashboard_cache import DashboardService, build_error_payload, configure_logging
from scenario_engine import CRITICAL_THRESHOLD, DAYS_TO_CRIT_UNKNOWN, KPIData, Scenario
from storage_intel import COUNTRY, DashboardBuildError, SeasonData, season_label


st.set_page_config(
    page_title="Gas Storage Pulse",
    page_icon="fire",
    layout="wide",
)


def _inject_css() -> None:
    st.markdown(
        """
        <style>
        @import url('https://fonts.googleapis.com/css2?family=Space+Grotesk:wght@400;500;600;700&family=IBM+Plex+Mono:wght@400;500&display=swap');

        html, body, [data-testid="stAppViewContainer"] {
            background: linear-gradient(170deg, #06111f 0%, #081a2e 45%, #0a2036 100%);
            color: #e8f1ff;
        }
        [data-testid="stHeader"] { background: rgba(0,0,0,0); }
        [data-testid="stSidebar"] {
            background: linear-gradient(180deg, #071222 0%, #0a1b30 100%);
            border-right: 1px solid rgba(126, 163, 204, 0.25);
        }
        h1, h2, h3, h4, .stMarkdown, .stText {
            font-family: "Space Grotesk", sans-serif !important;
            color: #f8fbff !important;
        }
        .mono {
            font-family: "IBM Plex Mono", monospace;
            color: #f8fbff !important;
            letter-spacing: 0.02em;
            font-size: 0.86rem;
        }
        .panel {
            background: linear-gradient(180deg, rgba(10, 24, 43, 0.88) 0%, rgba(8, 22, 40, 0.94) 100%);
            border: 1px solid rgba(125, 165, 208, 0.28);
            border-radius: 14px;
            padding: 18px 20px;
            margin: 0 0 18px 0;
        }
        .error-item {
            border: 1px solid rgba(126, 163, 204, 0.24);
            border-left: 4px solid rgba(255, 96, 96, 0.95);
            border-radius: 10px;
            padding: 9px 12px;
            margin: 0 0 8px 0;
            background: rgba(8, 22, 40, 0.55);
        }
        div[data-testid="metric-container"] {
            background: linear-gradient(170deg, rgba(16, 37, 62, 0.92) 0%, rgba(10, 27, 46, 0.95) 100%);
            border: 1px solid rgba(126, 163, 204, 0.24);
            border-radius: 14px;
            padding: 10px 12px;
            margin: 4px 0 10px 0;
        }
        </style>
        """,
        unsafe_allow_html=True,
    )


@st.cache_resource(show_spinner=False)
def _get_service() -> DashboardService:
    configure_logging()
    service = DashboardService()
    service.start_prefetch()
    return service


def _apply_chart_theme(fig: go.Figure) -> go.Figure:
    fig.update_layout(
        paper_bgcolor="rgba(0,0,0,0)",
        plot_bgcolor="rgba(0,0,0,0)",
        font=dict(color="#ffffff", family="Space Grotesk", size=14),
        title_font=dict(color="#ffffff", size=20),
        legend=dict(
            orientation="h",
            y=1.12,
            x=0,
            font=dict(color="#ffffff", size=12),
            bgcolor="rgba(7, 22, 39, 0.55)",
        ),
    )
    fig.update_xaxes(
        color="#ffffff",
        gridcolor="rgba(140,170,205,0.18)",
        tickfont=dict(color="#ffffff", size=12),
    )
    fig.update_yaxes(
        color="#ffffff",
        gridcolor="rgba(140,170,205,0.18)",
        tickfont=dict(color="#ffffff", size=12),
    )
    return fig


def _season_trace(season: SeasonData) -> go.Scatter:
    cfg = season.config
    return go.Scatter(
        x=[r.days_elapsed for r in season.records],
        y=[r.full for r in season.records],
        mode="lines",
        name=cfg.name,
        line=dict(color=cfg.color, width=cfg.width, dash=cfg.dash),
        fill="tozeroy" if cfg.is_current else None,
        fillcolor=cfg.fill_color,
        customdata=[r.date_str for r in season.records],
        hovertemplate="%{customdata}<br>%{y:.1f}%<extra>" + html.escape(cfg.name) + "</extra>",
    )


def _scenario_trace(scenario: Scenario) -> go.Scatter:
    return go.Scatter(
        x=[p.x for p in scenario.points],
        y=[p.y for p in scenario.points],
        mode="lines",
        name=scenario.label,
        line=dict(color=scenario.color, width=2, dash=scenario.dash),
        customdata=[p.hover_date for p in scenario.points],
        hovertemplate="%{customdata}<br>%{y:.1f}%<extra>" + html.escape(scenario.label) + "</extra>",
    )


def _storage_chart(data: DashboardData) -> go.Figure:
    fig = go.Figure()
    for season in data.seasons:
        fig.add_trace(_season_trace(season))
    for scenario in data.scenarios:
        fig.add_trace(_scenario_trace(scenario))

    fig.add_hline(
        y=CRITICAL_THRESHOLD,
        line_color="rgba(255,96,96,0.9)",
        line_dash="dot",
        annotation_text=f"Critical {CRITICAL_THRESHOLD:.0f}%",
        annotation_font_color="#ff6b6b",
    )
    fig.update_layout(
        title=f"Storage Fill Level ({COUNTRY})",
        margin=dict(l=0, r=20, t=45, b=10),
        xaxis=dict(
            title="Season day",
            tickmode="array",
            tickvals=list(data.tick_vals),
            ticktext=list(data.tick_labels),
        ),
        yaxis=dict(title="Fill %", range=[0, 100]),
        height=520,
    )
    return _apply_chart_theme(fig)


def _trend_chart(data: DashboardData) -> go.Figure:
    fig = go.Figure()
    for season in data.seasons:
        cfg = season.config
        fig.add_trace(
            go.Scatter(
                x=[r.days_elapsed for r in season.records],
                y=[r.trend_ma7 for r in season.records],
                mode="lines",
                name=f"{cfg.name} (7d MA)",
                line=dict(color=cfg.color, width=2, dash=cfg.dash),
            )
        )
    fig.add_hline(y=0.0, line_color="rgba(246,205,97,0.7)", line_dash="dot")
    fig.update_layout(
        title="Daily Fill Change, 7-Day Average",
        margin=dict(l=0, r=20, t=45, b=10),
        xaxis=dict(
            title="Season day",
            tickmode="array",
            tickvals=list(data.tick_vals),
            ticktext=list(data.tick_labels),
        ),
        yaxis=dict(title="pp / day"),
        height=340,
    )
    return _apply_chart_theme(fig)


def _render_header(data: DashboardData) -> None:
    st.title("Gas Storage Pulse")
    st.markdown(
        f"<div class='mono'>AGSI+ daily storage data for {COUNTRY}. Current winter: {season_label(data.current_year)}.</div>",
        unsafe_allow_html=True,
    )
    st.markdown(f"<div class='mono'>Last build: {data.generated_at}</div>", unsafe_allow_html=True)


def _render_kpis(kpi: KPIData) -> None:
    cols = st.columns(4)
    with cols[0]:
        st.metric("Storage Fill", f"{kpi.current_fill:.1f}%", delta=kpi.current_date, delta_color="off")
    with cols[1]:
        st.metric("7-Day Change", f"{kpi.delta_7d:+.2f} pp")
    with cols[2]:
        st.metric("Avg Withdrawal (7d)", f"{kpi.avg_withdrawal:,.0f} GWh/d")
    with cols[3]:
        days = f"~{kpi.days_to_crit}" if kpi.days_to_crit < DAYS_TO_CRIT_UNKNOWN else "n/a"
        st.metric(f"Days to {CRITICAL_THRESHOLD:.0f}%", days)


def _render_scenario_table(scenarios: tuple[Scenario, ...]) -> None:
    st.subheader("Scenarios")
    if not scenarios:
        st.info("Not enough recent data to project scenarios.")
        return

    rows = [
        {
            "scenario": s.label,
            "slope": f"{s.slope:+.3f} pp/day" if s.slope else "-",
            "days_left": f"{s.days_left}" if s.days_left else "-",
            "hit_date": s.hit_date or "-",
            "points": len(s.points),
        }
        for s in scenarios
    ]
    st.dataframe(pd.DataFrame(rows), width="stretch", hide_index=True)
    st.caption(
        "Linear extends the 14-day regression slope; Severe Winter scales it by 1.25; "
        "the historical analog replays last winter from today's level."
    )


def _render_season_table(seasons: tuple[SeasonData, ...]) -> None:
    rows = []
    for season in seasons:
        last = season.records[-1]
        rows.append(
            {
                "season": season.config.name,
                "records": len(season.records),
                "last_date": last.date_str,
                "last_fill": f"{last.full:.1f}%",
                "trend_ma7": f"{last.trend_ma7:+.3f}",
            }
        )
    st.dataframe(pd.DataFrame(rows), width="stretch", hide_index=True)


def _render_error(exc: Exception) -> None:
    body = build_error_payload(exc)
    st.title("Gas Storage Pulse")
    st.markdown(
        f"<div class='error-item'><strong>{html.escape(body['message'])}</strong><br>"
        f"{html.escape(body['error'])}<br><span class='mono'>{html.escape(body['hint'])}</span></div>",
        unsafe_allow_html=True,
    )


def main() -> None:
    _inject_css()
    service = _get_service()

    st.sidebar.header("Controls")
    auto_refresh = st.sidebar.toggle("Auto refresh", value=False)
    refresh_seconds = st.sidebar.slider("Refresh interval (min)", min_value=5, max_value=120, value=30, step=5) * 60
    manual_refresh = st.sidebar.button("Rebuild now")

    try:
        with st.spinner("Fetching storage data..."):
            data = service.refresh() if manual_refresh else service.get_dashboard()
    except DashboardBuildError as exc:
        _render_error(exc)
        return

    health = service.health()
    st.sidebar.markdown(
        f"<div class='mono'>Cache: {service.cache.state} | has data: {health['hasData']}</div>",
        unsafe_allow_html=True,
    )
    st.sidebar.download_button(
        "Download JSON",
        data=json.dumps(data.to_dict(), indent=2),
        file_name="gas_storage_dashboard.json",
        mime="application/json",
    )

    _render_header(data)
    st.markdown("<div style='height:12px;'></div>", unsafe_allow_html=True)
    _render_kpis(data.kpi)

    st.markdown("<div class='panel'>", unsafe_allow_html=True)
    st.plotly_chart(_storage_chart(data), width="stretch")
    st.markdown("</div>", unsafe_allow_html=True)

    left, right = st.columns([1.2, 1.0])
    with left:
        st.markdown("<div class='panel'>", unsafe_allow_html=True)
        _render_scenario_table(data.scenarios)
        st.markdown("</div>", unsafe_allow_html=True)
    with right:
        st.markdown("<div class='panel'>", unsafe_allow_html=True)
        st.subheader("Seasons")
        _render_season_table(data.seasons)
        st.markdown("</div>", unsafe_allow_html=True)

    st.markdown("<div class='panel'>", unsafe_allow_html=True)
    st.plotly_chart(_trend_chart(data), width="stretch")
    st.markdown("</div>", unsafe_allow_html=True)

    if auto_refresh:
        st.sidebar.markdown(f"<div class='mono'>Next check in {refresh_seconds // 60} min</div>", unsafe_allow_html=True)
        time.sleep(refresh_seconds)
        st.rerun()


if __name__ == "__main__":
    main()
