from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Sequence

import numpy as np

from storage_intel import DISPLAY_DATE, DayRecord, SeasonSet, season_label, season_start

logger = logging.getLogger(__name__)

CRITICAL_THRESHOLD = 10.0
TREND_WINDOW = 14
STRESS_MULTIPLIER = 1.25
PROJECTION_POINTS = 50
DAYS_TO_CRIT_UNKNOWN = 999
SLOPE_EPSILON = 1e-9
MAX_PROJECTION_DAYS = 3650
TICK_STEP_DAYS = 7
TICK_SPAN_DAYS = 180

HIT_DATE_FORMAT = "%d.%m.%Y"
SHORT_DATE = "%d %b"


@dataclass(frozen=True)
class ScenarioPoint:
    x: float
    y: float
    hover_date: str

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "hoverDate": self.hover_date}


@dataclass(frozen=True)
class Scenario:
    name: str
    label: str
    color: str
    dash: str
    points: tuple[ScenarioPoint, ...]
    hit_date: str | None = None
    slope: float | None = None
    days_left: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "label": self.label,
            "color": self.color,
            "dash": self.dash,
            "points": [p.to_dict() for p in self.points],
        }
        if self.hit_date:
            out["hitDate"] = self.hit_date
        if self.slope:
            out["slope"] = self.slope
        if self.days_left:
            out["daysLeft"] = self.days_left
        return out


@dataclass(frozen=True)
class KPIData:
    current_fill: float
    current_date: str
    delta_7d: float
    avg_withdrawal: float
    days_to_crit: int = DAYS_TO_CRIT_UNKNOWN

    @property
    def has_crossing(self) -> bool:
        return self.days_to_crit < DAYS_TO_CRIT_UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentFill": self.current_fill,
            "currentDate": self.current_date,
            "delta7d": self.delta_7d,
            "avgWithdrawal": self.avg_withdrawal,
            "daysToCrit": self.days_to_crit,
        }


def linear_regression(records: Sequence[DayRecord]) -> tuple[float, float]:
    """Ordinary least squares of fill level against elapsed day."""
    n = len(records)
    if n < 2:
        return 0.0, 0.0

    x = np.array([r.days_elapsed for r in records], dtype=float)
    y = np.array([r.full for r in records], dtype=float)
    sx, sy = x.sum(), y.sum()
    denom = n * float(np.dot(x, x)) - sx * sx
    if abs(denom) < 1e-10:
        return 0.0, float(sy / n)

    slope = (n * float(np.dot(x, y)) - sx * sy) / denom
    intercept = (sy - slope * sx) / n
    return float(slope), float(intercept)


def make_projection_points(
    start_day: int,
    start_value: float,
    slope: float,
    total_days: float,
    start_date: date,
    n: int = PROJECTION_POINTS,
) -> tuple[ScenarioPoint, ...]:
    offsets = np.linspace(0.0, total_days, n)
    return tuple(
        ScenarioPoint(
            x=float(start_day + d),
            y=float(start_value + slope * d),
            hover_date=(start_date + timedelta(days=float(d))).strftime(DISPLAY_DATE),
        )
        for d in offsets
    )


def _decline_scenario(
    name: str,
    label: str,
    color: str,
    dash: str,
    slope: float,
    last: DayRecord,
) -> Scenario | None:
    days = (CRITICAL_THRESHOLD - last.full) / slope
    if days > MAX_PROJECTION_DAYS:
        logger.info("%s: crossing beyond %d days, skipped", name, MAX_PROJECTION_DAYS)
        return None
    hit = last.date + timedelta(days=days)
    logger.info("%s: ~%d days -> %s", name, int(days), hit.strftime(DISPLAY_DATE))
    return Scenario(
        name=name,
        label=label,
        color=color,
        dash=dash,
        points=make_projection_points(last.days_elapsed, last.full, slope, days, last.date),
        hit_date=hit.strftime(HIT_DATE_FORMAT),
        slope=slope,
        days_left=int(days),
    )


def _historical_scenario(last: DayRecord, history: Sequence[DayRecord], history_year: int) -> Scenario | None:
    later = [r for r in history if r.days_elapsed > last.days_elapsed]
    if not later:
        return None

    base = later[0].full
    points = tuple(
        ScenarioPoint(
            x=float(r.days_elapsed),
            y=last.full + (r.full - base),
            hover_date=r.date.strftime(SHORT_DATE),
        )
        for r in later
    )
    logger.info("History: %d points from %s", len(points), season_label(history_year))
    return Scenario(
        name="History",
        label=f"📅 Like {season_label(history_year)}",
        color="#d35400",
        dash="dash",
        points=points,
    )


def generate_scenarios(
    current: Sequence[DayRecord],
    seasons: SeasonSet,
    current_year: int,
) -> tuple[Scenario, ...]:
    if len(current) < TREND_WINDOW:
        logger.warning("Not enough data for scenarios (%d < %d)", len(current), TREND_WINDOW)
        return ()

    last = current[-1]
    window = current[-TREND_WINDOW:]
    slope, _ = linear_regression(window)
    logger.info("Slope: %.4f%%/day over %d days", slope, len(window))

    scenarios: list[Scenario] = []
    # Regression over a plateau can leave a residue around -1e-14.
    if slope < -SLOPE_EPSILON:
        declines = (
            _decline_scenario("Linear", "📉 Linear Trend", "#c0392b", "dot", slope, last),
            _decline_scenario(
                "Stress", "❄️ Severe Winter", "#800000", "dashdot", slope * STRESS_MULTIPLIER, last
            ),
        )
        scenarios.extend(s for s in declines if s is not None)

    history_year = current_year - 1
    history = seasons.records(history_year)
    if history:
        analog = _historical_scenario(last, history, history_year)
        if analog is not None:
            scenarios.append(analog)

    return tuple(scenarios)


def build_kpi(records: Sequence[DayRecord], scenarios: Sequence[Scenario]) -> KPIData:
    last = records[-1]
    delta = last.full - records[-7].full if len(records) >= 7 else 0.0
    trailing = records[-7:]
    avg_withdrawal = float(np.mean([r.withdrawal for r in trailing]))

    days_to_crit = DAYS_TO_CRIT_UNKNOWN
    for s in scenarios:
        if s.name == "Linear" and s.days_left is not None and s.days_left > 0:
            days_to_crit = s.days_left

    return KPIData(
        current_fill=last.full,
        current_date=last.date.strftime(DISPLAY_DATE),
        delta_7d=delta,
        avg_withdrawal=avg_withdrawal,
        days_to_crit=days_to_crit,
    )


def generate_ticks(start_year: int) -> tuple[list[int], list[str]]:
    start = season_start(start_year)
    vals = list(range(0, TICK_SPAN_DAYS, TICK_STEP_DAYS))
    labels = [(start + timedelta(days=d)).strftime(SHORT_DATE) for d in vals]
    return vals, labels
