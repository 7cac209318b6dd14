from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable

import requests

from scenario_engine import KPIData, Scenario, build_kpi, generate_scenarios, generate_ticks
from storage_intel import (
    DISPLAY_DATE,
    SeasonData,
    SerialScheduler,
    build_season_configs,
    current_winter_start_year,
    fetch_all_seasons,
    season_label,
    select_current_season,
)

logger = logging.getLogger(__name__)

GENERATED_AT_FORMAT = "%d %b %Y %H:%M"


@dataclass(frozen=True)
class DashboardData:
    seasons: tuple[SeasonData, ...]
    scenarios: tuple[Scenario, ...]
    kpi: KPIData
    tick_vals: tuple[int, ...]
    tick_labels: tuple[str, ...]
    generated_at: str
    current_year: int

    def scenario(self, name: str) -> Scenario | None:
        for s in self.scenarios:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "seasons": [s.to_dict() for s in self.seasons],
            "scenarios": [s.to_dict() for s in self.scenarios],
            "kpi": self.kpi.to_dict(),
            "tickVals": list(self.tick_vals),
            "tickLabels": list(self.tick_labels),
            "generatedAt": self.generated_at,
            "currentYear": self.current_year,
        }


def build_dashboard_payload(
    session: requests.Session | None = None,
    now: datetime | None = None,
    sleep: Callable[[float], None] = time.sleep,
    scheduler: SerialScheduler | None = None,
) -> DashboardData:
    now = now or datetime.now()
    today: date = now.date()
    cwsy = current_winter_start_year(today)

    logger.info("Building dashboard")
    logger.info("Today: %s, current winter: %s", today.strftime(DISPLAY_DATE), season_label(cwsy))

    season_set = fetch_all_seasons(
        build_season_configs(cwsy),
        session=session,
        today=today,
        scheduler=scheduler,
        sleep=sleep,
    )
    season_set, current = select_current_season(season_set, cwsy)
    records = current.records
    current_year = cwsy

    non_zero = sum(1 for r in records if r.trend != 0)
    logger.info("Current season: %d records, %d with non-zero trend", len(records), non_zero)

    scenarios = generate_scenarios(records, season_set, current_year)
    kpi = build_kpi(records, scenarios)
    tick_vals, tick_labels = generate_ticks(current_year)

    logger.info(
        "Dashboard built: %d seasons, %d scenarios, fill %.1f%% as of %s, 7d delta %.2f%%, avg withdrawal %.0f GWh/d",
        len(season_set),
        len(scenarios),
        kpi.current_fill,
        kpi.current_date,
        kpi.delta_7d,
        kpi.avg_withdrawal,
    )
    if kpi.has_crossing:
        logger.info("Days to critical: ~%d", kpi.days_to_crit)

    return DashboardData(
        seasons=season_set.seasons,
        scenarios=scenarios,
        kpi=kpi,
        tick_vals=tuple(tick_vals),
        tick_labels=tuple(tick_labels),
        generated_at=now.strftime(GENERATED_AT_FORMAT),
        current_year=current_year,
    )
