from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Callable, Iterable, Iterator, Sequence

import pandas as pd
import requests
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

API_URL = "https://agsi.gie.eu/api"
COUNTRY = "DE"
WINTER_START_MD = (11, 1)
TARGET_END_MD = (3, 31)
FETCH_SIZE = 300
FETCH_TIMEOUT = 30.0
RETRY_ATTEMPTS = 3
RETRY_DELAY = 2.0
DELAY_BETWEEN_CALLS = 1.0

API_KEY_ENV = "AGSI_API_KEY"

REQUEST_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://agsi.gie.eu/",
    "Origin": "https://agsi.gie.eu",
}

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)

MISSING_MARKERS = {"", "-", "N/A"}

DISPLAY_DATE = "%d %b %Y"


class StorageDataError(Exception):
    """Base class for failures raised while assembling storage data."""


class SeasonFetchError(StorageDataError):
    """A season could not be retrieved from the upstream API."""

    def __init__(self, year: int, message: str):
        super().__init__(message)
        self.year = year


class EmptySeasonError(StorageDataError):
    """No usable record survived normalization for a season."""


class DashboardBuildError(StorageDataError):
    """The build as a whole cannot produce a dashboard."""


@dataclass(frozen=True)
class DayRecord:
    date: date
    date_str: str
    full: float
    injection: float
    withdrawal: float
    days_elapsed: int = 0
    trend: float = 0.0
    trend_ma7: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "dateStr": self.date_str,
            "full": self.full,
            "injection": self.injection,
            "withdrawal": self.withdrawal,
            "daysElapsed": self.days_elapsed,
            "trend": self.trend,
            "trendMa7": self.trend_ma7,
        }


@dataclass(frozen=True)
class SeasonConfig:
    year: int
    name: str
    color: str
    width: int
    dash: str
    fill_color: str
    is_current: bool = False

    @property
    def start_date(self) -> date:
        return season_start(self.year)

    def to_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "name": self.name,
            "color": self.color,
            "width": self.width,
            "dash": self.dash,
            "fillColor": self.fill_color,
            "isCurrent": self.is_current,
        }


@dataclass(frozen=True)
class SeasonData:
    config: SeasonConfig
    records: tuple[DayRecord, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "records": [r.to_dict() for r in self.records],
        }


@dataclass(frozen=True)
class SeasonSet:
    """Loaded seasons in load order (oldest first) with a year lookup."""

    seasons: tuple[SeasonData, ...] = ()
    index: dict[int, int] = field(default_factory=dict, compare=False)

    @classmethod
    def from_seasons(cls, seasons: Iterable[SeasonData]) -> SeasonSet:
        ordered = tuple(seasons)
        return cls(ordered, {s.config.year: i for i, s in enumerate(ordered)})

    def __len__(self) -> int:
        return len(self.seasons)

    def __iter__(self) -> Iterator[SeasonData]:
        return iter(self.seasons)

    def get(self, year: int) -> SeasonData | None:
        idx = self.index.get(year)
        return self.seasons[idx] if idx is not None else None

    def records(self, year: int) -> tuple[DayRecord, ...]:
        season = self.get(year)
        return season.records if season is not None else ()

    def by_year(self) -> dict[int, tuple[DayRecord, ...]]:
        return {s.config.year: s.records for s in self.seasons}

    def latest(self) -> SeasonData | None:
        for season in reversed(self.seasons):
            if season.records:
                return season
        return None

    def mark_current(self, year: int) -> SeasonSet:
        updated = [
            replace(s, config=replace(s.config, is_current=True)) if s.config.year == year else s
            for s in self.seasons
        ]
        return SeasonSet.from_seasons(updated)


def season_start(year: int) -> date:
    return date(year, *WINTER_START_MD)


def season_label(year: int) -> str:
    return f"{year}/{(year + 1) % 100:02d}"


def current_winter_start_year(today: date | None = None) -> int:
    today = today or date.today()
    # Jan-Oct belongs to the winter that started the previous November.
    if today.month < 11:
        return today.year - 1
    return today.year


def season_window(year: int, today: date | None = None) -> tuple[date, date]:
    today = today or date.today()
    start = season_start(year)
    if year == current_winter_start_year(today):
        return start, today
    return start, date(year + 1, *TARGET_END_MD)


def build_season_configs(current_year: int) -> list[SeasonConfig]:
    return [
        SeasonConfig(
            year=current_year - 2,
            name=f"Winter {season_label(current_year - 2)}",
            color="#95a5a6",
            width=3,
            dash="dash",
            fill_color="rgba(149,165,166,0.08)",
        ),
        SeasonConfig(
            year=current_year - 1,
            name=f"Winter {season_label(current_year - 1)}",
            color="#e67e22",
            width=3,
            dash="dash",
            fill_color="rgba(230,126,34,0.10)",
        ),
        SeasonConfig(
            year=current_year,
            name=f"Winter {season_label(current_year)} (Current)",
            color="#004080",
            width=4,
            dash="solid",
            fill_color="rgba(0,64,128,0.18)",
            is_current=True,
        ),
    ]


def parse_gas_day(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def parse_volume(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text in MISSING_MARKERS:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return 0.0


def normalize_record(row: dict[str, Any]) -> DayRecord | None:
    day = parse_gas_day(row.get("gasDayStart"))
    if day is None:
        logger.warning("Skipping unparseable date: %r", row.get("gasDayStart"))
        return None
    return DayRecord(
        date=day,
        date_str=day.strftime(DISPLAY_DATE),
        full=parse_volume(row.get("full")),
        injection=parse_volume(row.get("injection")),
        withdrawal=parse_volume(row.get("withdrawal")),
    )


def normalize_records(rows: Iterable[Any]) -> list[DayRecord]:
    records: list[DayRecord] = []
    for row in rows:
        if not isinstance(row, dict):
            logger.warning("Skipping malformed row: %r", row)
            continue
        record = normalize_record(row)
        if record is not None:
            records.append(record)
    return records


def aggregate_season(start: date, records: Sequence[DayRecord]) -> tuple[DayRecord, ...]:
    if not records:
        raise EmptySeasonError(f"no valid records for season starting {start.isoformat()}")

    ordered = sorted(records, key=lambda r: r.date)
    full = pd.Series([r.full for r in ordered], dtype=float)
    trend = full.diff().fillna(0.0)
    trend_ma7 = trend.rolling(7, min_periods=1).mean()

    return tuple(
        replace(
            r,
            days_elapsed=(r.date - start).days,
            trend=float(trend.iloc[i]),
            trend_ma7=float(trend_ma7.iloc[i]),
        )
        for i, r in enumerate(ordered)
    )


def _request_headers() -> dict[str, str]:
    headers = dict(REQUEST_HEADERS)
    api_key = os.getenv(API_KEY_ENV, "").strip()
    if api_key:
        headers["x-key"] = api_key
    return headers


def _decode_payload(resp: requests.Response) -> list[Any]:
    payload = resp.json()
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected payload type {type(payload).__name__}")
    data = payload.get("data") or []
    if not isinstance(data, list):
        raise ValueError("'data' field is not a list")
    return data


def fetch_season(
    year: int,
    session: requests.Session | None = None,
    today: date | None = None,
) -> tuple[DayRecord, ...]:
    start, end = season_window(year, today)
    params = {
        "country": COUNTRY,
        "from": start.isoformat(),
        "to": end.isoformat(),
        "size": FETCH_SIZE,
    }
    logger.info("Fetching %s: %s -> %s", season_label(year), params["from"], params["to"])

    if session is None:
        with requests.Session() as http:
            resp = http.get(API_URL, params=params, headers=_request_headers(), timeout=FETCH_TIMEOUT)
    else:
        resp = session.get(API_URL, params=params, headers=_request_headers(), timeout=FETCH_TIMEOUT)
    body = resp.text or ""
    logger.debug("HTTP %s, %d bytes", resp.status_code, len(body))

    if resp.status_code != 200:
        raise requests.HTTPError(f"API status {resp.status_code}: {body[:500]}", response=resp)

    rows = _decode_payload(resp)
    if not rows:
        logger.warning("Empty data array for %d", year)
        return ()

    logger.info("%d: %d raw records", year, len(rows))
    records = aggregate_season(start, normalize_records(rows))

    first, last = records[0], records[-1]
    logger.debug(
        "Range: %s (day %d, %.1f%%) -> %s (day %d, %.1f%%)",
        first.date_str,
        first.days_elapsed,
        first.full,
        last.date_str,
        last.days_elapsed,
        last.full,
    )
    if len(records) > 3:
        logger.debug("Last trend: %.3f%%, MA7: %.3f%%", last.trend, last.trend_ma7)
    return records


def fetch_season_with_retry(
    year: int,
    session: requests.Session | None = None,
    today: date | None = None,
    sleep: Callable[[float], None] = time.sleep,
    attempts: int = RETRY_ATTEMPTS,
    base_delay: float = RETRY_DELAY,
) -> tuple[DayRecord, ...]:
    today = today or date.today()
    start = season_start(year)
    if start > today:
        raise SeasonFetchError(year, f"season {year} starts in the future ({start.isoformat()})")

    last_exc: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fetch_season(year, session=session, today=today)
        except (requests.RequestException, ValueError) as exc:
            last_exc = exc
            logger.warning("Attempt %d/%d for %d failed: %s", attempt, attempts, year, exc)
            if attempt < attempts:
                wait = base_delay * attempt
                logger.info("Retrying in %.1fs...", wait)
                sleep(wait)

    raise SeasonFetchError(year, f"all {attempts} attempts failed for {year}: {last_exc}") from last_exc


class SerialScheduler:
    """Runs tasks one at a time with a fixed pause between consecutive tasks."""

    def __init__(self, delay: float = DELAY_BETWEEN_CALLS, sleep: Callable[[float], None] = time.sleep):
        self.delay = delay
        self.sleep = sleep

    def run(self, items: Sequence[Any], task: Callable[[Any], Any]) -> list[Any]:
        results = []
        for i, item in enumerate(items):
            results.append(task(item))
            if i < len(items) - 1:
                self.sleep(self.delay)
        return results


def fetch_all_seasons(
    configs: Sequence[SeasonConfig],
    session: requests.Session | None = None,
    today: date | None = None,
    scheduler: SerialScheduler | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SeasonSet:
    scheduler = scheduler or SerialScheduler(sleep=sleep)
    if session is None:
        with requests.Session() as http:
            return fetch_all_seasons(configs, session=http, today=today, scheduler=scheduler, sleep=sleep)
    total = len(configs)

    def _load(indexed: tuple[int, SeasonConfig]) -> SeasonData | None:
        i, cfg = indexed
        logger.info("Season %d/%d: %s", i + 1, total, cfg.name)
        try:
            records = fetch_season_with_retry(cfg.year, session=session, today=today, sleep=sleep)
        except StorageDataError as exc:
            logger.warning("%s: %s (skipping)", cfg.name, exc)
            return None
        if not records:
            logger.warning("%s: no data (skipping)", cfg.name)
            return None
        logger.info("%s: %d records loaded", cfg.name, len(records))
        return SeasonData(config=cfg, records=records)

    loaded = scheduler.run(list(enumerate(configs)), _load)
    return SeasonSet.from_seasons(s for s in loaded if s is not None)


def select_current_season(season_set: SeasonSet, current_year: int) -> tuple[SeasonSet, SeasonData]:
    if not len(season_set):
        raise DashboardBuildError("no season data loaded from API")

    preferred = season_set.get(current_year)
    if preferred is not None and preferred.records:
        logger.info("Current season %d: %d records", current_year, len(preferred.records))
        return season_set, preferred

    fallback = season_set.latest()
    if fallback is None:
        raise DashboardBuildError("no usable current season data")

    # Approximation: the latest loaded season may not be adjacent to the current winter.
    logger.warning(
        "Fallback: using %s as current (%d records)", fallback.config.name, len(fallback.records)
    )
    marked = season_set.mark_current(fallback.config.year)
    return marked, marked.get(fallback.config.year)
