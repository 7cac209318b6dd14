from __future__ import annotations

import json
from datetime import date, timedelta
from typing import Any

import pytest
import requests

from storage_intel import DayRecord, SeasonConfig, SeasonData, aggregate_season, season_start


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """Answers upstream calls from a per-season table keyed by the ``from`` date."""

    def __init__(self, responses: dict[str, list[Any]] | None = None):
        self.responses = responses or {}
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def get(self, url: str, params: dict[str, Any] | None = None, headers=None, timeout=None):
        params = params or {}
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        queue = self.responses.get(params.get("from"), [])
        if not queue:
            raise requests.ConnectionError("no canned response")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def api_rows(start: date, fills: list[float], withdrawal: float = 0.0) -> list[dict[str, str]]:
    return [
        {
            "gasDayStart": (start + timedelta(days=i)).isoformat(),
            "full": f"{fill:.4f}",
            "injection": "0",
            "withdrawal": f"{withdrawal:.2f}",
        }
        for i, fill in enumerate(fills)
    ]


def season_records(year: int, fills: list[float], withdrawal: float = 0.0) -> tuple[DayRecord, ...]:
    start = season_start(year)
    raw = [
        DayRecord(
            date=start + timedelta(days=i),
            date_str=(start + timedelta(days=i)).strftime("%d %b %Y"),
            full=fill,
            injection=0.0,
            withdrawal=withdrawal,
        )
        for i, fill in enumerate(fills)
    ]
    return aggregate_season(start, raw)


def season_data(year: int, fills: list[float], is_current: bool = False) -> SeasonData:
    cfg = SeasonConfig(
        year=year,
        name=f"Winter {year}",
        color="#000000",
        width=3,
        dash="dash",
        fill_color="rgba(0,0,0,0.1)",
        is_current=is_current,
    )
    return SeasonData(config=cfg, records=season_records(year, fills))


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture(autouse=True)
def _no_api_key(monkeypatch):
    monkeypatch.delenv("AGSI_API_KEY", raising=False)
