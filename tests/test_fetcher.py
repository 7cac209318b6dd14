from __future__ import annotations

from datetime import date

import pytest
import requests

from conftest import FakeResponse, FakeSession, api_rows
from storage_intel import (
    API_URL,
    EmptySeasonError,
    SeasonFetchError,
    fetch_season,
    fetch_season_with_retry,
    season_window,
)

TODAY = date(2026, 1, 20)


def test_season_window_current_and_past():
    assert season_window(2025, TODAY) == (date(2025, 11, 1), TODAY)
    assert season_window(2024, TODAY) == (date(2024, 11, 1), date(2025, 3, 31))


def test_fetch_season_builds_request_and_parses():
    payload = {"data": list(reversed(api_rows(date(2024, 11, 1), [90.0, 89.5, 89.0])))}
    session = FakeSession({"2024-11-01": [FakeResponse(200, payload)]})

    records = fetch_season(2024, session=session, today=TODAY)

    call = session.calls[0]
    assert call["url"] == API_URL
    assert call["params"] == {"country": "DE", "from": "2024-11-01", "to": "2025-03-31", "size": 300}
    assert call["timeout"] == 30.0
    assert "x-key" not in call["headers"]
    assert [r.days_elapsed for r in records] == [0, 1, 2]
    assert records[-1].trend == pytest.approx(-0.5)


def test_fetch_season_sends_credential_when_configured(monkeypatch):
    monkeypatch.setenv("AGSI_API_KEY", "secret-key")
    payload = {"data": api_rows(date(2024, 11, 1), [90.0])}
    session = FakeSession({"2024-11-01": [FakeResponse(200, payload)]})

    fetch_season(2024, session=session, today=TODAY)

    assert session.calls[0]["headers"]["x-key"] == "secret-key"


def test_fetch_season_empty_data_returns_no_records():
    session = FakeSession({"2024-11-01": [FakeResponse(200, {"data": []})]})
    assert fetch_season(2024, session=session, today=TODAY) == ()


def test_retry_recovers_after_transient_failures(sleep_recorder):
    payload = {"data": api_rows(date(2024, 11, 1), [90.0, 89.0])}
    session = FakeSession(
        {
            "2024-11-01": [
                requests.ConnectionError("reset by peer"),
                FakeResponse(503, text="busy"),
                FakeResponse(200, payload),
            ]
        }
    )

    records = fetch_season_with_retry(2024, session=session, today=TODAY, sleep=sleep_recorder)

    assert len(records) == 2
    assert len(session.calls) == 3
    assert sleep_recorder.calls == [2.0, 4.0]


def test_retry_exhaustion_names_season_and_cause(sleep_recorder):
    session = FakeSession({"2024-11-01": [FakeResponse(200, text="<html>not json</html>")]})

    with pytest.raises(SeasonFetchError) as excinfo:
        fetch_season_with_retry(2024, session=session, today=TODAY, sleep=sleep_recorder)

    assert excinfo.value.year == 2024
    assert "all 3 attempts failed for 2024" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert len(session.calls) == 3
    assert sleep_recorder.calls == [2.0, 4.0]


def test_non_success_status_message_is_truncated(sleep_recorder):
    session = FakeSession({"2024-11-01": [FakeResponse(401, text="x" * 2000)]})

    with pytest.raises(SeasonFetchError) as excinfo:
        fetch_season_with_retry(2024, session=session, today=TODAY, sleep=sleep_recorder)

    cause = excinfo.value.__cause__
    assert isinstance(cause, requests.HTTPError)
    assert "API status 401" in str(cause)
    assert len(str(cause)) < 600


def test_future_season_short_circuits_before_network(sleep_recorder):
    session = FakeSession()

    with pytest.raises(SeasonFetchError, match="starts in the future"):
        fetch_season_with_retry(2026, session=session, today=TODAY, sleep=sleep_recorder)

    assert session.calls == []
    assert sleep_recorder.calls == []


def test_unusable_rows_are_not_retried(sleep_recorder):
    payload = {"data": [{"gasDayStart": "??", "full": "1", "injection": "0", "withdrawal": "0"}]}
    session = FakeSession({"2024-11-01": [FakeResponse(200, payload)]})

    with pytest.raises(EmptySeasonError):
        fetch_season_with_retry(2024, session=session, today=TODAY, sleep=sleep_recorder)

    assert len(session.calls) == 1
    assert sleep_recorder.calls == []


def test_fetch_season_closes_session_it_opens(monkeypatch):
    session = FakeSession({"2024-11-01": [FakeResponse(200, {"data": api_rows(date(2024, 11, 1), [70.0])})]})
    monkeypatch.setattr(requests, "Session", lambda: session)

    records = fetch_season(2024, today=TODAY)

    assert len(records) == 1
    assert session.closed
