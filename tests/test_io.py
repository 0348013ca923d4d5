"""Tests for ActivityWatch window-switch retrieval."""

from datetime import datetime, timezone

import requests

from awbatch.analysis.batching import WindowSwitch
from awbatch.analysis.io import (
    AWWindowSource,
    fetch_aw_events,
    switches_from_samples,
    window_switches_from_events,
)


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        return self.responses[url]


HOST = "http://127.0.0.1:5600"
START = datetime(2025, 10, 10, 22, 0, tzinfo=timezone.utc)
END = datetime(2025, 10, 10, 23, 0, tzinfo=timezone.utc)


def test_fetch_aw_events_per_bucket():
    session = FakeSession(
        {
            f"{HOST}/api/0/buckets/win/events": FakeResponse([{"timestamp": "x"}]),
            f"{HOST}/api/0/buckets/broken/events": FakeResponse(None, status=500),
        }
    )
    out = fetch_aw_events(["win", "broken"], START, END, HOST, limit=10, session=session)

    assert out == {"win": [{"timestamp": "x"}], "broken": []}
    url, params = session.calls[0]
    assert params == {"start": "2025-10-10T22:00:00Z", "end": "2025-10-10T23:00:00Z", "limit": 10}


def test_switches_from_samples_collapses_repeats():
    samples = [
        (3.0, "Slack", "general"),
        (1.0, "Code", "a.py"),
        (2.0, "Code", "a.py"),
        (4.0, "", ""),
        (5.0, "Code", "b.py"),
    ]
    assert switches_from_samples(samples) == [
        WindowSwitch(1.0, "Code", "a.py"),
        WindowSwitch(3.0, "Slack", "general"),
        WindowSwitch(5.0, "Code", "b.py"),
    ]


def test_window_switches_from_events():
    events = [
        {"timestamp": "2025-10-10T22:00:10Z", "data": {"app": "Code", "title": "x"}},
        {"timestamp": "2025-10-10T22:00:00Z", "data": {"app": "firefox", "title": "y"}},
        {"timestamp": None, "data": {"app": "Slack"}},
        {"timestamp": "2025-10-10T22:00:20Z"},
    ]
    switches = window_switches_from_events(events)
    assert [s.to_app for s in switches] == ["firefox", "Code"]
    assert switches[0].timestamp == START.timestamp()


def test_aw_window_source():
    url = f"{HOST}/api/0/buckets/aw-watcher-window_host/events"
    events = [
        {"timestamp": f"2025-10-10T22:00:{i:02d}Z", "data": {"app": f"app{i}", "title": ""}}
        for i in range(5)
    ]
    session = FakeSession({url: FakeResponse(events)})
    source = AWWindowSource(HOST + "/", "aw-watcher-window_host", session=session)

    switches = source.get_switches(START.timestamp(), END.timestamp(), 3)

    assert [s.to_app for s in switches] == ["app0", "app1", "app2"]
    assert session.calls[0][1]["limit"] == 3
