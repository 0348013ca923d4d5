"""Tests for the spool-directory repository and its state file."""

import json
from datetime import timedelta, timezone

import pytest

from awbatch.analysis.batching import WindowSwitch
from awbatch.config import WorkerConfig
from awbatch.storage import INTERRUPTED_ERROR, STATE_FILE, SpoolRepository
from awbatch.utils.state import State


def _record(spool, name, ts=None, app="Code", title="a.py - proj - Visual Studio Code", image=True, sha=None):
    img = spool / f"{name}.png"
    if image:
        img.write_bytes(b"\x89PNG" + name.encode())
    rec = {"path": str(img), "app": app, "title": title}
    if ts is not None:
        rec["ts"] = ts
    if sha:
        rec["sha256"] = sha
    (spool / f"{name}.json").write_text(json.dumps(rec), encoding="utf-8")
    return rec


@pytest.fixture
def spool(tmp_path):
    d = tmp_path / "spool"
    d.mkdir()
    return d


def _repo(spool, **kw):
    return SpoolRepository(str(spool), WorkerConfig(settings={"capture_interval_ms": "2000"}), **kw)


def test_fetch_orders_by_capture_time_and_skips_dead_records(spool):
    _record(spool, "b", ts="2025-10-10T22:34:20+00:00", sha="bbb")
    _record(spool, "a", ts="2025-10-10T22:34:15.007+00:00")
    gone = _record(spool, "gone", ts="2025-10-10T22:34:18+00:00", image=False)
    repo = _repo(spool)

    shots = repo.fetch_unprocessed_screenshots(0, 10)

    assert [s.app_name for s in shots] == ["Code", "Code"]
    assert [s.id for s in shots] == [
        "path:" + str(spool / "a.png") + "@2025-10-10T22:34:15.007+00:00",
        "path:" + str(spool / "b.png") + "@2025-10-10T22:34:20+00:00",
    ]
    assert shots[0].captured_at < shots[1].captured_at
    assert shots[0].file_size > 0
    assert repo.state.seen(gone)


def test_identical_frames_are_separate_screenshots(spool):
    _record(spool, "first", ts=1000.0, sha="same")
    _record(spool, "second", ts=1060.0, sha="same")
    repo = _repo(spool)

    shots = repo.fetch_unprocessed_screenshots(0, 10)
    assert [s.captured_at for s in shots] == [1000.0, 1060.0]
    assert shots[0].id != shots[1].id

    repo.save_batch_with_screenshots(1000.0, 1000.0, [shots[0].id])
    (left,) = repo.fetch_unprocessed_screenshots(0, 10)
    assert left.captured_at == 1060.0


def test_fetch_respects_since_and_limit(spool):
    _record(spool, "old", ts=1000.0)
    _record(spool, "new1", ts=5000.0)
    _record(spool, "new2", ts=6000.0)
    repo = _repo(spool)

    assert [s.captured_at for s in repo.fetch_unprocessed_screenshots(2000, 10)] == [5000.0, 6000.0]
    assert [s.captured_at for s in repo.fetch_unprocessed_screenshots(0, 1)] == [1000.0]


def test_missing_ts_uses_file_mtime(spool):
    _record(spool, "nots")
    (shot,) = _repo(spool).fetch_unprocessed_screenshots(0, 10)
    assert shot.captured_at > 0


def test_batched_screenshots_are_not_returned_again(spool):
    _record(spool, "a", ts=1000.0)
    _record(spool, "b", ts=1010.0)
    repo = _repo(spool)
    shots = repo.fetch_unprocessed_screenshots(0, 10)

    batch_id = repo.save_batch_with_screenshots(1000.0, 1010.0, [s.id for s in shots])

    assert batch_id == 1
    assert repo.fetch_unprocessed_screenshots(0, 10) == []
    assert _repo(spool).fetch_unprocessed_screenshots(0, 10) == []


def test_batch_status_persists(spool):
    repo = _repo(spool)
    batch_id = repo.save_batch_with_screenshots(1.0, 2.0, ["x"])
    repo.update_batch_status(batch_id, "failed", "Server Error 500")

    reloaded = State(str(spool / STATE_FILE))
    assert reloaded.batch(batch_id)["status"] == "failed"
    assert reloaded.batch(batch_id)["error"] == "Server Error 500"
    assert _repo(spool).batches("failed").keys() == {str(batch_id)}
    assert repo.save_batch_with_screenshots(3.0, 4.0, ["y"]) == batch_id + 1


def test_interrupted_batches_are_failed_on_startup(spool):
    repo = _repo(spool)
    pending = repo.save_batch_with_screenshots(1.0, 2.0, ["a"])
    processing = repo.save_batch_with_screenshots(3.0, 4.0, ["b"])
    done = repo.save_batch_with_screenshots(5.0, 6.0, ["c"])
    repo.update_batch_status(processing, "processing")
    repo.update_batch_status(done, "analyzed")

    restarted = _repo(spool)
    assert restarted.fail_interrupted_batches() == [pending, processing]

    assert restarted.batches("failed").keys() == {str(pending), str(processing)}
    assert restarted.state.batch(processing)["error"] == INTERRUPTED_ERROR
    assert restarted.state.batch(done)["status"] == "analyzed"
    assert _repo(spool).fail_interrupted_batches() == []


def test_update_batch_status_validation(spool):
    repo = _repo(spool)
    batch_id = repo.save_batch_with_screenshots(1.0, 2.0, [])
    with pytest.raises(ValueError):
        repo.update_batch_status(batch_id, "done")
    with pytest.raises(KeyError):
        repo.update_batch_status(99, "analyzed")


def test_custom_state_path(spool, tmp_path):
    state_path = tmp_path / "state" / "worker.json"
    repo = _repo(spool, state_path=str(state_path))
    repo.save_batch_with_screenshots(1.0, 2.0, [])
    assert state_path.exists()
    assert not (spool / STATE_FILE).exists()


class RecordingSink:
    def __init__(self, fail=False):
        self.fail = fail
        self.pushed = []

    def push(self, ts, duration, obs):
        if self.fail:
            raise ConnectionError("aw-server down")
        self.pushed.append((ts, duration, obs))


def test_save_observation_pushes_to_sink(spool):
    sink = RecordingSink()
    repo = _repo(spool, sink=sink)

    repo.save_observation(1, 1000.0, 1060.0, "Editing code", "openai:gpt-4o-mini", "coding", '["a.py"]')

    (ts, duration, obs) = sink.pushed[0]
    assert ts.tzinfo == timezone.utc
    assert ts.timestamp() == 1000.0
    assert duration == timedelta(seconds=60)
    assert obs["entities"] == '["a.py"]'
    assert repo.observations(1)[0]["text"] == "Editing code"
    assert repo.observations(2) == []


def test_sink_failure_is_logged_not_raised(spool, caplog):
    repo = _repo(spool, sink=RecordingSink(fail=True))
    repo.save_observation(1, 1000.0, 1000.0, "x")
    assert "Failed to push AW event" in caplog.text
    assert len(repo.observations()) == 1


def test_window_switches_from_spool_records(spool):
    _record(spool, "a", ts=1000.0, app="Code", title="a.py - p - Visual Studio Code")
    _record(spool, "b", ts=1010.0, app="Code", title="a.py - p - Visual Studio Code")
    _record(spool, "c", ts=1020.0, app="Slack", title="general")
    _record(spool, "d", ts=5000.0, app="Spotify", title="")

    switches = _repo(spool).get_window_switch_events(1000.0, 2000.0, 1000)

    assert switches == [
        WindowSwitch(1000.0, "Code", "a.py - p - Visual Studio Code"),
        WindowSwitch(1020.0, "Slack", "general"),
    ]


def test_window_source_takes_precedence(spool):
    class Source:
        def get_switches(self, start_ts, end_ts, limit):
            return [WindowSwitch(start_ts, "firefox", "x - github.com")]

    switches = _repo(spool, window_source=Source()).get_window_switch_events(1.0, 2.0, 10)
    assert switches[0].to_app == "firefox"


def test_get_setting_delegates_to_config(spool):
    assert _repo(spool).get_setting("capture_interval_ms") == "2000"
