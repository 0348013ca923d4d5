"""Tests for time- and event-based screenshot batching."""

import random

import pytest

from awbatch.analysis.batching import (
    BatchingConfig,
    Screenshot,
    WindowSwitch,
    batching_config_for,
    create_event_batches,
    create_time_batches,
    split_into_chunks,
)


def _shots(*times):
    return [Screenshot(id=f"s{i}", captured_at=t, file_path=f"/tmp/{i}.png") for i, t in enumerate(times)]


def _times(batch):
    return [s.captured_at for s in batch.screenshots]


# ---------------------------------------------------------------------------
# batching_config_for
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "interval, gap",
    [
        ("5000", 120),
        ("60000", 180),
        (90000, 270),
        ("abc", 120),
        (None, 120),
    ],
)
def test_max_gap_follows_capture_interval(interval, gap):
    assert batching_config_for(interval).max_gap == gap


def test_config_passes_durations_through():
    cfg = batching_config_for("1000", target_duration=60, min_batch_duration=5, max_batch_duration=300)
    assert cfg.target_duration == 60
    assert cfg.min_batch_duration == 5
    assert cfg.max_batch_duration == 300


# ---------------------------------------------------------------------------
# create_time_batches
# ---------------------------------------------------------------------------


def test_time_batches_split_on_idle_gap():
    shots = _shots(1000, 1010, 1020, 1300, 1310)
    batches = create_time_batches(shots, BatchingConfig(), now=2000)

    assert [_times(b) for b in batches] == [[1000, 1010, 1020], [1300, 1310]]
    assert batches[0].start == 1000
    assert batches[0].end == 1020
    assert batches[0].duration == 20


def test_time_batches_split_on_target_duration():
    shots = _shots(*range(0, 140, 10))
    cfg = BatchingConfig(target_duration=60)
    batches = create_time_batches(shots, cfg, now=10_000)

    assert [len(b.screenshots) for b in batches] == [7, 7]
    assert batches[1].start == 70


def test_short_recent_trailing_bucket_is_held_back():
    shots = _shots(1000, 1005)
    assert create_time_batches(shots, BatchingConfig(), now=1010) == []


def test_short_stale_trailing_bucket_is_flushed():
    shots = _shots(1000, 1005)
    batches = create_time_batches(shots, BatchingConfig(), now=1200)
    assert [_times(b) for b in batches] == [[1000, 1005]]


def test_input_order_and_bad_timestamps():
    shots = _shots(1020, float("nan"), 1000, 1010)
    batches = create_time_batches(shots, BatchingConfig(), now=5000)
    assert [_times(b) for b in batches] == [[1000, 1010, 1020]]


def test_empty_input():
    assert create_time_batches([], BatchingConfig()) == []
    assert create_event_batches([], [], BatchingConfig()) == []


# ---------------------------------------------------------------------------
# create_event_batches
# ---------------------------------------------------------------------------


def test_event_batches_split_on_context_change():
    shots = _shots(1000, 1010, 1020, 1030, 1040, 1050)
    switches = [
        WindowSwitch(1000, "Code", "main.py - proj - Visual Studio Code"),
        WindowSwitch(1030, "Google Chrome", "Issues - github.com - Google Chrome"),
    ]
    batches = create_event_batches(shots, switches, BatchingConfig(), now=5000)

    assert [_times(b) for b in batches] == [[1000, 1010, 1020], [1030, 1040, 1050]]
    assert batches[0].context.project == "proj"
    assert batches[1].context.domain == "github.com"


def test_same_context_switches_do_not_split():
    shots = _shots(1000, 1010, 1020, 1030)
    switches = [
        WindowSwitch(1000, "Code", "a.py - proj - Visual Studio Code"),
        WindowSwitch(1015, "Code", "b.py - proj - Visual Studio Code"),
    ]
    batches = create_event_batches(shots, switches, BatchingConfig(), now=5000)
    assert [_times(b) for b in batches] == [[1000, 1010, 1020, 1030]]


def test_screenshots_before_first_switch_share_a_batch():
    shots = _shots(980, 990, 1000, 1010, 1020)
    switches = [WindowSwitch(995, "Slack", "general")]
    batches = create_event_batches(shots, switches, BatchingConfig(), now=5000)

    assert [_times(b) for b in batches] == [[980, 990], [1000, 1010, 1020]]
    assert batches[0].context is None
    assert batches[1].context.app == "Slack"


def test_event_batches_respect_hard_cap():
    shots = _shots(*range(1000, 1140, 10))
    switches = [WindowSwitch(1000, "Slack", "general")]
    cfg = BatchingConfig(max_batch_duration=60)
    batches = create_event_batches(shots, switches, cfg, now=10_000)

    assert [len(b.screenshots) for b in batches] == [7, 7]
    assert all(b.duration <= 60 for b in batches)


def test_event_batches_split_on_idle_gap():
    shots = _shots(1000, 1010, 1500, 1510)
    switches = [WindowSwitch(1000, "Slack", "general")]
    batches = create_event_batches(shots, switches, BatchingConfig(), now=5000)
    assert [_times(b) for b in batches] == [[1000, 1010], [1500, 1510]]


def test_without_switches_falls_back_to_time_batches():
    shots = _shots(1000, 1010, 1020, 1300, 1310)
    cfg = BatchingConfig()
    assert create_event_batches(shots, [], cfg, now=2000) == create_time_batches(shots, cfg, now=2000)


# ---------------------------------------------------------------------------
# duplicate timestamps and partition properties
# ---------------------------------------------------------------------------


def test_duplicate_timestamps_keep_input_order():
    shots = _shots(1000, 1000, 1010)
    switches = [WindowSwitch(1000, "Slack", "general")]

    (by_time,) = create_time_batches(shots, BatchingConfig(), now=5000)
    (by_event,) = create_event_batches(shots, switches, BatchingConfig(), now=5000)

    assert [s.id for s in by_time.screenshots] == ["s0", "s1", "s2"]
    assert [s.id for s in by_event.screenshots] == ["s0", "s1", "s2"]


def test_duplicate_timestamps_on_a_switch_stay_together():
    shots = _shots(1000, 1030, 1030, 1040)
    switches = [WindowSwitch(1000, "Slack", "general"), WindowSwitch(1030, "Spotify", "")]
    batches = create_event_batches(shots, switches, BatchingConfig(), now=5000)
    assert [[s.id for s in b.screenshots] for b in batches] == [["s0"], ["s1", "s2", "s3"]]


_WINDOWS = [
    ("Code", "a.py - proj - Visual Studio Code"),
    ("Code", "b.py - other - Visual Studio Code"),
    ("Google Chrome", "Issues - github.com - Google Chrome"),
    ("Slack", "general"),
    ("Spotify", ""),
]


def _random_input(seed):
    rng = random.Random(seed)
    times, t = [], 1000
    for _ in range(rng.randint(1, 60)):
        t += rng.choice([0, 5, 10, 30, 200])
        times.append(t)
    rng.shuffle(times)
    switches = [
        WindowSwitch(rng.randint(900, t), *rng.choice(_WINDOWS)) for _ in range(rng.randint(0, 8))
    ]
    now = max(times) + rng.choice([0, 60, 1000])
    return _shots(*times), switches, now


def _check_partition(shots, batches):
    ordered = sorted(shots, key=lambda s: s.captured_at)
    batched = [s for b in batches for s in b.screenshots]

    assert len({s.id for s in batched}) == len(batched)
    assert batched == ordered[: len(batched)]
    for b in batches:
        assert b.screenshots
        assert b.start == b.screenshots[0].captured_at
        assert b.end == b.screenshots[-1].captured_at
        assert all(b.start <= s.captured_at <= b.end for s in b.screenshots)
    for prev, nxt in zip(batches, batches[1:]):
        assert prev.end <= nxt.start


@pytest.mark.parametrize("seed", range(25))
def test_time_batches_partition_sorted_input(seed):
    shots, _, now = _random_input(seed)
    cfg = BatchingConfig(target_duration=120)
    batches = create_time_batches(shots, cfg, now=now)

    _check_partition(shots, batches)
    for b in batches:
        assert b.duration <= cfg.target_duration
        gaps = [y.captured_at - x.captured_at for x, y in zip(b.screenshots, b.screenshots[1:])]
        assert all(g <= cfg.max_gap for g in gaps)


@pytest.mark.parametrize("seed", range(25))
def test_event_batches_partition_sorted_input(seed):
    shots, switches, now = _random_input(seed)
    cfg = BatchingConfig(max_batch_duration=120)
    batches = create_event_batches(shots, switches, cfg, now=now)

    _check_partition(shots, batches)
    assert all(b.duration <= cfg.max_batch_duration for b in batches)


# ---------------------------------------------------------------------------
# split_into_chunks
# ---------------------------------------------------------------------------


def test_split_into_chunks():
    assert split_into_chunks([1, 2, 3, 4, 5, 6, 7], 2) == [[1, 2], [3, 4], [5, 6], [7]]
    assert split_into_chunks([1, 2], 15) == [[1, 2]]
    assert split_into_chunks([], 3) == []


def test_split_into_chunks_rejects_zero():
    with pytest.raises(ValueError):
        split_into_chunks([1], 0)
