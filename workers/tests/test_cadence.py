from atlas_worker.core.config import Settings
from atlas_worker.jobs.cadence import build_schedule, is_due, next_backoff


def test_build_schedule_follows_data_flow_order() -> None:
    steps = build_schedule(Settings(crawl_batch_size=5, dedupe_interval_seconds=120))

    assert [step.name for step in steps] == ["resolve", "promote", "reap", "refresh", "crawl", "normalize", "dedupe"]
    crawl = next(step for step in steps if step.name == "crawl")
    reap = next(step for step in steps if step.name == "reap")
    dedupe = next(step for step in steps if step.name == "dedupe")
    assert crawl.limit == 5
    assert reap.limit == 100
    assert dedupe.limit is None
    assert dedupe.interval_seconds == 120


def test_is_due() -> None:
    assert is_due(None, now=10.0, interval_seconds=60)
    assert not is_due(100.0, now=159.0, interval_seconds=60)
    assert is_due(100.0, now=160.0, interval_seconds=60)


def test_next_backoff_doubles_from_base_and_caps() -> None:
    assert next_backoff(5.0, base_seconds=5.0, max_seconds=300.0, jitter=0.0) == 10.0
    assert next_backoff(1.0, base_seconds=5.0, max_seconds=300.0, jitter=0.0) == 10.0
    assert next_backoff(200.0, base_seconds=5.0, max_seconds=300.0, jitter=0.5) == 300.0


def test_next_backoff_random_jitter_stays_in_range() -> None:
    for _ in range(20):
        value = next_backoff(10.0, base_seconds=5.0, max_seconds=300.0)
        assert 20.0 <= value <= 25.0
