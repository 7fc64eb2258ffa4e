import pytest

from wakatv.infra import timings


@pytest.fixture(autouse=True)
def clean_timings():
    timings.reset()
    yield
    timings.reset()


def test_snapshot_aggregates_per_kind():
    for v in (0.001, 0.003):
        timings.record_timing("b.kind", v)
    timings.record_timing("a.kind", 0.002)

    snap = timings.snapshot()

    assert [s["kind"] for s in snap] == ["a.kind", "b.kind"]
    a, b = snap
    assert a["n"] == 1 and a["std_ms"] == 0.0
    assert b["n"] == 2
    assert b["mean_ms"] == pytest.approx(2.0)
    assert b["max_ms"] == pytest.approx(3.0)
    assert b["std_ms"] == pytest.approx(1.4142, rel=1e-3)


async def test_timeit_records_even_on_error():
    with pytest.raises(RuntimeError):
        async with timings.timeit("boom"):
            raise RuntimeError("x")
    async with timings.timeit("ok"):
        pass
    assert {s["kind"] for s in timings.snapshot()} == {"boom", "ok"}


def test_reset_clears_everything():
    timings.record_timing("x", 1.0)
    timings.reset()
    assert timings.snapshot() == []


def test_samples_per_kind_are_bounded(monkeypatch):
    monkeypatch.setattr(timings, "WINDOW", 3)
    for v in (0.010, 0.020, 0.001, 0.002, 0.003):
        timings.record_timing("claim", v)

    (snap,) = timings.snapshot()
    assert snap["n"] == 3
    assert snap["total"] == 5
    # the two oldest samples were dropped
    assert snap["max_ms"] == pytest.approx(3.0)
    assert len(timings._samples["claim"]) == 3
