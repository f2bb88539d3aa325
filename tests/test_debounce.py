import asyncio

import pytest

from livepreview.debounce import DebounceAggregator, Debouncer, State
from livepreview.watcher import ChangeEvent, ChangeKind, WatchTarget

from .helpers import _event

QUIET = 0.3


@pytest.fixture()
def target(tmp_path):
    return WatchTarget.build(tmp_path, [".typ", ".png", ".bib"], ignored=[tmp_path / "out.png"])


def test_burst_within_quiet_period_emits_one_signal(target, tmp_path):
    deb = Debouncer(target, QUIET)
    doc = tmp_path / "doc.typ"
    # Three saves within 200ms
    for t in (0.0, 0.1, 0.2):
        assert deb.observe(_event(doc, at=t), t)
    assert deb.state is State.ARMED
    assert not deb.due(0.49)
    assert deb.due(0.51)
    assert deb.begin_flush() == 1
    assert deb.state is State.FLUSHING
    assert not deb.dirty
    deb.end_flush(0.6)
    assert deb.state is State.IDLE
    assert not deb.due(10.0)
    assert deb.signals == 1


def test_each_relevant_event_restarts_the_timer(target, tmp_path):
    deb = Debouncer(target, QUIET)
    deb.observe(_event(tmp_path / "doc.typ"), 0.0)
    assert deb.time_left(0.1) == pytest.approx(0.2)
    deb.observe(_event(tmp_path / "refs.bib"), 0.25)
    assert not deb.due(0.3)
    assert deb.time_left(0.3) == pytest.approx(0.25)
    assert deb.due(0.56)


def test_irrelevant_events_never_arm(target, tmp_path):
    deb = Debouncer(target, QUIET)
    for name in ("doc.pdf", "notes.log", "Makefile", ".doc.typ.swp"):
        assert not deb.observe(_event(tmp_path / name), 0.0)
    assert deb.state is State.IDLE
    assert deb.time_left(0.0) is None
    assert not deb.due(100.0)
    assert deb.signals == 0


def test_ignored_output_path_is_not_relevant(target, tmp_path):
    deb = Debouncer(target, QUIET)
    assert not deb.observe(_event(tmp_path / "out.png"), 0.0)
    assert deb.observe(_event(tmp_path / "figure.png"), 0.0)


def test_extension_match_is_case_insensitive(target, tmp_path):
    deb = Debouncer(target, QUIET)
    assert deb.observe(_event(tmp_path / "FIGURE.PNG"), 0.0)


def test_overflow_marker_counts_as_relevant(target, tmp_path):
    deb = Debouncer(target, QUIET)
    assert deb.observe(ChangeEvent.overflow_marker(tmp_path), 0.0)
    assert deb.state is State.ARMED


def test_change_during_flush_schedules_exactly_one_follow_up(target, tmp_path):
    deb = Debouncer(target, QUIET)
    doc = tmp_path / "doc.typ"
    deb.observe(_event(doc), 0.0)
    assert deb.due(0.3)
    deb.begin_flush()
    # Several saves land while the compile is still running.
    for t in (0.4, 0.5, 0.6):
        assert deb.observe(_event(doc), t)
        assert deb.state is State.FLUSHING
        assert not deb.due(t)
    deb.end_flush(2.0)
    assert deb.state is State.ARMED
    # The burst went quiet long ago: the follow-up is due immediately.
    assert deb.due(2.0)
    assert deb.begin_flush() == 2
    deb.end_flush(3.0)
    assert deb.state is State.IDLE
    assert deb.signals == 2


def test_follow_up_still_waits_for_quiet_period(target, tmp_path):
    deb = Debouncer(target, QUIET)
    doc = tmp_path / "doc.typ"
    deb.observe(_event(doc), 0.0)
    deb.begin_flush()
    deb.observe(_event(doc), 0.9)
    deb.end_flush(1.0)
    assert not deb.due(1.0)
    assert deb.due(1.21)


def test_no_follow_up_without_new_changes(target, tmp_path):
    deb = Debouncer(target, QUIET)
    deb.observe(_event(tmp_path / "doc.typ"), 0.0)
    deb.begin_flush()
    deb.observe(_event(tmp_path / "doc.pdf"), 0.1)
    deb.end_flush(0.5)
    assert deb.state is State.IDLE
    assert deb.signals == 1


def test_flush_transitions_are_guarded(target):
    deb = Debouncer(target, QUIET)
    with pytest.raises(RuntimeError):
        deb.begin_flush()
    with pytest.raises(RuntimeError):
        deb.end_flush(0.0)


def _run_aggregator(target, scenario, *, quiet=0.1):
    async def main():
        queue = asyncio.Queue()
        calls = {"n": 0}
        gate = asyncio.Event()
        gate.set()
        started = asyncio.Event()

        async def flush():
            calls["n"] += 1
            started.set()
            await gate.wait()

        agg = DebounceAggregator(target, queue, flush, quiet=quiet)
        agg.start()
        try:
            await scenario(queue, calls, gate, started, agg)
        finally:
            await agg.stop()
        return calls["n"], agg

    return asyncio.run(main())


def test_aggregator_coalesces_burst(target, tmp_path):
    doc = tmp_path / "doc.typ"

    async def scenario(queue, calls, gate, started, agg):
        for _ in range(3):
            queue.put_nowait(_event(doc))
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.4)

    n, agg = _run_aggregator(target, scenario)
    assert n == 1
    assert agg.signals == 1


def test_aggregator_drops_irrelevant_events(target, tmp_path):
    async def scenario(queue, calls, gate, started, agg):
        for name in ("doc.pdf", "build.log", "tmp.aux"):
            queue.put_nowait(_event(tmp_path / name, ChangeKind.CREATED))
        await asyncio.sleep(0.3)

    n, agg = _run_aggregator(target, scenario)
    assert n == 0
    assert agg.state is State.IDLE


def test_aggregator_defers_changes_during_slow_flush(target, tmp_path):
    doc = tmp_path / "doc.typ"

    async def scenario(queue, calls, gate, started, agg):
        gate.clear()
        queue.put_nowait(_event(doc))
        await asyncio.wait_for(started.wait(), timeout=2)
        for _ in range(5):
            queue.put_nowait(_event(doc))
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.3)
        # Still consuming events, but no second flush while the first runs.
        assert queue.empty()
        assert calls["n"] == 1
        assert agg.state is State.FLUSHING
        gate.set()
        await asyncio.sleep(0.4)
        assert calls["n"] == 2
        await asyncio.sleep(0.3)

    n, agg = _run_aggregator(target, scenario)
    assert n == 2
    assert agg.state is State.IDLE


def test_aggregator_survives_failing_flush(target, tmp_path):
    doc = tmp_path / "doc.typ"

    async def main():
        queue = asyncio.Queue()
        calls = []

        async def flush():
            calls.append(1)
            raise RuntimeError("compiler exploded")

        agg = DebounceAggregator(target, queue, flush, quiet=0.05)
        agg.start()
        queue.put_nowait(_event(doc))
        await asyncio.sleep(0.3)
        queue.put_nowait(_event(doc))
        await asyncio.sleep(0.3)
        await agg.stop()
        return len(calls), agg.state

    n, state = asyncio.run(main())
    assert n == 2
    assert state is State.IDLE
