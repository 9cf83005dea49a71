import threading

from localization_ab.stats import AtomicCounter, LatencyRecorder, percentile, summarize

SAMPLES = [10, 20, 30, 40, 50]


def test_nearest_rank_percentiles():
    assert percentile(SAMPLES, 0.50) == 30
    assert percentile(SAMPLES, 0.90) == 50
    assert percentile(SAMPLES, 0.99) == 50  # clamped to last index


def test_percentile_of_nothing_is_zero():
    assert percentile([], 0.5) == 0


def test_summarize_sorts_first():
    s = summarize([50, 10, 40, 20, 30])
    assert (s.count, s.minimum, s.maximum, s.mean) == (5, 10, 50, 30)
    assert (s.p50, s.p90, s.p99) == (30, 50, 50)


def test_summarize_empty():
    s = summarize([])
    assert s.count == 0 and s.p99 == 0


def test_counter_and_recorder_under_contention():
    counter = AtomicCounter()
    recorder = LatencyRecorder()

    def hammer():
        for i in range(1_000):
            counter.add()
            recorder.append(float(i))

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counter.value == 8_000
    assert len(recorder) == 8_000


def test_snapshot_is_a_copy():
    recorder = LatencyRecorder()
    recorder.append(1.0)
    snap = recorder.snapshot()
    snap.append(2.0)
    assert recorder.snapshot() == [1.0]
