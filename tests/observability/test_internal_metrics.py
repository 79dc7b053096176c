import threading

from bookinggate.observability.internal_metrics import incr, reset, snapshot


def test_counters_accumulate_and_reset():
    reset()
    incr("decisions_total")
    incr("decisions_total", value=2)
    incr("decisions_block")
    assert snapshot() == {"decisions_total": 3, "decisions_block": 1}

    reset()
    assert snapshot() == {}


def test_counters_are_thread_safe():
    reset()

    def _bump():
        for _ in range(500):
            incr("decisions_total")

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert snapshot()["decisions_total"] == 2000
