import threading

from exporter import MetricsCache


def test_starts_empty():
    assert MetricsCache().read() == ""


def test_read_returns_last_write():
    cache = MetricsCache()
    cache.write("first\n")
    cache.write("second\n")
    assert cache.read() == "second\n"


def test_concurrent_readers_never_see_partial_writes():
    cache = MetricsCache()
    payloads = [f"payload {i}\n" * 2000 for i in range(50)]
    allowed = set(payloads) | {""}
    bad_reads = []
    done = threading.Event()

    def writer():
        for _ in range(20):
            for payload in payloads:
                cache.write(payload)
        done.set()

    def reader():
        while not done.is_set():
            value = cache.read()
            if value not in allowed:
                bad_reads.append(value[:40])

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for t in readers:
        t.start()
    w = threading.Thread(target=writer)
    w.start()
    w.join()
    for t in readers:
        t.join()

    assert bad_reads == []
    assert cache.read() == payloads[-1]
