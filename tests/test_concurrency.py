import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from ephemera.core.exceptions import LimitReached


def _race(engine, file_id, attempts):
    barrier = threading.Barrier(attempts)

    def _attempt():
        barrier.wait()
        try:
            handle = engine.open_download(file_id)
        except LimitReached:
            return "refused"
        b"".join(handle.iter_chunks())
        return "served"

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        return [future.result() for future in [pool.submit(_attempt) for _ in range(attempts)]]


@pytest.mark.parametrize("limit, attempts", [(1, 5), (2, 8), (3, 3), (1, 12)])
def test_parallel_downloads_never_exceed_limit(make_engine, repository, limit, attempts):
    engine = make_engine()
    record = engine.upload(
        [b"shared payload"],
        filename="shared.bin",
        mime="application/octet-stream",
        owner_id="o",
        max_downloads=str(limit),
    )

    outcomes = _race(engine, record.id, attempts)

    assert outcomes.count("served") == min(limit, attempts)
    assert outcomes.count("refused") == attempts - min(limit, attempts)
    assert repository.get_by_id(record.id).download_count == min(limit, attempts)


def test_guarded_increment_is_atomic(repository, make_engine):
    engine = make_engine()
    record = engine.upload(
        [b"x"], filename="x", mime="text/plain", owner_id="o", max_downloads="4"
    )
    barrier = threading.Barrier(10)

    def _claim():
        barrier.wait()
        return repository.increment_download_count(record.id)

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: _claim(), range(10)))

    assert results.count(True) == 4
    assert repository.get_by_id(record.id).download_count == 4


def test_unlimited_file_counts_every_download(make_engine, repository):
    engine = make_engine()
    record = engine.upload([b"x"], filename="x", mime="text/plain", owner_id="o")

    outcomes = _race(engine, record.id, 6)

    assert outcomes == ["served"] * 6
    assert repository.get_by_id(record.id).download_count == 6
