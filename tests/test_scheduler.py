import threading
from pathlib import Path

import pytest
import requests

from xbps_mirror.downloader import ChecksumMismatch, DownloadCancelled
from xbps_mirror.models import DownloadJob
from xbps_mirror.scheduler import DownloadScheduler


@pytest.fixture
def job():
    return DownloadJob("http://example.com/pkgA-1.0_1.x86_64.xbps", Path("/srv/mirror/pkgA-1.0_1.x86_64.xbps"))


def make_scheduler(mock_session, fetch, workers=2, cancel=None):
    return DownloadScheduler(mock_session, workers=workers, cancel=cancel, fetch=fetch)


def test_success_is_reported(mock_session, job):
    """The outcome of a finished download reaches the submitter's callback."""
    calls = []

    def fetch(j, session, cancel=None, pbar=None):
        calls.append((j, session))
        return 42

    results = []
    scheduler = make_scheduler(mock_session, fetch)
    result = scheduler.submit(job, results.append).result(timeout=5)
    scheduler.shutdown(wait=True)

    assert result.ok
    assert result.size == 42
    assert results == [result]
    assert calls == [(job, mock_session)]


@pytest.mark.parametrize("error", [
    ChecksumMismatch("/srv/mirror/f", b"\x01", b"\x02"),
    requests.exceptions.ConnectionError("refused"),
    OSError("No space left on device"),
])
def test_failure_is_reported(mock_session, job, error):
    def fetch(j, session, cancel=None, pbar=None):
        raise error

    results = []
    scheduler = make_scheduler(mock_session, fetch)
    result = scheduler.submit(job, results.append).result(timeout=5)
    scheduler.shutdown(wait=True)

    assert not result.ok
    assert result.error is error
    assert results == [result]


def test_cancelled_download_is_reported(mock_session, job):
    def fetch(j, session, cancel=None, pbar=None):
        raise DownloadCancelled("shutting down")

    results = []
    scheduler = make_scheduler(mock_session, fetch)
    scheduler.submit(job, results.append).result(timeout=5)
    scheduler.shutdown(wait=True)

    assert isinstance(results[0].error, DownloadCancelled)


def test_cancel_event_is_passed_to_fetch(mock_session, job):
    cancel = threading.Event()
    seen = []

    def fetch(j, session, cancel=None, pbar=None):
        seen.append(cancel)
        return 0

    scheduler = make_scheduler(mock_session, fetch, cancel=cancel)
    scheduler.submit(job, lambda r: None).result(timeout=5)
    scheduler.shutdown(wait=True)

    assert seen == [cancel]


def test_workers_bound_concurrency(mock_session):
    """No more downloads run at once than there are workers."""
    lock = threading.Lock()
    running = 0
    peak = 0
    release = threading.Event()

    def fetch(j, session, cancel=None, pbar=None):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        release.wait(timeout=5)
        with lock:
            running -= 1
        return 0

    scheduler = make_scheduler(mock_session, fetch, workers=2)
    futures = [
        scheduler.submit(DownloadJob(f"http://example.com/{i}", Path(f"/srv/mirror/{i}")), lambda r: None)
        for i in range(6)
    ]
    release.set()
    for future in futures:
        future.result(timeout=5)
    scheduler.shutdown(wait=True)

    assert 1 <= peak <= 2


def test_shutdown_drops_queued_jobs(mock_session):
    started = threading.Event()
    release = threading.Event()
    fetched = []

    def fetch(j, session, cancel=None, pbar=None):
        fetched.append(j)
        started.set()
        release.wait(timeout=5)
        return 0

    scheduler = make_scheduler(mock_session, fetch, workers=1)
    first = scheduler.submit(DownloadJob("http://example.com/a", Path("/srv/mirror/a")), lambda r: None)
    queued = scheduler.submit(DownloadJob("http://example.com/b", Path("/srv/mirror/b")), lambda r: None)
    assert started.wait(timeout=5)

    scheduler.shutdown(wait=False)
    release.set()

    assert first.result(timeout=5).ok
    assert queued.cancelled()
    assert [j.filename for j in fetched] == ["a"]
