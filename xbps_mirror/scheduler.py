import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

import requests
from tqdm import tqdm

from . import metrics
from .config import MAX_WORKERS
from .downloader import DownloadCancelled, fetch_file
from .models import DownloadJob, DownloadResult

logger = logging.getLogger(__name__)


class DownloadScheduler:
    """
    A fixed pool of download workers shared by every repository.

    Submitting never blocks: jobs wait in the executor's unbounded queue until a
    worker is free. A worker runs one download to completion, then reports the
    outcome through the callback given at submission time.
    """

    def __init__(self, session: requests.Session, workers: int = MAX_WORKERS, cancel=None,
                 pbar: tqdm = None, fetch: Callable = fetch_file):
        self.session = session
        self.workers = workers
        self.cancel = cancel
        self.pbar = pbar
        self._fetch = fetch
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Download")
        metrics.WORKERS.set(workers)

    def submit(self, job: DownloadJob, on_done: Callable[[DownloadResult], None]) -> Future:
        metrics.QUEUE_DEPTH.inc()
        return self._executor.submit(self._run, job, on_done)

    def _run(self, job: DownloadJob, on_done: Callable[[DownloadResult], None]) -> DownloadResult:
        metrics.QUEUE_DEPTH.dec()
        try:
            size = self._fetch(job, self.session, cancel=self.cancel, pbar=self.pbar)
        except DownloadCancelled as e:
            logger.debug(f"Download cancelled: {job.url}")
            metrics.DOWNLOADS.labels(result="cancelled").inc()
            result = DownloadResult(job, error=e)
        except Exception as e:
            logger.warning(f"Download failed: {job.url}: {e}")
            metrics.DOWNLOADS.labels(result="failure").inc()
            result = DownloadResult(job, error=e)
        else:
            logger.info(f"Download finished: {job.url} ({size} bytes)")
            metrics.DOWNLOADS.labels(result="success").inc()
            result = DownloadResult(job, size=size)
        on_done(result)
        return result

    def shutdown(self, wait: bool = False) -> None:
        """Stops the pool. Queued jobs are dropped, running ones are not waited for unless asked."""
        self._executor.shutdown(wait=wait, cancel_futures=True)
        metrics.QUEUE_DEPTH.set(0)
        metrics.WORKERS.set(0)
