import enum
import logging
import queue
import threading
import time
from datetime import datetime, timezone

import requests

from . import metrics
from .config import RepositoryConfig
from .downloader import DownloadCancelled
from .index import IndexKind, IndexSource
from .models import DownloadJob, DownloadResult, IndexDiff, PackageRecord
from .scheduler import DownloadScheduler

logger = logging.getLogger(__name__)

_STOP = object() # posted to the result queue to end the run loop


class EngineState(enum.Enum):
    IDLE = "idle"
    UPDATING = "updating"
    STOPPED = "stopped"


class RepositoryEngine:
    """
    Mirrors one upstream repository into one local directory.

    All engine state (both index snapshots, their validators, the obsolete set and
    the set of in-flight downloads) belongs to the thread running `run()`. Download
    workers never touch it; they post a DownloadResult to `results` instead.
    """

    def __init__(self, config: RepositoryConfig, scheduler: DownloadScheduler,
                 session: requests.Session, cancel: threading.Event | None = None):
        self.config = config
        self.scheduler = scheduler
        self.cancel = cancel if cancel is not None else threading.Event()
        self.stable = IndexSource(IndexKind.STABLE, config, session)
        self.staged = IndexSource(IndexKind.STAGED, config, session)
        self.obsolete: dict[str, datetime] = {}
        self.inflight: dict = {} # destination path -> DownloadJob
        self.results: queue.Queue = queue.Queue()
        self.state = EngineState.IDLE

        config.destination.mkdir(parents=True, exist_ok=True)
        self.stable.load()
        self.staged.load()

    @property
    def name(self) -> str:
        return f"{self.config.architecture}@{self.config.destination}"

    # --- Download submission ---

    def queue(self, job: DownloadJob) -> bool:
        """Hands a job to the scheduler unless the same file is already being downloaded."""
        if job.destination in self.inflight:
            logger.debug(f"Already downloading {job.destination}, not queueing it again")
            return False
        self.inflight[job.destination] = job
        self.scheduler.submit(job, self.results.put)
        return True

    def _job(self, filename: str, sha256: bytes = b"") -> DownloadJob:
        return DownloadJob(
            url=self.config.url_for(filename),
            destination=self.config.path_for(filename),
            sha256=sha256,
        )

    def queue_package(self, record: PackageRecord) -> None:
        """Queues the package artifact and its signature."""
        self.queue(self._job(record.filename, record.sha256))
        self.queue(self._job(record.signature_filename))

    def reconcile(self) -> int:
        """
        Queues every file of the stable index that is missing on disk, so that a
        mirror left incomplete by an earlier crash catches up. Returns the number of
        jobs queued.
        """
        snapshot = self.stable.snapshot or {}
        queued = 0
        for name in sorted(snapshot):
            record = snapshot[name]
            for filename, sha256 in ((record.filename, record.sha256), (record.signature_filename, b"")):
                if not self.config.path_for(filename).exists():
                    if self.queue(self._job(filename, sha256)):
                        queued += 1
        logger.info(f"[{self.name}] Reconciliation queued {queued} missing files "
                    f"for {len(snapshot)} packages")
        return queued

    # --- Obsolete bookkeeping ---

    def _mark_obsolete(self, record: PackageRecord, now: datetime) -> None:
        self.obsolete[record.filename] = now
        self.obsolete[record.signature_filename] = now
        logger.debug(f"[{self.name}] Marked {record.filename} obsolete")

    def _unmark_obsolete(self, record: PackageRecord) -> None:
        self.obsolete.pop(record.filename, None)
        self.obsolete.pop(record.signature_filename, None)

    # --- Update cycle ---

    def apply_staged(self, diff: IndexDiff) -> None:
        for record in diff.added:
            self.queue_package(record)
        now = datetime.now(timezone.utc)
        for record in diff.deleted:
            self._mark_obsolete(record, now)

    def apply_stable(self, diff: IndexDiff) -> None:
        for record in diff.added:
            self.queue_package(record)
            # packages may have been removed from stage and marked obsolete, undo that
            self._unmark_obsolete(record)
        now = datetime.now(timezone.utc)
        for record in diff.deleted:
            self._mark_obsolete(record, now)

    def update(self) -> None:
        """
        Runs one update cycle. The staged diff is applied before the stable one so
        that a package promoted from staged to stable ends the cycle not obsolete.
        Index errors propagate and abort the cycle.
        """
        self.state = EngineState.UPDATING
        try:
            stable_diff = self.stable.update(self.cancel)
            staged_diff = self.staged.update(self.cancel)
            if staged_diff:
                self.apply_staged(staged_diff)
            if stable_diff:
                self.apply_stable(stable_diff)
        finally:
            self.state = EngineState.IDLE
        metrics.OBSOLETE_FILES.labels(
            destination=str(self.config.destination),
            architecture=self.config.architecture,
        ).set(len(self.obsolete))

    def handle_result(self, result: DownloadResult) -> None:
        if self.inflight.get(result.job.destination) is result.job:
            del self.inflight[result.job.destination]
        if not result.ok:
            # No requeue: the file stays missing until a later diff or restart schedules it
            logger.warning(f"[{self.name}] {result.job.filename} not mirrored: {result.error}")

    # --- Main loop ---

    def run(self) -> None:
        """
        Reconciles, updates, then keeps updating every `interval` seconds until
        stopped. A single blocking wait on the result queue serves download
        results, ticks (the wait's timeout) and stop requests alike.
        """
        interval = self.config.interval
        logger.info(f"[{self.name}] Mirroring {self.config.upstream} every {interval:g}s")
        try:
            self.reconcile()
            self.update()
            next_tick = time.monotonic() + interval
            while True:
                timeout = next_tick - time.monotonic()
                if timeout > 0:
                    try:
                        message = self.results.get(timeout=timeout)
                    except queue.Empty:
                        continue
                    if message is _STOP:
                        break
                    self.handle_result(message)
                    continue
                # Only reached with an empty queue, so no result is skipped
                if self.cancel.is_set():
                    break
                self.update()
                # Ticks missed while updating are dropped
                now = time.monotonic()
                while next_tick <= now:
                    next_tick += interval
        except DownloadCancelled:
            logger.debug(f"[{self.name}] Update interrupted by shutdown")
        finally:
            self._drain()
            self.state = EngineState.STOPPED
        logger.info(f"[{self.name}] Stopped")

    def _drain(self) -> None:
        """Handles every result already delivered, so none is left in flight on exit."""
        while True:
            try:
                message = self.results.get_nowait()
            except queue.Empty:
                return
            if message is not _STOP:
                self.handle_result(message)

    def stop(self) -> None:
        """Requests `run()` to return. Safe to call from any thread."""
        self.cancel.set()
        self.results.put(_STOP)
