import enum
import logging
import os

import requests

from . import metrics
from .config import RepositoryConfig
from .downloader import remove_tempfile, send_request, set_mtime, stream_to_tempfile
from .models import IndexDiff, IndexSnapshot, Validators
from .repodata import DecodeError, decode_repodata, read_repodata

logger = logging.getLogger(__name__)


class IndexKind(enum.Enum):
    STABLE = "repodata"
    STAGED = "stagedata"


class IndexSource:
    """
    Keeps the local copy of one remote index ({arch}-repodata or {arch}-stagedata)
    in sync with upstream.

    The in-memory snapshot and the cached file on disk are only ever replaced
    together, after the new blob has been fully downloaded and decoded.
    """

    def __init__(self, kind: IndexKind, config: RepositoryConfig, session: requests.Session):
        self.kind = kind
        self.config = config
        self.session = session
        self.snapshot: IndexSnapshot | None = None
        self.validators = Validators()

    @property
    def filename(self) -> str:
        return f"{self.config.architecture}-{self.kind.value}"

    @property
    def url(self) -> str:
        return self.config.url_for(self.filename)

    @property
    def path(self):
        return self.config.path_for(self.filename)

    def load(self) -> IndexSnapshot | None:
        """Loads the cached index left by a previous run, if any."""
        try:
            self.snapshot = read_repodata(self.path)
        except DecodeError as e:
            logger.error(f"Invalid cached {self.kind.value} {self.path}: {e}. Discarding it.")
            try:
                self.path.unlink()
            except OSError as unlink_err:
                logger.error(f"Could not delete invalid {self.kind.value} {self.path}: {unlink_err}")
            self.snapshot = None
        if self.snapshot is not None:
            logger.info(f"Loaded {len(self.snapshot)} packages from {self.path}")
        return self.snapshot

    def update(self, cancel=None) -> IndexDiff | None:
        """
        Polls upstream once. Returns the changes against the previous snapshot,
        or None when there is nothing to apply. Transport errors propagate.
        """
        try:
            response = send_request(self.url, self.session, headers=self.validators.request_headers(), cancel=cancel)
        except Exception:
            metrics.INDEX_UPDATES.labels(index=self.kind.value, result="error").inc()
            raise
        try:
            status = response.status_code
            if status == 304:
                logger.debug(f"Not modified: {self.url}")
                result, diff = "not_modified", None
            elif status == 200:
                diff = self._replace(response, cancel)
                result = "modified" if diff is not None else "invalid"
            elif status == 404:
                result, diff = "not_found", self._not_found()
            else:
                logger.warning(f"Unexpected status code {status} for {self.url}")
                result, diff = "unexpected", None
        except Exception:
            metrics.INDEX_UPDATES.labels(index=self.kind.value, result="error").inc()
            raise
        finally:
            response.close()
        metrics.INDEX_UPDATES.labels(index=self.kind.value, result=result).inc()
        return diff

    def _replace(self, response: requests.Response, cancel) -> IndexDiff | None:
        tmp_path, size = stream_to_tempfile(response, self.config.destination, self.filename, cancel=cancel)
        try:
            snapshot = decode_repodata(tmp_path.read_bytes())
        except DecodeError as e:
            # A corrupt blob is a hiccup: keep serving the previous index and retry next tick
            logger.error(f"Invalid {self.kind.value} from {self.url}: {e}. Keeping the previous index.")
            remove_tempfile(tmp_path)
            return None
        except BaseException:
            remove_tempfile(tmp_path)
            raise

        diff = (self.snapshot or IndexSnapshot()).diff(snapshot)
        try:
            set_mtime(tmp_path, response)
            os.replace(tmp_path, self.path)
        except BaseException:
            remove_tempfile(tmp_path)
            raise
        self.snapshot = snapshot
        self.validators.update_from(response)
        logger.info(f"Updated {self.path} ({size} bytes, {len(snapshot)} packages): "
                    f"{len(diff.added)} added, {len(diff.deleted)} deleted")
        return diff

    def _not_found(self) -> IndexDiff | None:
        if self.kind is IndexKind.STABLE:
            # the stable index is never expected to vanish, keep what we have
            logger.error(f"{self.kind.value} not found: {self.url}")
            return None
        if self.snapshot is None:
            return None
        # Staged packages disappear all at once
        previous = self.snapshot
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self.snapshot = None
        self.validators.clear()
        logger.info(f"{self.kind.value} gone upstream, dropped {len(previous)} staged packages")
        return previous.diff(IndexSnapshot())
