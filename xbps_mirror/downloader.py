import hashlib
import logging
import os
import tempfile
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter
from tqdm import tqdm

from . import metrics
from .models import DownloadJob
from .config import MAX_RETRIES, MAX_WORKERS, RETRY_DELAY, CHUNK_SIZE, CONNECT_TIMEOUT, READ_TIMEOUT, USER_AGENT

logger = logging.getLogger(__name__)

FILE_MODE = 0o644


class DownloadError(Exception):
    """Base class for download failures that are not transport or filesystem errors."""


class ChecksumMismatch(DownloadError):
    def __init__(self, path, expected: bytes, actual: bytes):
        super().__init__(f"SHA256 mismatch for {path}: expected {expected.hex()}, got {actual.hex()}")
        self.expected = expected
        self.actual = actual


class TruncatedDownload(DownloadError):
    pass


class UnexpectedStatus(DownloadError):
    def __init__(self, url: str, status_code: int):
        super().__init__(f"unexpected status {status_code} for {url}")
        self.url = url
        self.status_code = status_code


class DownloadCancelled(DownloadError):
    pass


def create_session(pool_size: int = MAX_WORKERS) -> requests.Session:
    """Builds the session shared by every index fetch and download."""
    session = requests.Session()
    session.headers.update({'User-Agent': USER_AGENT})
    # Size the pool so that every worker can hold a connection
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    session.hooks['response'].append(metrics.count_response)
    return session


def _backoff(delay: float, cancel) -> bool:
    """Sleeps for delay seconds, returns True if cancelled meanwhile."""
    if cancel is None:
        time.sleep(delay)
        return False
    return cancel.wait(delay)


def send_request(url: str, session: requests.Session, headers: dict | None = None, cancel=None,
                 timeout: tuple = (CONNECT_TIMEOUT, READ_TIMEOUT)) -> requests.Response:
    """
    Issues a streaming GET, retrying connection errors and timeouts.
    The response is returned whatever its status; only transport failures raise.
    """
    for attempt in range(MAX_RETRIES):
        if cancel is not None and cancel.is_set():
            raise DownloadCancelled(f"cancelled before fetching {url}")
        try:
            response = session.get(url, headers=headers, stream=True, timeout=timeout, allow_redirects=True)
            logger.debug(f"Fetched (status {response.status_code}): {url}")
            return response
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if attempt + 1 == MAX_RETRIES:
                logger.error(f"Failed to fetch {url} after {MAX_RETRIES} attempts: {e}")
                raise
            logger.warning(f"Network error on attempt {attempt + 1}/{MAX_RETRIES} for {url}: {e}")
        # Basic exponential backoff
        delay = RETRY_DELAY * (2 ** attempt)
        logger.debug(f"Retrying {url} in {delay} seconds...")
        if _backoff(delay, cancel):
            raise DownloadCancelled(f"cancelled while retrying {url}")
    raise requests.exceptions.RetryError(f"Failed to fetch {url}") # Should not be reached normally


def _hashed(chunks, hasher):
    """Passes chunks through unchanged, feeding them to hasher on the way."""
    for chunk in chunks:
        if hasher is not None:
            hasher.update(chunk)
        yield chunk


def remove_tempfile(path: Path) -> None:
    try:
        path.unlink()
        logger.debug(f"Deleted temporary file: {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Error deleting temporary file {path}: {e}")


def stream_to_tempfile(response: requests.Response, directory: Path, filename: str, hasher=None,
                       cancel=None, pbar: tqdm = None) -> tuple[Path, int]:
    """
    Writes the response body to a uniquely named hidden file next to its final location.
    Returns (temp_path, bytes_written). The temp file is removed if anything fails.
    """
    fd, name = tempfile.mkstemp(dir=directory, prefix=f".{filename}.")
    tmp_path = Path(name)
    written = 0
    try:
        with os.fdopen(fd, 'wb') as f:
            # mkstemp creates 0600 files, mirrored files are served to everyone
            os.chmod(tmp_path, FILE_MODE)
            for chunk in _hashed(response.iter_content(chunk_size=CHUNK_SIZE), hasher):
                if cancel is not None and cancel.is_set():
                    raise DownloadCancelled(f"cancelled while downloading {response.url}")
                f.write(chunk)
                chunk_len = len(chunk)
                written += chunk_len
                metrics.BYTES_TRANSFERRED.inc(chunk_len)
                if pbar:
                    pbar.update(chunk_len)

        # Content-Length counts encoded bytes, only comparable when the body was not re-encoded
        content_length = response.headers.get('Content-Length')
        if content_length and not response.headers.get('Content-Encoding'):
            try:
                expected = int(content_length)
            except ValueError:
                logger.warning(f"Could not parse Content-Length header '{content_length}' for {response.url}")
            else:
                if written != expected:
                    raise TruncatedDownload(
                        f"received {written} of {expected} bytes for {response.url}")
    except BaseException:
        remove_tempfile(tmp_path)
        raise
    return tmp_path, written


def set_mtime(path: Path, response: requests.Response) -> None:
    """Best effort: stamp the file with the upstream Last-Modified date."""
    value = response.headers.get('Last-Modified')
    if not value:
        return
    try:
        date = parsedate_to_datetime(value)
        if date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        os.utime(path, (time.time(), date.timestamp()))
    except (TypeError, ValueError, OSError) as e:
        logger.error(f"Changing mod time failed for {path}: {e}")


def calculate_sha256(file_path: Path) -> bytes | None:
    """Calculates the SHA256 digest of a file, None if it cannot be read."""
    hasher = hashlib.sha256()
    try:
        with open(file_path, 'rb') as f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.digest()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.error(f"Error calculating SHA256 for {file_path}: {e}")
        return None


def fetch_file(job: DownloadJob, session: requests.Session, cancel=None, pbar: tqdm = None) -> int:
    """
    Downloads job.url to job.destination, verifying the SHA256 when one is expected.
    Returns the number of bytes written. The destination is only ever replaced
    by a complete, verified file; on any error it is left untouched.
    """
    # A staged package promoted to stable is already on disk with the right content
    if job.sha256 and calculate_sha256(job.destination) == job.sha256:
        logger.debug(f"File already exists and SHA256 matches: {job.destination}")
        return 0

    logger.debug(f"Downloading: {job.url}")
    response = send_request(job.url, session, cancel=cancel)
    try:
        if response.status_code != 200:
            raise UnexpectedStatus(job.url, response.status_code)

        directory = job.destination.parent
        directory.mkdir(parents=True, exist_ok=True)
        hasher = hashlib.sha256() if job.sha256 else None
        tmp_path, written = stream_to_tempfile(response, directory, job.filename, hasher, cancel, pbar)
        try:
            if hasher is not None:
                actual = hasher.digest()
                if actual != job.sha256:
                    logger.error(f"SHA256 mismatch for {job.destination}! Expected {job.sha256.hex()}, got {actual.hex()}. Deleting.")
                    raise ChecksumMismatch(job.destination, job.sha256, actual)
                logger.debug(f"SHA256 verified for {job.destination}")

            set_mtime(tmp_path, response)
            # Rename temporary file to final destination only if all checks passed
            os.replace(tmp_path, job.destination)
        except BaseException:
            remove_tempfile(tmp_path)
            raise
    finally:
        response.close()

    logger.debug(f"Successfully downloaded {job.destination} ({written} bytes)")
    return written
