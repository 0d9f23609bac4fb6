import gzip
import io
import plistlib
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from xbps_mirror.config import RepositoryConfig

UPSTREAM = "http://mirror.example.com/current/"


def _gzip(data: bytes) -> bytes:
    return gzip.compress(data, mtime=0)


def build_repodata(index: dict, compress=_gzip) -> bytes:
    """Builds a repodata blob: a tar archive holding index.plist, optionally compressed."""
    payload = plistlib.dumps(index)
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo("index.plist")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    raw = buf.getvalue()
    return compress(raw) if compress else raw


def index_entry(pkgver: str, arch: str = "x86_64", sha256: str = "") -> dict:
    entry = {"pkgver": pkgver, "architecture": arch}
    if sha256:
        entry["filename-sha256"] = sha256
    return entry


def make_response(status: int = 200, body: bytes = b"", headers: dict | None = None,
                  url: str = UPSTREAM, chunks=None) -> MagicMock:
    """A mocked streaming requests.Response."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    if chunks is None:
        chunks = [body[i:i + 4] for i in range(0, len(body), 4)]
    response.iter_content.return_value = chunks
    return response


@pytest.fixture
def mock_session():
    """Fixture for a mocked requests.Session."""
    return MagicMock(spec=requests.Session)


@pytest.fixture
def repo_config(tmp_path) -> RepositoryConfig:
    destination = tmp_path / "mirror"
    destination.mkdir()
    return RepositoryConfig(
        upstream=UPSTREAM,
        destination=destination,
        architecture="x86_64",
        interval=60.0,
    )


@pytest.fixture
def repodata_path(repo_config) -> Path:
    return repo_config.destination / "x86_64-repodata"


@pytest.fixture
def stagedata_path(repo_config) -> Path:
    return repo_config.destination / "x86_64-stagedata"
