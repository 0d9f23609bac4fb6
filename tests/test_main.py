import json
from unittest.mock import MagicMock

import pytest

from conftest import make_response
from xbps_mirror import metrics
from xbps_mirror.config import MirrorConfig, RepositoryConfig
from xbps_mirror.main import MirrorProcess, main
from xbps_mirror.metrics import parse_listen_address


@pytest.fixture
def mirror_config(tmp_path):
    return MirrorConfig(
        repositories=[
            RepositoryConfig("http://mirror.example.com/current/", tmp_path / "a", "x86_64"),
            RepositoryConfig("http://mirror.example.com/current/", tmp_path / "a", "aarch64"),
        ],
        jobs=2,
    )


# --- Tests for the command line ---

def test_main_missing_config(tmp_path):
    assert main(["-c", str(tmp_path / "missing.hcl")]) == 1


def test_main_invalid_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"jobs": 2}))
    assert main(["-c", str(path)]) == 1


def test_main_invalid_workers(tmp_path, mocker):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"repository": {
        "upstream": "http://mirror.example.com/current/",
        "destination": str(tmp_path / "mirror"),
        "architecture": "x86_64",
    }}))
    process = mocker.patch("xbps_mirror.main.MirrorProcess")

    assert main(["-c", str(path), "--workers", "0"]) == 1
    process.assert_not_called()


def test_main_runs_process(tmp_path, mocker):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"jobs": 3, "repository": {
        "upstream": "http://mirror.example.com/current/",
        "destination": str(tmp_path / "mirror"),
        "architecture": "x86_64",
    }}))
    process_cls = mocker.patch("xbps_mirror.main.MirrorProcess")
    process_cls.return_value.run.return_value = 0
    mocker.patch("signal.signal")

    assert main(["-c", str(path), "--workers", "5"]) == 0

    mirror_config = process_cls.call_args.args[0]
    assert mirror_config.jobs == 3
    assert process_cls.call_args.kwargs["workers"] == 5
    process_cls.return_value.start.assert_called_once()


def test_main_bad_metrics_address(tmp_path, mocker):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"repository": {
        "upstream": "http://mirror.example.com/current/",
        "destination": str(tmp_path / "mirror"),
        "architecture": "x86_64",
    }}))
    process_cls = mocker.patch("xbps_mirror.main.MirrorProcess")

    assert main(["-c", str(path), "--metrics-address", "localhost:http"]) == 1
    process_cls.assert_not_called()


# --- Tests for MirrorProcess ---

def test_process_first_failure_stops_everything(mirror_config):
    process = MirrorProcess(mirror_config)
    failing = MagicMock(name="failing")
    failing.run.side_effect = RuntimeError("index fetch failed")
    waiting = MagicMock(name="waiting")
    waiting.run.side_effect = lambda: process.cancel.wait(timeout=5)
    process.engines = [failing, waiting]

    assert process.run() == 1

    assert process.cancel.is_set()
    failing.stop.assert_called_once()
    waiting.stop.assert_called_once()


def test_process_clean_stop(mirror_config):
    process = MirrorProcess(mirror_config)
    engine = MagicMock()
    engine.run.side_effect = lambda: process.cancel.wait(timeout=5)
    process.engines = [engine]

    process.stop()

    assert process.run() == 0


def test_process_starts_one_engine_per_repository(mirror_config):
    process = MirrorProcess(mirror_config, workers=3)
    process.start()
    try:
        assert process.workers == 3
        assert [e.config.architecture for e in process.engines] == ["x86_64", "aarch64"]
        assert all(e.cancel is process.cancel for e in process.engines)
        assert mirror_config.repositories[0].destination.is_dir()
    finally:
        process.close()


# --- Tests for metrics helpers ---

@pytest.mark.parametrize("address, expected", [
    (":9100", ("0.0.0.0", 9100)),
    ("127.0.0.1:8080", ("127.0.0.1", 8080)),
    ("[::1]:9100", ("::1", 9100)),
])
def test_parse_listen_address(address, expected):
    assert parse_listen_address(address) == expected


@pytest.mark.parametrize("address", ["9100", "host:", "host:port", ":0", ":70000"])
def test_parse_listen_address_invalid(address):
    with pytest.raises(ValueError):
        parse_listen_address(address)


def test_count_response():
    counter = metrics.HTTP_RESPONSES.labels(code="418")
    before = counter._value.get()
    metrics.count_response(make_response(418))
    assert counter._value.get() == before + 1
