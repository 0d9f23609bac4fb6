import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

BYTES_TRANSFERRED = Counter(
    "xbps_mirror_bytes_transferred_total",
    "Bytes of response bodies written to disk.",
)
HTTP_RESPONSES = Counter(
    "xbps_mirror_http_responses_total",
    "HTTP responses received from upstream, by status code.",
    ["code"],
)
DOWNLOADS = Counter(
    "xbps_mirror_downloads_total",
    "Finished download jobs, by outcome.",
    ["result"],
)
INDEX_UPDATES = Counter(
    "xbps_mirror_index_updates_total",
    "Index update attempts, by index kind and outcome.",
    ["index", "result"],
)
QUEUE_DEPTH = Gauge(
    "xbps_mirror_download_queue_depth",
    "Download jobs submitted but not yet picked up by a worker.",
)
WORKERS = Gauge(
    "xbps_mirror_download_workers",
    "Size of the download worker pool.",
)
OBSOLETE_FILES = Gauge(
    "xbps_mirror_obsolete_files",
    "Files whose package was removed from an index, by repository.",
    ["destination", "architecture"],
)


def count_response(response, *args, **kwargs):
    """requests response hook recording the status code."""
    HTTP_RESPONSES.labels(code=str(response.status_code)).inc()


def parse_listen_address(address: str) -> tuple[str, int]:
    """Splits 'host:port' or ':port' into (host, port)."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"invalid listen address {address!r}, expected host:port")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"invalid port in listen address {address!r}") from None
    if not 0 < port_number < 65536:
        raise ValueError(f"port out of range in listen address {address!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, port_number


def start_metrics_server(address: str) -> None:
    host, port = parse_listen_address(address)
    start_http_server(port, addr=host)
    logger.info(f"Serving metrics on http://{address}/metrics")
