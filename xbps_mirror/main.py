import argparse
import logging
import signal
import sys
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed

from tqdm import tqdm

# Project internal imports
from . import config
from .config import ConfigError, MirrorConfig, load_config
from .downloader import create_session
from .metrics import start_metrics_server
from .repository import RepositoryEngine
from .scheduler import DownloadScheduler

# --- Logging Setup ---
# Place basicConfig here so logger instances in other modules inherit it
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s')
logger = logging.getLogger(__name__) # Get logger for this module


class MirrorProcess:
    """
    Owns the shared session, the download scheduler and one engine per repository.

    Engines run in their own threads. The first engine to fail cancels all the
    others; stop() does the same on request (e.g. from a signal handler).
    """

    def __init__(self, mirror_config: MirrorConfig, workers: int | None = None, pbar: tqdm = None):
        self.config = mirror_config
        self.workers = workers or mirror_config.jobs
        self.cancel = threading.Event()
        self.session = create_session(self.workers + len(mirror_config.repositories))
        self.scheduler = DownloadScheduler(self.session, self.workers, cancel=self.cancel, pbar=pbar)
        self.engines: list[RepositoryEngine] = []

    def start(self) -> None:
        """Creates the engines; loads cached indices and prepares destinations."""
        for repo_config in self.config.repositories:
            self.engines.append(RepositoryEngine(repo_config, self.scheduler, self.session, self.cancel))

    def stop(self) -> None:
        self.cancel.set()
        for engine in self.engines:
            engine.stop()

    def close(self) -> None:
        # Only once every engine has returned: nothing submits jobs any more
        self.scheduler.shutdown(wait=False)
        self.session.close()

    def run(self) -> int:
        """Runs every engine until all have returned. Returns the exit status."""
        status = 0
        with ThreadPoolExecutor(max_workers=len(self.engines), thread_name_prefix="Repository") as executor:
            futures = {executor.submit(engine.run): engine for engine in self.engines}
            for future in as_completed(futures):
                engine = futures[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"[{engine.name}] Repository update failed: {e}")
                    logger.error(traceback.format_exc())
                    status = 1
                    self.stop()
                else:
                    if not self.cancel.is_set():
                        logger.warning(f"[{engine.name}] Repository loop returned unexpectedly")
        self.close()
        return status


def run_mirror_process(args) -> int:
    """Loads the configuration and mirrors until stopped."""
    try:
        mirror_config = load_config(args.conffile)
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1
    if args.workers is not None and args.workers < 1:
        logger.error(f"--workers must be a positive integer, got {args.workers}")
        return 1

    logger.info("Starting mirror process.")
    logger.info(f"Configuration File: {args.conffile}")
    logger.info(f"Download Workers: {args.workers or mirror_config.jobs}")
    for repo in mirror_config.repositories:
        logger.info(f"Repository: {repo.upstream} ({repo.architecture}) -> {repo.destination}, every {repo.interval:g}s")

    if args.metrics_address:
        try:
            start_metrics_server(args.metrics_address)
        except (OSError, ValueError) as e:
            logger.error(f"Could not start metrics server on {args.metrics_address}: {e}")
            return 1

    with tqdm(unit='B', unit_scale=True, desc="Downloaded", smoothing=0.1,
              disable=not args.progress or args.debug) as pbar:
        process = MirrorProcess(mirror_config, workers=args.workers, pbar=pbar)
        try:
            process.start()
        except OSError as e:
            logger.error(f"Initializing repository failed: {e}")
            process.close()
            return 1

        def handle_signal(signum, frame):
            logger.info(f"Received {signal.Signals(signum).name}, shutting down.")
            process.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)
        return process.run()


def main(argv=None) -> int:
    """Parses arguments and starts the mirror process."""
    parser = argparse.ArgumentParser(
        description="Continuously mirror XBPS package repositories.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter # Show defaults in help
    )
    parser.add_argument("-c", "--conffile", default=config.DEFAULT_CONFIG_FILE, help="Configuration file path (.hcl or .json).")
    parser.add_argument("--metrics-address", default=None, help="Serve Prometheus metrics on host:port (e.g. :9100).")
    parser.add_argument("--workers", type=int, default=None, help="Number of concurrent download workers, overrides 'jobs'.")
    parser.add_argument("--progress", action="store_true", help="Show a running count of downloaded bytes.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (very verbose).")

    args = parser.parse_args(argv)

    # Adjust logging level based on debug flag
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled.")
    else:
        logging.getLogger().setLevel(logging.INFO)
        # Silence verbose logs from underlying libraries in info mode
        logging.getLogger("requests").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)

    try:
        return run_mirror_process(args)
    except KeyboardInterrupt:
        logger.warning("Process interrupted by user.")
        return 1
    except Exception as e:
        logger.error(f"An unexpected critical error occurred: {e}")
        logger.error(traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
