import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType

from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .engine import ReconciliationEngine
from .errors import ConfigurationError
from .scheduler import Scheduler

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            to a rotating log file.
        max_log_size (int, optional): Bytes before the log file is rotated.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to stderr (captured by systemd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def read_pid() -> int | None:
    """Returns the PID of a live daemon, or None if none is running."""
    if not PID_FILE.exists():
        return None
    try:
        pid = int(PID_FILE.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def write_pid_file() -> None:
    try:
        PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        PID_FILE.write_text(str(os.getpid()))
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def build_scheduler(config: Config) -> Scheduler:
    """Creates the engine and scheduler for the configured vault.

    Raises:
        ConfigurationError: If the vault path is unset or unusable.
    """
    settings = config.vault_settings()
    engine = ReconciliationEngine(settings)
    return Scheduler(
        engine,
        settle_interval=config.daemon.settle_interval,
        reconcile_interval=config.daemon.reconcile_interval,
    )


def main() -> None:
    """The daemon entry point.

    Validates configuration (fatal on error), then runs the scheduler until
    SIGTERM or SIGINT, joining any in-flight cycle before exiting.
    """
    config = Config.load()
    setup_logging(interactive=False, max_log_size=config.limits.max_log_size)

    try:
        scheduler = build_scheduler(config)
    except ConfigurationError as e:
        logger.critical(f"FATAL: {e}")
        sys.exit(1)

    write_pid_file()

    stop = threading.Event()

    def handle_signal(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received signal {signum}, shutting down.")
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    scheduler.start()
    # Short waits keep the main thread responsive to signals.
    while not stop.wait(1.0):
        pass
    scheduler.stop()


if __name__ == "__main__":
    main()
