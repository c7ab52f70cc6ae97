import logging
import sys

from config.settings import DEBUG, LOG_FILE, LOG_LEVEL

# backend calls run on the vm-backend-* worker threads, so the thread name
# tells which request a line belongs to
logging.basicConfig(
    filename=str(LOG_FILE),
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] (%(threadName)s) %(message)s",
)

logger = logging.getLogger("vm-manager")

if DEBUG:
    _console = logging.StreamHandler(sys.stderr)
    _console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(_console)


def log_event(message: str, level: int = logging.INFO) -> None:
    """
    Write a single line event to the main vm-manager.log file.

    Rejections and backend failures are logged at WARNING so they stand
    out from routine state transitions.
    """
    logger.log(level, message)
