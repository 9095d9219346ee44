"""Console and file logging for the crawl scripts.

The console only shows crawl progress (one line per inspected account, BFS
level boundaries, throttling sleeps, skipped accounts and run summaries);
everything down to DEBUG goes to a rotating log file.
"""
import logging
import logging.handlers
from pathlib import Path

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
CONSOLE_DATEFMT = "%H:%M:%S"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
LOG_FILE_NAME = "crawl.log"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5


class Colors:
    """ANSI color codes."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    MAGENTA = "\033[35m"


class ColoredFormatter(logging.Formatter):
    """Colors a console line by level; level boundaries stand out in bold."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DIM,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record):
        line = super().format(record)
        if record.levelno == logging.INFO and record.getMessage().startswith("BFS level"):
            return Colors.BOLD + Colors.MAGENTA + line + Colors.RESET
        color = self.LEVEL_COLORS.get(record.levelno)
        return f"{color}{line}{Colors.RESET}" if color else line


class ConsoleFilter(logging.Filter):
    """Lets WARNING+ through, and INFO only for crawl progress lines."""

    # logger name -> message prefixes shown on the console
    PROGRESS_MESSAGES = {
        "followgraph.crawl.coordinator": ("inspecting user", "Starting crawl", "Crawl "),
        "followgraph.crawl.fetcher": ("rate limited on",),
        "followgraph.crawl.frontier": ("BFS level",),
        "followgraph.crawl.bootstrap": ("Created crawl store", "Resuming crawl store", "Registered"),
    }
    SCRIPT_NAMES = ("crawl_follow_graph", "count_common_followers")

    def filter(self, record):
        if record.levelno >= logging.WARNING:
            return True
        if record.levelno != logging.INFO:
            return False

        if any(name in record.name for name in self.SCRIPT_NAMES):
            return True

        prefixes = self.PROGRESS_MESSAGES.get(record.name)
        if not prefixes:
            return False
        return record.getMessage().startswith(prefixes)


def _console_handler(level):
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))
    handler.addFilter(ConsoleFilter())
    return handler


def _file_handler(log_dir, level):
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_dir / LOG_FILE_NAME, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_crawl_logging(console_level=logging.INFO, file_level=logging.DEBUG, quiet=False, log_dir=Path("logs")):
    """Replace the root handlers with the filtered console and the crawl log file.

    ``quiet`` drops the console handler entirely; the file is always written.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if not quiet:
        root_logger.addHandler(_console_handler(console_level))
    root_logger.addHandler(_file_handler(log_dir, file_level))

    # Suppress noisy HTTP loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Crawl logging initialized (log dir %s)", log_dir)
