import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__all__ = ["log", "LOG_FILE", "__version__"]

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_FILE = PROJECT_ROOT / ".logs" / "erp_documents.log"

_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    """Return a rotating handler that keeps store and transport detail on disk."""

    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: cannot write document log '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    # DEBUG reaches the file only; the terminal sees INFO and above.
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    logger.addHandler(console)

    # Connection pool chatter from requests.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logger


log = _configure_logging()
log.debug("erp_documents %s logging to '%s'", __version__, LOG_FILE)
