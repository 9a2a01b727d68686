import logging
import os
from datetime import datetime
from pathlib import Path

_LOG_DIR_SETTING = os.getenv("DINICHAT_LOG_DIR", "logs")
LOG_DIR = Path(_LOG_DIR_SETTING) if _LOG_DIR_SETTING else None

_LOGGERS = {}


def get_logger(
    name: str,
    *,
    runtime: str = "dinichat",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. core.query_cache, actor.gateway)
    - runtime: log file prefix (dinichat | dinichat-cli)

    Console output is always attached. The per-run log file is skipped
    when DINICHAT_LOG_DIR is set to an empty string.
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    if LOG_DIR is not None:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        logfile = LOG_DIR / f"{runtime}-{timestamp}.log"

        file_handler = logging.FileHandler(logfile, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger
