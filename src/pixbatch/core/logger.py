import logging
import os
import sys

LOGGER_NAME = "pixbatch"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def setup_logger(level: int = logging.WARNING, name: str = LOGGER_NAME) -> logging.Logger:
    """Create or update the project logger.

    PIXBATCH_LOG_LEVEL overrides ``level`` on every call so that late CLI
    parsing still takes effect. Exactly one stderr handler is kept; stdout is
    reserved for the JSON report.
    """
    logger = logging.getLogger(name)

    env_level = (os.getenv("PIXBATCH_LOG_LEVEL") or "").strip().lower()
    if env_level:
        level = _LEVELS.get(env_level, level)
    logger.setLevel(level)

    stream_handler: logging.StreamHandler | None = None
    for h in list(logger.handlers):
        if not isinstance(h, logging.StreamHandler):
            continue
        if stream_handler is None and getattr(h, "stream", None) is sys.stderr:
            stream_handler = h
        else:
            # Bound to a stderr that has since been replaced.
            logger.removeHandler(h)

    if stream_handler is None:
        stream_handler = logging.StreamHandler(stream=sys.stderr)
        logger.addHandler(stream_handler)

    stream_handler.setFormatter(
        logging.Formatter(fmt="[%(asctime)s] %(levelname)s: %(message)s", datefmt="%H:%M:%S")
    )
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
