import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: str = _DEFAULT_LEVEL) -> logging.Logger:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO), format=LOG_FORMAT
    )
    logger = logging.getLogger("funrun")
    logger.setLevel(getattr(logging, level, logging.INFO))
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    if name and not name.startswith("funrun"):
        return logging.getLogger("funrun").getChild(name)
    return logging.getLogger(name or "funrun")
