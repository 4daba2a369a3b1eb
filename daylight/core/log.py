import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


def configure_logging(
    level: int = logging.INFO,
    log_path: Optional[str] = "daylight.log",
    console: bool = True,
) -> None:
    logger = logging.getLogger()
    logger.setLevel(level)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s - %(message)s"
    )

    if console:
        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        logger.addHandler(ch)

    # Rotating file (the daemon runs unattended for weeks)
    if log_path:
        fh = RotatingFileHandler(
            log_path, maxBytes=2_000_000, backupCount=5
        )
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    # Silence noisy httpx request logging
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
