import logging
import os
import sys


def setup_logger(name: str = "gameshop") -> logging.Logger:
    log = logging.getLogger(name)
    if log.handlers:
        return log

    level_name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    log.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "[%(asctime)s] [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    log.addHandler(handler)
    return log


logger = setup_logger()
