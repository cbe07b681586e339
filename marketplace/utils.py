# marketplace/utils.py
"""Logging setup shared by the marketplace modules.

``LOG_LEVEL`` drives the service loggers. The chattier client libraries
(aiohttp access lines, stripe request logs, SQLAlchemy echo) are held at
``THIRD_PARTY_LOG_LEVEL`` so geocoder fan-out does not drown the app log.
"""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
THIRD_PARTY_LOGGERS = ("aiohttp.access", "aiohttp.client", "stripe", "sqlalchemy.engine")


def _level(var: str, default: str) -> int:
    return getattr(logging, os.getenv(var, default).upper(), getattr(logging, default))


def get_logger(name: str = "marketplace") -> logging.Logger:
    logging.basicConfig(format=LOG_FORMAT, level=_level("LOG_LEVEL", "INFO"))
    quiet = _level("THIRD_PARTY_LOG_LEVEL", "WARNING")
    for noisy in THIRD_PARTY_LOGGERS:
        logging.getLogger(noisy).setLevel(quiet)
    return logging.getLogger(name)


logger = get_logger()
