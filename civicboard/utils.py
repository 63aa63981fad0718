# civicboard/utils.py
"""Shared utilities such as logging and retry decorators."""
import os
import logging
import time
from functools import wraps
from dotenv import load_dotenv

load_dotenv()

def get_logger(name=__name__):
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        level=getattr(logging, level, logging.INFO)
    )
    return logging.getLogger(name)

logger = get_logger("civicboard")

def retry(exceptions, tries=5, delay=2, backoff=2, max_delay=30, logger=logger):
    """Retry while the index store comes up; the last failure propagates."""
    def deco_retry(f):
        @wraps(f)
        def f_retry(*args, **kwargs):
            mdelay = delay
            for attempt in range(1, tries):
                try:
                    return f(*args, **kwargs)
                except exceptions as e:
                    logger.warning(
                        "%s: index store not reachable (attempt %d/%d): %s; retrying in %ss",
                        f.__name__, attempt, tries, e, mdelay,
                    )
                    time.sleep(mdelay)
                    mdelay = min(mdelay * backoff, max_delay)
            try:
                return f(*args, **kwargs)
            except exceptions:
                logger.error("%s: giving up after %d attempts", f.__name__, tries)
                raise
        return f_retry
    return deco_retry
