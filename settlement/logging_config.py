import logging
import sys

from settlement.config import LOG_FORMAT, LOG_LEVEL, STRIPE_LOG_LEVEL

# Service loggers that follow LOG_LEVEL
SERVICE_LOGGERS = ("settlement", "uvicorn", "uvicorn.error", "uvicorn.access")


def setup_logging(level=LOG_LEVEL):
    """Send every log record to stdout in one format. Safe to call twice."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in SERVICE_LOGGERS:
        logging.getLogger(name).setLevel(level)
    # The SDK logs each request and response at INFO
    logging.getLogger("stripe").setLevel(STRIPE_LOG_LEVEL)
