"""Logging for the Checkpay backend.

Route modules log through ``get_logger("checkpay.api.<area>")`` so backend
records share the ``checkpay`` hierarchy with the core library.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Attach a stderr handler to the ``checkpay`` logger once."""
    global _configured
    root = logging.getLogger("checkpay")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a named logger under the ``checkpay`` hierarchy."""
    return logging.getLogger(name)


def log_request(logger: logging.Logger, method: str, path: str, party: str | None = None) -> None:
    """Log an incoming API call in the backend's standard shape."""
    if party:
        logger.info(f"{method} {path} | party={party}")
    else:
        logger.info(f"{method} {path}")
