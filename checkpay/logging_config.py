"""
Logging setup for Checkpay.

All modules log through ``logging.getLogger(__name__)`` under the
``checkpay`` logger. ``setup_checkpay_logging`` attaches a dated file handler
in ``<data dir>/logs``; the helpers below give saga steps, checkpoint
transitions and price conversions a consistent, greppable shape.
"""

import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "checkpay"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_checkpay_home() -> Path:
    """Data directory: ``CHECKPAY_DATA_DIR`` or ``~/.checkpay``."""
    env_dir = os.environ.get("CHECKPAY_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".checkpay"


def setup_checkpay_logging(
    level: Union[str, int] = "INFO",
    data_dir: Optional[Path] = None,
) -> logging.Logger:
    """Configure the ``checkpay`` logger with a daily file handler.

    Calling this more than once does not add duplicate handlers.

    Args:
        level: Level name (case-insensitive) or numeric level
        data_dir: Override for the data directory

    Returns:
        The configured ``checkpay`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)

    if isinstance(level, str):
        numeric_level = getattr(logging, level.upper(), None)
        if not isinstance(numeric_level, int):
            raise ValueError(f"Invalid log level: {level}")
    else:
        numeric_level = level
    logger.setLevel(numeric_level)

    log_dir = (data_dir or get_checkpay_home()) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"local-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.log"

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file:
            return logger

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    return logger


def log_approval_step(
    job_id: int,
    step: int,
    outcome: str,
    detail: Optional[str] = None,
) -> None:
    """Log one approval saga step outcome (completed, skipped, failed)."""
    logger = logging.getLogger(f"{LOGGER_NAME}.orchestrator")
    message = f"approval | job={job_id} | step={step} | outcome={outcome}"
    if detail:
        message += f" | {detail}"
    if outcome == "failed":
        logger.error(message)
    else:
        logger.info(message)


def log_checkpoint_event(
    escrow_id: str,
    action: str,
    index: Optional[int] = None,
    actor: Optional[str] = None,
    amount: Optional[int] = None,
) -> None:
    """Log a checkpoint or escrow transition."""
    logger = logging.getLogger(f"{LOGGER_NAME}.escrow")
    parts = [f"escrow={escrow_id}", f"action={action}"]
    if index is not None:
        parts.append(f"checkpoint={index}")
    if actor:
        parts.append(f"actor={actor}")
    if amount is not None:
        parts.append(f"amount={amount}")
    logger.info("checkpoint | " + " | ".join(parts))


def log_conversion(
    amount_usd: Decimal,
    asset: str,
    amount: int,
    source: str,
) -> None:
    """Log a USD to asset conversion and where the rate came from."""
    logger = logging.getLogger(f"{LOGGER_NAME}.pricing")
    logger.debug(f"conversion | usd={amount_usd} | asset={asset} | amount={amount} | source={source}")
