"""
Logging utilities for the CI worker fleet controller.
"""

import logging
import sys


def setup_logging(
    verbose: bool = False, log_file: str = "fleet-controller.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file),
        ],
    )
    # paramiko logs every channel open at INFO
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)

    return logging.getLogger(__name__)
