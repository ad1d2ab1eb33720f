"""
Logging utilities for the environment refresh tool.
"""

import logging
import sys


def setup_logging(
    verbose: bool = False, log_file: str = "environment-refresh.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    The log file is opened in append mode and is the only state the tool
    persists between runs.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, mode="a"),
        ],
    )
    # urllib3 retries are already reported by the REST client
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("azure.identity").setLevel(logging.WARNING)

    return logging.getLogger(__name__)
