from __future__ import annotations

import logging
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# HTTP plumbing under the docker SDK; one line per request at DEBUG
TRANSPORT_LOGGERS = ("urllib3", "docker")


def configure_logging(verbose: bool = False, logger_name: Optional[str] = None) -> logging.Logger:
    """
    Configure logging for a staging run and return a ``cfstager`` logger.

    Records share stdout with the builder's output, so pipeline state changes
    read inline with the buildpack log. ``--verbose`` turns on DEBUG for the
    ``cfstager.*`` loggers (copy-in/copy-out traces, container commands). The
    docker SDK and urllib3 loggers stay at WARNING unless verbose, since their
    per-request lines would drown the build log.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    transport_level = logging.DEBUG if verbose else logging.WARNING
    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)

    logger = logging.getLogger(logger_name or "cfstager")
    logger.debug("Logging configured with level %s", logging.getLevelName(level))
    return logger
