"""Process-wide logging setup for the ket CLI."""

import logging
import sys

# Level above CRITICAL, used to silence everything in manifest mode
SILENT = logging.CRITICAL + 10


def build_log_format(prefix: bool = False, timestamp: bool = False) -> str:
    """Build a log format string from the logging display options.

    Args:
        prefix: Include ``[LEVEL] [logger]`` before each message
        timestamp: Include the record timestamp

    Returns:
        A ``logging`` %-style format string
    """
    parts = []
    if timestamp:
        parts.append("%(asctime)s")
    if prefix:
        parts.append("[%(levelname)s] [%(name)s]")
    parts.append("%(message)s")
    return " ".join(parts)


def configure_logging(
    debug: bool = False,
    prefix: bool = False,
    timestamp: bool = False,
    silent: bool = False,
) -> None:
    """Configure root logging for a CLI invocation.

    Logs go to stderr so the test container's output on stdout stays clean.
    """
    if silent:
        level = SILENT
    elif debug:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format=build_log_format(prefix=prefix, timestamp=timestamp),
        stream=sys.stderr,
        force=True,
    )

    # The kubernetes client is chatty at DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
