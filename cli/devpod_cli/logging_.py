from __future__ import annotations

import logging

LIBRARY_LOGGER = "devpod_core"
# per-request INFO lines from the compose plugin download
HTTP_LOGGERS = ("httpx", "httpcore")


def setup_logging(verbose: bool) -> None:
    """Library logs go to stderr; -v opens the devpod_core tree down to DEBUG.

    Every docker/apt command the library runs is logged at DEBUG, so -v is the
    way to see exactly what was executed on the host.
    """
    if verbose:
        fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    else:
        fmt = "%(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=fmt, datefmt="%H:%M:%S")

    logging.getLogger(LIBRARY_LOGGER).setLevel(logging.DEBUG if verbose else logging.WARNING)
    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)
