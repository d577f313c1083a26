"""Package logger helpers."""

import logging

_ROOT_LOGGER = "rsa_http"

logging.getLogger(_ROOT_LOGGER).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``rsa_http`` hierarchy."""
    if name != _ROOT_LOGGER and not name.startswith(_ROOT_LOGGER + "."):
        name = f"{_ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
