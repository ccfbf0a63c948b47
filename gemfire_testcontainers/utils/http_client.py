"""Shared HTTP client for the members' management REST API."""

import logging

import requests

LOGGER = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10

_session = None


def get_session() -> requests.Session:
    """Get a session object shared by all clusters."""
    global _session  # noqa: PLW0603

    if _session is None:
        _session = requests.Session()
    return _session


def get_status(url: str, *, timeout: float = REQUEST_TIMEOUT) -> int:
    """Return HTTP status code of GET request, 0 when the server is unreachable."""
    try:
        response = get_session().get(url, timeout=timeout)
    except requests.RequestException as exc:
        LOGGER.warning(f"Request to '{url}' failed: {exc}")
        return 0
    return response.status_code
