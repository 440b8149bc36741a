# backend/autocrop/fetch.py
import logging
from typing import Optional

import requests

from .config import fetch_timeout
from .errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "autocrop/1.0"


def fetch_bytes(url: str, timeout: Optional[float] = None) -> bytes:
    """GET url and return the body.

    Non-2xx answers raise FetchError carrying the status code; connection
    problems and timeouts raise FetchError with status_code=None.
    """
    if timeout is None:
        timeout = fetch_timeout()
    try:
        resp = requests.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
    except requests.exceptions.Timeout as e:
        raise FetchError(f"timed out fetching {url}") from e
    except requests.exceptions.RequestException as e:
        raise FetchError(f"cannot fetch {url}: {e}") from e

    if not resp.ok:
        raise FetchError(f"fetching {url} returned HTTP {resp.status_code}", status_code=resp.status_code)
    logger.debug("fetched %s (%d bytes)", url, len(resp.content))
    return resp.content
