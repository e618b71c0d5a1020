"""
Bounded outbound HTTP fetches for pages and script bodies.
"""
from typing import Optional

import requests
from requests.structures import CaseInsensitiveDict
import structlog

from scriptguard.services.results import FetchOutcome

logger = structlog.get_logger()

DEFAULT_USER_AGENT = 'Mozilla/5.0 (compatible; ScriptGuard/1.0)'
DEFAULT_TIMEOUT = 10.0


def build_session(user_agent: Optional[str] = None) -> requests.Session:
    """Create the shared session used for every outbound fetch."""
    session = requests.Session()
    session.headers.update({
        'User-Agent': user_agent or DEFAULT_USER_AGENT,
        'Accept': 'text/html,application/xhtml+xml,application/javascript,*/*;q=0.8'
    })
    return session


def fetch(session: requests.Session, url: str, timeout: float = DEFAULT_TIMEOUT) -> FetchOutcome:
    """
    GET a URL once with a bounded timeout.

    Timeouts, connection failures and non-2xx answers come back as a failed
    FetchOutcome; nothing is raised to the caller.
    """
    try:
        response = session.get(url, timeout=timeout, allow_redirects=True)
    except requests.exceptions.Timeout:
        logger.warning("Fetch timed out", url=url, timeout=timeout)
        return FetchOutcome.failure(f"timed out after {timeout}s")
    except requests.exceptions.ConnectionError as e:
        logger.warning("Fetch connection error", url=url, error=str(e))
        return FetchOutcome.failure(f"connection error: {e}")
    except requests.exceptions.RequestException as e:
        # Invalid URLs, too many redirects and friends
        logger.warning("Fetch failed", url=url, error=str(e))
        return FetchOutcome.failure(f"request failed: {e}")

    if not 200 <= response.status_code < 300:
        logger.warning("Fetch returned non-success status", url=url, status_code=response.status_code)
        return FetchOutcome.failure(f"HTTP {response.status_code}", status_code=response.status_code)

    return FetchOutcome.success(
        content=response.content,
        text=response.text,
        headers=CaseInsensitiveDict(response.headers),
        status_code=response.status_code
    )
