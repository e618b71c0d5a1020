"""
Page scanner: inventories the scripts and security headers a page serves.
"""
import hashlib
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import requests
import structlog
from bs4 import BeautifulSoup

from scriptguard.services.http_client import DEFAULT_TIMEOUT, build_session, fetch
from scriptguard.services.results import ErrorKind, ScanResult

logger = structlog.get_logger()

SECURITY_HEADERS = (
    'Content-Security-Policy',
    'X-Content-Type-Options',
    'X-Frame-Options',
    'X-XSS-Protection',
    'Strict-Transport-Security',
    'Referrer-Policy',
)

INLINE_PREFIX = 'inline-script-'


def inline_script_id(content: str) -> str:
    """Stable identifier for an inline block; the content itself is never kept."""
    digest = hashlib.sha256(content.encode('utf-8')).hexdigest()
    return f"{INLINE_PREFIX}{digest[:16]}"


def is_inline_id(identifier: str) -> bool:
    return identifier.startswith(INLINE_PREFIX)


def normalize_script_url(src: str, page_url: str) -> str:
    """Resolve a script src to an absolute URL."""
    src = src.strip()
    if src.startswith('//'):
        return 'https:' + src
    return urljoin(page_url, src)


def empty_headers() -> Dict[str, str]:
    return {name: '' for name in SECURITY_HEADERS}


class PageScanner:
    """Fetches one page and extracts its script inventory."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.session = session if session is not None else build_session()
        self.timeout = timeout

    def scan(self, page_url: str) -> ScanResult:
        """
        Fetch page_url once and return its scripts and security headers.

        A fetch failure yields zero scripts with every header blank; a parse
        failure keeps the headers but reports zero scripts. Neither raises.
        """
        outcome = fetch(self.session, page_url, self.timeout)
        if not outcome.ok:
            logger.warning("Page scan degraded, page unreachable", page_url=page_url, error=outcome.error)
            return ScanResult(
                page_url=page_url,
                headers=empty_headers(),
                error_kind=outcome.error_kind,
                error=outcome.error
            )

        headers = self.extract_headers(outcome.headers or {})

        try:
            scripts, integrity = self.extract_scripts(outcome.text, page_url)
        except Exception as e:
            logger.error("Page scan degraded, HTML could not be parsed", page_url=page_url, error=str(e))
            return ScanResult(
                page_url=page_url,
                headers=headers,
                error_kind=ErrorKind.PARSE,
                error=f"could not parse page: {e}"
            )

        logger.info(
            "Page scanned",
            page_url=page_url,
            scripts_found=len(scripts),
            missing_headers=[name for name, value in headers.items() if not value]
        )

        return ScanResult(page_url=page_url, scripts=scripts, headers=headers, integrity=integrity)

    @staticmethod
    def extract_headers(response_headers) -> Dict[str, str]:
        """Every checked header is present in the result; absent ones are ''."""
        headers = empty_headers()
        for name in SECURITY_HEADERS:
            value = response_headers.get(name)
            if value:
                headers[name] = value
        return headers

    @staticmethod
    def extract_scripts(html: str, page_url: str) -> Tuple[List[str], Dict[str, str]]:
        """
        Ordered, de-duplicated script identifiers plus declared integrity values.

        External scripts are reported by absolute URL, inline blocks by
        ``inline-script-<first 16 hex chars of sha256>``. Empty inline blocks
        are ignored.
        """
        soup = BeautifulSoup(html or '', 'html.parser')

        identifiers: List[str] = []
        seen = set()
        integrity: Dict[str, str] = {}

        for node in soup.find_all('script'):
            src = node.get('src')
            if src is not None and src.strip():
                identifier = normalize_script_url(src, page_url)
                declared = (node.get('integrity') or '').strip()
                if declared and identifier not in integrity:
                    integrity[identifier] = declared
            elif src is None:
                content = node.get_text().strip()
                if not content:
                    continue
                identifier = inline_script_id(content)
            else:
                # src="" loads nothing
                continue

            if identifier not in seen:
                seen.add(identifier)
                identifiers.append(identifier)

        return identifiers, integrity
