"""
Derives a Content-Security-Policy that admits the authorized script origins.
"""
import re
from typing import Iterable, List
from urllib.parse import urlparse

_SCRIPT_SRC = re.compile(r'(^|;)(\s*)script-src(?=\s|;|$)', re.IGNORECASE)


def script_origins(script_urls: Iterable[str]) -> List[str]:
    """Distinct scheme://host origins of the http(s) URLs, in first-seen order."""
    origins = []
    for url in script_urls:
        if not url or not url.lower().startswith(('http://', 'https://')):
            continue
        try:
            parsed = urlparse(url)
            host = parsed.hostname
        except ValueError:
            continue
        if not host:
            continue
        origin = f"{parsed.scheme.lower()}://{host}"
        if origin not in origins:
            origins.append(origin)
    return origins


def build_csp_policy(base_policy: str, script_urls: Iterable[str]) -> str:
    """
    Union the base policy with the origins of the given scripts.

    Origins go right after an existing ``script-src`` directive name, or into a
    new ``script-src 'self' 'unsafe-inline' ...`` directive when there is none.
    """
    base_policy = (base_policy or '').strip()
    existing_tokens = set(base_policy.replace(';', ' ').split())
    origins = [origin for origin in script_origins(script_urls) if origin not in existing_tokens]

    if not origins:
        return base_policy

    allowed = ' '.join(origins)

    if _SCRIPT_SRC.search(base_policy):
        policy = _SCRIPT_SRC.sub(lambda m: f"{m.group(1)}{m.group(2)}script-src {allowed}", base_policy, count=1)
    elif base_policy:
        policy = f"{base_policy.rstrip(';').rstrip()}; script-src 'self' 'unsafe-inline' {allowed};"
    else:
        policy = f"script-src 'self' 'unsafe-inline' {allowed};"

    while ';;' in policy:
        policy = policy.replace(';;', ';')
    return policy
