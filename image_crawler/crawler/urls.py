"""
URL sanitizing and same-site checks.
"""

import ipaddress
import logging
from typing import Iterable, Optional
from urllib.parse import urljoin, urlparse, urlunparse

import tldextract


ALLOWED_SCHEMES = ('http', 'https')
DEFAULT_SCHEME = 'http://'


def sanitize_url(raw: str, base_url: str) -> Optional[str]:
    """
    Turn a raw href/src into an absolute HTTP(S) URL, or None if it is unusable.

    Empty values and data: URIs are rejected, relative references are resolved
    against `base_url`, the host is lower-cased and the fragment dropped.
    """
    if raw is None:
        return None

    raw = raw.strip()
    if not raw:
        return None

    if raw[:5].lower() == 'data:':
        return None

    try:
        parsed = urlparse(raw)
        if not parsed.scheme:
            parsed = urlparse(urljoin(base_url, raw))
    except ValueError:
        return None

    if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
        return None

    return urlunparse((
        parsed.scheme,
        parsed.netloc.lower(),
        parsed.path,
        parsed.params,
        parsed.query,
        ''
    ))


def normalize_job_url(raw: str) -> Optional[str]:
    """
    Trim a job URL, prefix http:// when it carries no HTTP(S) scheme, then
    sanitize it like a discovered link so seeds and links dedupe together.
    """
    if raw is None:
        return None

    url = raw.strip()
    if not url:
        return None

    if not url.lower().startswith(('http://', 'https://')):
        url = DEFAULT_SCHEME + url
    return sanitize_url(url, url)


class SameSitePolicy:
    """
    Decides whether two URLs share a registrable domain (eTLD+1).

    Hosts under a suffix missing from the public suffix list fall back to the
    list's default rule, so `a.other.test` registers as `other.test`. IP
    addresses and single-label hosts compare as the whole host.
    """

    def __init__(self, suffix_list_urls: Iterable[str] = ()):
        self.logger = logging.getLogger(__name__)
        suffix_list_urls = tuple(suffix_list_urls)

        if suffix_list_urls:
            self._extract = tldextract.TLDExtract(suffix_list_urls=suffix_list_urls)
        else:
            # Bundled snapshot only; never touches the network
            self._extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

    def registrable_domain(self, url: str) -> Optional[str]:
        """Return the registrable domain of a URL's host, or None if it has none."""
        try:
            host = urlparse(url).hostname
        except ValueError:
            return None

        if not host:
            return None
        host = host.rstrip('.')

        try:
            ipaddress.ip_address(host)
            return host
        except ValueError:
            pass

        extracted = self._extract(host)
        if extracted.suffix:
            if not extracted.domain:
                return None
            return f"{extracted.domain}.{extracted.suffix}"

        labels = [label for label in host.split('.') if label]
        if not labels:
            return None
        return '.'.join(labels[-2:])

    def is_same_site(self, base_url: str, candidate_url: str) -> bool:
        """True only when both URLs parse and resolve to the same registrable domain."""
        base_domain = self.registrable_domain(base_url)
        candidate_domain = self.registrable_domain(candidate_url)

        if base_domain is None or candidate_domain is None:
            return False
        return base_domain == candidate_domain
