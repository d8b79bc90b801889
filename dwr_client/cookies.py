"""Cookies - Cookie jar scoped by the Public Suffix List.

The stdlib policy only rejects a handful of ``.co.uk``-style domains (and
only in strict mode), so a server could otherwise plant a cookie on a
public suffix that every sibling site would then receive.
"""

from __future__ import annotations

import logging
from http.cookiejar import Cookie, CookieJar, DefaultCookiePolicy
from typing import Any

from publicsuffixlist import PublicSuffixList

logger = logging.getLogger(__name__)

_PUBLIC_SUFFIXES = PublicSuffixList()


class PublicSuffixCookiePolicy(DefaultCookiePolicy):
    """DefaultCookiePolicy that refuses ``Domain=`` attributes naming a public suffix.

    Host-only cookies (no ``Domain=`` attribute) are unaffected.
    """

    def __init__(self, suffixes: PublicSuffixList | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._suffixes = suffixes or _PUBLIC_SUFFIXES

    def set_ok_domain(self, cookie: Cookie, request: Any) -> bool:
        if cookie.domain_specified:
            domain = cookie.domain.lstrip(".").lower()
            if self._suffixes.is_public(domain):
                logger.debug("Rejected cookie %s for public suffix %s", cookie.name, domain)
                return False
        return super().set_ok_domain(cookie, request)


def public_suffix_cookie_jar() -> CookieJar:
    """Return an empty CookieJar using PublicSuffixCookiePolicy."""
    return CookieJar(policy=PublicSuffixCookiePolicy())
