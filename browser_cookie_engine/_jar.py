"""Cookie applicability, merging and the Cookie request header

Matching follows RFC 6265 section 5: a request host domain-matches a cookie domain when it is equal to it
or a subdomain of it, and a request path path-matches a cookie path when it is equal to it or continues it
at a ``/`` boundary.
"""

import http.cookiejar
import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from typing import Optional, Union
from urllib.parse import urlsplit

from ._models import DecryptedCookie

logger = logging.getLogger(__name__)

SECURE_SCHEMES = ("https", "wss")

_CookieKey = tuple[str, str, str]


def normalize_domain(domain: str) -> str:
    return domain.lower().removeprefix(".")


def domain_matches(cookie_domain: str, host: str) -> bool:
    domain = normalize_domain(cookie_domain)
    host = host.lower()
    return bool(domain) and (host == domain or host.endswith("." + domain))


def path_matches(cookie_path: str, request_path: str) -> bool:
    cookie_path = cookie_path or "/"
    request_path = request_path or "/"
    if request_path == cookie_path:
        return True
    if not request_path.startswith(cookie_path):
        return False
    return cookie_path.endswith("/") or request_path[len(cookie_path)] == "/"


def _is_host_only_match(cookie: DecryptedCookie, host: str) -> bool:
    return not cookie.host.startswith(".") and cookie.host.lower() == host


def select(cookies: Iterable[DecryptedCookie], url: str, now: Optional[float] = None) -> "CookieJar":
    """Return the cookies a request to `url` carries

    Of several applicable cookies with the same domain and name, the one with the longest path is kept, then
    an exact host-only match over a domain match, then the later one. The result keeps the original order."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    path = parts.path or "/"
    secure = parts.scheme.lower() in SECURE_SCHEMES
    now = time.time() if now is None else now

    winners: dict[tuple[str, str], tuple[int, DecryptedCookie]] = {}
    for index, cookie in enumerate(cookies):
        if not domain_matches(cookie.host, host) or not path_matches(cookie.path, path):
            continue
        if cookie.is_secure and not secure:
            continue
        if cookie.expires is not None and cookie.expires <= now:
            continue

        key = (normalize_domain(cookie.host), cookie.name)
        rank = (len(cookie.path or "/"), _is_host_only_match(cookie, host))
        current = winners.get(key)
        if current is None or rank >= (len(current[1].path or "/"), _is_host_only_match(current[1], host)):
            winners[key] = (index, cookie)

    return CookieJar(cookie for _, cookie in sorted(winners.values(), key=lambda item: item[0]))


class CookieJar(Mapping[_CookieKey, DecryptedCookie]):
    """Read-only, insertion ordered mapping of ``(domain, path, name)`` to cookies"""

    def __init__(self, cookies: Iterable[DecryptedCookie] = ()) -> None:
        self._cookies: dict[_CookieKey, DecryptedCookie] = {}
        for cookie in cookies:
            self._cookies[cookie.identity] = cookie

    def __getitem__(self, key: _CookieKey) -> DecryptedCookie:
        return self._cookies[key]

    def __iter__(self) -> Iterator[_CookieKey]:
        return iter(self._cookies)

    def __len__(self) -> int:
        return len(self._cookies)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} of {len(self)} cookies>"

    def select(self, url: str, now: Optional[float] = None) -> "CookieJar":
        return select(self.values(), url, now)

    def header_for(self, url: str, now: Optional[float] = None) -> str:
        return header_for(self, url, now)

    def to_cookiejar(self) -> http.cookiejar.CookieJar:
        """Export to the standard library cookie jar used by `urllib` and `requests`"""
        cj = http.cookiejar.CookieJar()
        for cookie in self.values():
            cj.set_cookie(
                create_cookie(
                    cookie.host, cookie.path, cookie.is_secure, cookie.expires, cookie.name, cookie.value,
                    cookie.is_httponly,
                )
            )
        return cj


def create_cookie(
    host: str, path: str, secure: bool, expires: Optional[int], name: str, value: Optional[str], http_only: bool
) -> http.cookiejar.Cookie:
    """Shortcut function to create a cookie"""
    # HTTPOnly flag goes in _rest, if present (see https://github.com/python/cpython/pull/17471/files#r511187060)
    rest = {"HTTPOnly": ""} if http_only else {}
    domain_specified = domain_initial_dot = host.startswith(".")
    return http.cookiejar.Cookie(
        version=0,
        name=name,
        value=value,
        port=None,
        port_specified=False,
        domain=host,
        domain_specified=domain_specified,
        domain_initial_dot=domain_initial_dot,
        path=path,
        path_specified=bool(path),
        secure=secure,
        expires=expires,
        discard=expires is None,
        comment=None,
        comment_url=None,
        rest=rest,
    )


def header_for(
    jar: Union[Mapping[_CookieKey, DecryptedCookie], Iterable[DecryptedCookie]], url: str, now: Optional[float] = None
) -> str:
    """Value of the Cookie header for a request to `url`, empty when no cookie applies"""
    cookies = jar.values() if isinstance(jar, Mapping) else jar
    selected = select(cookies, url, now)
    return "; ".join(f"{cookie.name}={cookie.value}" for cookie in selected.values())


def host_changed(original_url: str, url: str) -> bool:
    """True when `url` points at another host than `original_url`

    Callers use this to decide whether credentials other than cookies may follow a redirect."""
    return (urlsplit(original_url).hostname or "").lower() != (urlsplit(url).hostname or "").lower()


class CookieInjector:
    """Cookie headers for one request and every redirect that follows it"""

    def __init__(self, jar: CookieJar, origin_url: str) -> None:
        self.jar = jar
        self.origin_url = origin_url
        self.current_url = origin_url

    def header(self, now: Optional[float] = None) -> str:
        return header_for(self.jar, self.current_url, now)

    def redirect(self, url: str, now: Optional[float] = None) -> str:
        """Follow a redirect to `url` and return the Cookie header the next request carries"""
        logger.debug(f"recomputing cookies for redirect {self.current_url} -> {url}")
        self.current_url = url
        return self.header(now)

    def host_changed(self) -> bool:
        return host_changed(self.origin_url, self.current_url)
