import argparse
import json
import logging
from collections.abc import Sequence
from typing import Optional

import browser_cookie_engine


def _dump_cookie(cookie: browser_cookie_engine.DecryptedCookie) -> dict:
    return {
        "domain": cookie.host,
        "path": cookie.path,
        "name": cookie.name,
        "value": cookie.value,
        "secure": cookie.is_secure,
        "httponly": cookie.is_httponly,
        "expires": cookie.expires,
        "samesite": cookie.same_site.value,
    }


def parse_args(args: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        prog="browser_cookie_engine",
        description="Print the Cookie header a browser would send to a URL.",
        epilog="Exit status is 0 if cookies were found, 1 if none apply, and 2 if errors occurred",
    )
    parser.add_argument(
        "-j",
        "--json",
        action="store_true",
        help="Output JSON with all cookie details, rather than just the header value",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Log what is being read (repeat for debug)")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail if any cookie can not be decrypted instead of skipping it",
    )
    browsers = ", ".join(name.value for name in browser_cookie_engine.BrowserName)
    parser.add_argument("spec", help=f"BROWSER[+KEYRING][:PROFILE][::CONTAINER], BROWSER is one of: {browsers}")
    parser.add_argument("url")
    parsed_args = parser.parse_args(args)
    return parser, parsed_args


def main(args: Optional[Sequence[str]] = None):
    parser, p_args = parse_args(args)
    level = {0: logging.WARNING, 1: logging.INFO}.get(p_args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        extraction = browser_cookie_engine.extract(p_args.spec, strict=p_args.strict)
    except browser_cookie_engine.BrowserCookieError as e:
        parser.error(e.args[0])

    selected = extraction.jar.select(p_args.url)
    if not selected:
        raise SystemExit(1)
    if p_args.json:
        print(json.dumps([_dump_cookie(cookie) for cookie in selected.values()], indent=2))  # noqa T201
    else:
        print(browser_cookie_engine.header_for(selected, p_args.url))  # noqa T201


if __name__ == "__main__":
    main()
