from __future__ import annotations

from http.cookies import SimpleCookie
from typing import Dict, Optional

from starlette.requests import cookie_parser

from edge_agent.utils.settings import get_settings

_SECONDS_PER_DAY = 86400


def parse_cookie_header(header_value: Optional[str]) -> Dict[str, str]:
    """Parse a raw `Cookie` header; malformed pairs are skipped, never raised."""
    if not header_value:
        return {}
    return cookie_parser(str(header_value))


def get_cookie_value(header_value: Optional[str], name: str) -> Optional[str]:
    value = parse_cookie_header(header_value).get(name)
    if value and len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    return value or None


def build_cookie_header(cookies: Dict[str, str]) -> str:
    """Serialize name/value pairs back into a request `Cookie` header."""
    return "; ".join(f"{k}={v}" for k, v in cookies.items())


def serialize_set_cookie(
    name: str,
    value: str,
    *,
    max_age: Optional[int] = None,
    path: str = "/",
    domain: Optional[str] = None,
    secure: bool = True,
    httponly: bool = True,
    samesite: Optional[str] = None,
) -> str:
    """
    Render a `Set-Cookie` header value.
    Unset options come from settings (COOKIE_MAX_AGE_DAYS, COOKIE_DOMAIN, COOKIE_SAME_SITE).
    """
    settings = get_settings()
    if max_age is None:
        max_age = int(settings.cookie_max_age_days) * _SECONDS_PER_DAY
    if domain is None:
        domain = settings.cookie_domain
    if samesite is None:
        samesite = settings.cookie_same_site

    cookie: SimpleCookie = SimpleCookie()
    cookie[name] = value
    morsel = cookie[name]
    morsel["max-age"] = max_age
    morsel["path"] = path
    if domain:
        morsel["domain"] = domain
    if secure:
        morsel["secure"] = True
    if httponly:
        morsel["httponly"] = True
    if samesite:
        morsel["samesite"] = str(samesite)
    return cookie.output(header="").strip()
