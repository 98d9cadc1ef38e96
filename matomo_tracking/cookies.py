"""First-party cookie emulation.

Mirrors the cookies written by the JavaScript tracker so that server-side and
browser-side tracking share one visitor. Nothing here touches a response:
the functions only read the inbound cookies and describe the cookies that
should be written back.
"""

import hashlib
import json
import logging
import re
import uuid
from typing import Any, List, Mapping, Optional

from matomo_tracking.models.visitor import CookieSpec, VisitorState

logger = logging.getLogger(__name__)

COOKIE_PREFIX = "_pk_"
VISITOR_ID_LENGTH = 16

VISITOR_COOKIE_TTL = 33955200  # 13 months (365 + 28 days)
SESSION_COOKIE_TTL = 1800
REFERRAL_COOKIE_TTL = 15768000  # 6 months

_VISITOR_ID_PATTERN = re.compile(r"^[0-9a-f]{16}$")


def random_hex(length: int) -> str:
    return uuid.uuid4().hex[:length]


def is_visitor_id(value: str) -> bool:
    return bool(_VISITOR_ID_PATTERN.match(value or ""))


def hash_user_id(user_id: str) -> str:
    """Visitor id derived from a user id, as computed by the collector."""
    return hashlib.sha1(user_id.encode("utf-8")).hexdigest()[:VISITOR_ID_LENGTH]


def cookie_name(name: str, id_site: int, host: str, domain: str = "", path: str = "/") -> str:
    digest = hashlib.sha1(((domain or host or "unknown") + path).encode("utf-8")).hexdigest()[:4]
    return f"{COOKIE_PREFIX}{name}.{id_site}.{digest}"


def find_cookie(cookies: Mapping[str, str], name: str) -> Optional[str]:
    # some frameworks rewrite dots in cookie names to underscores
    candidates = (name, name.replace(".", "_"))
    for cookie, value in cookies.items():
        if any(candidate in cookie for candidate in candidates):
            return value
    return None


def _int_or_none(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_visitor_cookie(value: str, now: int) -> Optional[VisitorState]:
    parts = value.split(".")
    if len(parts) < 5 or not is_visitor_id(parts[0]):
        return None

    create_ts = _int_or_none(parts[1])
    visit_count = _int_or_none(parts[2])
    if create_ts is None or visit_count is None:
        return None

    return VisitorState(
        visitor_id=parts[0],
        create_ts=create_ts,
        visit_count=visit_count,
        current_ts=now,
        last_visit_ts=_int_or_none(parts[4]),
        last_order_ts=_int_or_none(parts[5]) if len(parts) > 5 else None,
        from_cookie=True,
    )


def load_visitor(
    cookies: Mapping[str, str],
    id_site: int,
    host: str,
    now: int,
    domain: str = "",
    path: str = "/",
) -> VisitorState:
    """Restore the visitor from its ``id`` cookie, or start a new one."""
    raw = find_cookie(cookies, cookie_name("id", id_site, host, domain, path))
    if raw:
        state = parse_visitor_cookie(raw, now)
        if state is not None:
            return state
        logger.debug("ignoring malformed visitor cookie %r", raw)
    return VisitorState(visitor_id=random_hex(VISITOR_ID_LENGTH), create_ts=now, current_ts=now)


def load_custom_variables(
    cookies: Mapping[str, str], id_site: int, host: str, domain: str = "", path: str = "/"
) -> dict:
    raw = find_cookie(cookies, cookie_name("cvar", id_site, host, domain, path))
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def visitor_cookie_value(visitor_id: str, state: VisitorState) -> str:
    return ".".join(
        "" if part is None else str(part)
        for part in (
            visitor_id,
            state.create_ts,
            state.visit_count + 1,
            state.current_ts,
            state.last_visit_ts,
            state.last_order_ts,
        )
    )


def first_party_cookies(
    visitor_id: str,
    state: VisitorState,
    id_site: int,
    host: str,
    domain: str = "",
    path: str = "/",
    attribution: Optional[List[Any]] = None,
    custom_variables: Optional[dict] = None,
) -> List[CookieSpec]:
    def spec(name: str, value: str, ttl: int) -> CookieSpec:
        return CookieSpec(
            name=cookie_name(name, id_site, host, domain, path),
            value=value,
            max_age=ttl,
            path=path,
            domain=domain,
        )

    cookies = []
    if attribution:
        cookies.append(spec("ref", json.dumps(attribution, separators=(",", ":")), REFERRAL_COOKIE_TTL))
    cookies.append(spec("ses", "*", SESSION_COOKIE_TTL))
    cookies.append(spec("id", visitor_cookie_value(visitor_id, state), VISITOR_COOKIE_TTL))
    cookies.append(
        spec("cvar", json.dumps(custom_variables or {}, separators=(",", ":")), SESSION_COOKIE_TTL)
    )
    return cookies


def expired_cookies(id_site: int, host: str, domain: str = "", path: str = "/") -> List[CookieSpec]:
    """Cookies that, once written, delete every first-party tracking cookie."""
    return [
        CookieSpec(cookie_name(name, id_site, host, domain, path), "", 0, path, domain)
        for name in ("id", "ses", "cvar", "ref")
    ]
