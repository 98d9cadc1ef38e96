from dataclasses import dataclass
from typing import Optional


@dataclass
class VisitorState:
    """Visitor identity carried across requests by the ``id`` cookie."""

    visitor_id: str
    create_ts: int
    visit_count: int = 0
    current_ts: Optional[int] = None
    last_visit_ts: Optional[int] = None
    last_order_ts: Optional[int] = None
    from_cookie: bool = False


@dataclass(frozen=True)
class CookieSpec:
    """A cookie the response layer should write back to the browser."""

    name: str
    value: str
    max_age: int
    path: str = "/"
    domain: str = ""
