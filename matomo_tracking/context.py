from http.cookies import SimpleCookie
from typing import Any, Dict, Mapping, Optional

from starlette.requests import Request

from matomo_tracking.models.context import TrackingContext


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def context_from_request(request: Request) -> TrackingContext:
    """Build a TrackingContext from a Starlette/FastAPI request.

    The remote address is taken as-is from the connection; forwarded-for
    chains are not resolved here.
    """
    client_ip = request.client.host if request.client else None
    return TrackingContext(
        target_url=str(request.url),
        referrer_url=_blank_to_none(request.headers.get("referer")),
        client_ip=_blank_to_none(client_ip),
        user_agent=request.headers.get("user-agent", ""),
        accept_language=request.headers.get("accept-language", ""),
        host=request.url.hostname or "",
        cookies=dict(request.cookies),
    )


def _parse_cookie_header(header: str) -> Dict[str, str]:
    jar: SimpleCookie = SimpleCookie()
    jar.load(header)
    return {name: morsel.value for name, morsel in jar.items()}


def _environ_url(environ: Mapping[str, Any]) -> str:
    https = str(environ.get("HTTPS", "")).lower()
    scheme = "https" if https not in ("", "off") else environ.get("wsgi.url_scheme", "http")
    host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME") or "unknown"

    uri = environ.get("REQUEST_URI")
    if not uri:
        uri = environ.get("PATH_INFO") or "/"
        query = environ.get("QUERY_STRING")
        if query:
            uri = f"{uri}?{query}"
    return f"{scheme}://{host}{uri}"


def context_from_environ(environ: Mapping[str, Any]) -> TrackingContext:
    """Build a TrackingContext from WSGI / CGI server variables."""
    url = _environ_url(environ)
    host = str(environ.get("HTTP_HOST") or environ.get("SERVER_NAME") or "").split(":")[0]
    return TrackingContext(
        target_url=url,
        referrer_url=_blank_to_none(environ.get("HTTP_REFERER")),
        client_ip=_blank_to_none(environ.get("REMOTE_ADDR")),
        user_agent=environ.get("HTTP_USER_AGENT", ""),
        accept_language=environ.get("HTTP_ACCEPT_LANGUAGE", ""),
        host=host,
        cookies=_parse_cookie_header(environ.get("HTTP_COOKIE", "")),
    )
