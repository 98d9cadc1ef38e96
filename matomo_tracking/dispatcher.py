"""Delivery of tracking requests to the collector over HTTP."""

import logging
import math
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from matomo_tracking.errors import ConfigError, DeliveryError
from matomo_tracking.models.context import TrackingContext
from matomo_tracking.models.result import DispatchResult
from matomo_tracking.schemas.bulk import BulkPayload
from matomo_tracking.serializer import build_url, bulk_entry, encode_query

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 8.0

_METHODS = ("GET", "POST")


def parse_set_cookies(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Collect the ``name=value`` pairs echoed in ``Set-Cookie`` headers."""
    cookies: Dict[str, str] = {}
    for name, value in headers:
        if name.lower() != "set-cookie":
            continue
        pair = value.strip().split(";", 1)[0]
        key, _, cookie_value = pair.partition("=")
        key = key.strip()
        if key:
            cookies[unquote(key)] = unquote(cookie_value.strip())
    return cookies


def _set_cookie_headers(response: requests.Response) -> List[Tuple[str, str]]:
    # getlist keeps repeated Set-Cookie lines apart on every urllib3 release
    raw_headers = getattr(getattr(response, "raw", None), "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        return [("Set-Cookie", value) for value in raw_headers.getlist("Set-Cookie")]
    return list(response.headers.items())


class Dispatcher:
    """Sends finalized tracking parameters to the collector.

    Usage:
        d = Dispatcher("https://matomo.example.com/matomo.php", timeout=5)
        result = d.send(builder.finalize(), context)
    """

    def __init__(
        self,
        api_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        method: str = "GET",
        session: Optional[requests.Session] = None,
        proxy: Optional[str] = None,
    ) -> None:
        parsed = urlparse(api_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"Invalid tracker endpoint: {api_url!r}")
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid value supplied for request timeout: {timeout!r}") from None
        if not math.isfinite(timeout) or timeout <= 0:
            raise ConfigError(f"Invalid value supplied for request timeout: {timeout}")
        method = (method or "").upper()
        if method not in _METHODS:
            raise ConfigError(f"Unsupported tracking method: {method!r}")

        self.api_url = api_url
        self.timeout = timeout
        self.method = method
        self.session = session or requests.Session()
        self.proxies = {"http": proxy, "https": proxy} if proxy else None

    def _headers(self, context: Optional[TrackingContext], headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        base: Dict[str, str] = {}
        if context is not None:
            if context.user_agent:
                base["User-Agent"] = context.user_agent
            if context.accept_language:
                base["Accept-Language"] = context.accept_language
        if headers:
            base.update(headers)
        return base

    def _request(self, method: str, url: str, **kwargs: Any) -> DispatchResult:
        try:
            resp = self.session.request(method, url, timeout=self.timeout, proxies=self.proxies, **kwargs)
        except requests.exceptions.Timeout as exc:
            logger.warning("tracking request timed out: %s", self.api_url)
            raise DeliveryError(f"Tracking request timed out after {self.timeout}s", self.api_url) from exc
        except requests.RequestException as exc:
            logger.warning("tracking request error: %s", exc)
            raise DeliveryError(f"Tracking request failed: {exc}", self.api_url) from exc

        if resp.ok:
            logger.debug("tracking request sent successfully.")
        else:
            logger.warning("tracking request rejected: %s %s", resp.status_code, resp.reason)
        return DispatchResult(status_code=resp.status_code, cookies=parse_set_cookies(_set_cookie_headers(resp)))

    def send(
        self,
        params: Mapping[str, Any],
        context: Optional[TrackingContext] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> DispatchResult:
        """Send one tracking request.

        A non-2xx answer is returned as a result; only transport failures
        raise ``DeliveryError``.
        """
        outbound = dict(cookies) if cookies else None
        if self.method == "POST":
            return self._request(
                "POST",
                self.api_url,
                data=encode_query(params),
                headers=self._headers(context, {"Content-Type": "application/x-www-form-urlencoded"}),
                cookies=outbound,
            )
        return self._request("GET", build_url(self.api_url, params), headers=self._headers(context), cookies=outbound)

    def send_bulk(
        self,
        requests_params: Iterable[Mapping[str, Any]],
        token_auth: Optional[str] = None,
        context: Optional[TrackingContext] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> DispatchResult:
        """Send several tracking requests in one JSON POST."""
        payload = BulkPayload(requests=[bulk_entry(params) for params in requests_params], token_auth=token_auth)
        return self._request(
            "POST",
            self.api_url,
            json=payload.to_body(),
            headers=self._headers(context, {"Content-Type": "application/json"}),
            cookies=dict(cookies) if cookies else None,
        )

    def _background(self, target: Callable[..., DispatchResult], *args: Any) -> threading.Thread:
        def run() -> None:
            try:
                target(*args)
            except Exception:
                logger.exception("background tracking request failed")

        thread = threading.Thread(target=run, name="matomo-tracking-dispatch", daemon=True)
        thread.start()
        return thread

    def send_in_background(
        self,
        params: Mapping[str, Any],
        context: Optional[TrackingContext] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> threading.Thread:
        """Fire-and-forget variant of ``send``; failures are only logged."""
        return self._background(self.send, params, context, cookies)

    def send_bulk_in_background(
        self,
        requests_params: Iterable[Mapping[str, Any]],
        token_auth: Optional[str] = None,
        context: Optional[TrackingContext] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> threading.Thread:
        return self._background(self.send_bulk, list(requests_params), token_auth, context, cookies)
