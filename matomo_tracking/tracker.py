import logging
import threading
import time
from typing import Any, Dict, List, Mapping, Optional

from matomo_tracking import cookies
from matomo_tracking.builder import ParameterBuilder
from matomo_tracking.config import Settings
from matomo_tracking.dispatcher import Dispatcher
from matomo_tracking.models.context import TrackingContext
from matomo_tracking.models.result import DispatchResult
from matomo_tracking.models.visitor import CookieSpec
from matomo_tracking.serializer import build_url

logger = logging.getLogger(__name__)


class Tracker:
    """Tracks one visit: a builder for the parameters plus the dispatcher that
    delivers them.

    Tracking calls go through ``tracker.builder``; each call is then closed
    with ``url()``, ``track()`` (sent now) or ``queue()`` (sent by ``flush()``
    in a single bulk request).
    """

    def __init__(
        self,
        context: TrackingContext,
        id_site: int,
        dispatcher: Dispatcher,
        *,
        token_auth: Optional[str] = None,
        token_length: Optional[int] = None,
        cookies_enabled: bool = True,
        cookie_domain: str = "",
        cookie_path: str = "/",
    ) -> None:
        self.context = context
        self.id_site = id_site
        self.dispatcher = dispatcher
        self.cookies_enabled = cookies_enabled
        self.cookie_domain = cookie_domain
        self.cookie_path = cookie_path

        visitor = None
        if cookies_enabled:
            visitor = cookies.load_visitor(
                context.cookies, id_site, context.host, int(time.time()), cookie_domain, cookie_path
            )
        self.builder = ParameterBuilder(
            id_site,
            context,
            token_length=token_length,
            visitor=visitor,
            cookie_domain=cookie_domain,
            cookie_path=cookie_path,
        )
        if token_auth:
            self.builder.set_auth_token(token_auth)

        self._pending: List[Mapping[str, Any]] = []
        self._outbound_cookies: Dict[str, str] = {}
        self.response_cookies: Dict[str, str] = {}

    @classmethod
    def from_settings(
        cls,
        context: TrackingContext,
        settings: Settings,
        dispatcher: Optional[Dispatcher] = None,
    ) -> "Tracker":
        if dispatcher is None:
            dispatcher = Dispatcher(settings.api_url, timeout=settings.timeout, method=settings.method)
        return cls(
            context,
            settings.id_site,
            dispatcher,
            token_auth=settings.token_auth,
            token_length=settings.token_length,
            cookies_enabled=settings.cookies_enabled,
            cookie_domain=settings.cookie_domain,
            cookie_path=settings.cookie_path,
        )

    @property
    def pending(self) -> List[Mapping[str, Any]]:
        return list(self._pending)

    def set_outbound_cookie(self, name: str, value: Optional[str]) -> "Tracker":
        """Cookie forwarded to the collector; ``None`` stops forwarding it."""
        if value is None:
            self._outbound_cookies.pop(name, None)
        else:
            self._outbound_cookies[name] = value
        return self

    def url(self) -> str:
        """Close the current request and return it as a GET URL."""
        return build_url(self.dispatcher.api_url, self.builder.finalize())

    def track(self) -> DispatchResult:
        """Close the current request and send it right away."""
        result = self.dispatcher.send(self.builder.finalize(), self.context, self._outbound_cookies)
        self.response_cookies.update(result.cookies)
        return result

    def queue(self) -> "Tracker":
        """Close the current request and keep it for the next ``flush()``."""
        self._pending.append(self.builder.finalize())
        return self

    def _take_pending(self) -> List[Mapping[str, Any]]:
        pending, self._pending = self._pending, []
        return pending

    def flush(self) -> Optional[DispatchResult]:
        pending = self._take_pending()
        if not pending:
            return None
        result = self.dispatcher.send_bulk(
            pending, self.builder.peek().get("token_auth"), self.context, self._outbound_cookies
        )
        self.response_cookies.update(result.cookies)
        return result

    def flush_in_background(self) -> Optional[threading.Thread]:
        pending = self._take_pending()
        if not pending:
            return None
        logger.debug("dispatching %d tracking requests in background", len(pending))
        return self.dispatcher.send_bulk_in_background(
            pending, self.builder.peek().get("token_auth"), self.context, dict(self._outbound_cookies)
        )

    def intended_cookies(self) -> List[CookieSpec]:
        if not self.cookies_enabled:
            return []
        return self.builder.intended_cookies()

    def deleted_cookies(self) -> List[CookieSpec]:
        return cookies.expired_cookies(self.id_site, self.context.host, self.cookie_domain, self.cookie_path)
