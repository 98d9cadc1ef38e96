import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from matomo_tracking.config import Settings, get_settings
from matomo_tracking.context import context_from_request
from matomo_tracking.dispatcher import Dispatcher
from matomo_tracking.errors import DeliveryError, TrackingError
from matomo_tracking.tracker import Tracker

APP_NAME = "matomo-tracking"


logger = logging.getLogger(APP_NAME)


def configure_logging(log_file: str) -> logging.Logger:
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(logging.WARNING)
    handlers = [stream_handler]
    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, delay=True)
        file_handler.setLevel(logging.ERROR)
        handlers.append(file_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


class TrackingMiddleware(BaseHTTPMiddleware):
    """Tracks every inbound request.

    A ``Tracker`` is stored on ``request.state`` (under ``settings.attribute``)
    so handlers can add page titles, events, goals... Once the handler has
    answered, the remaining parameters are sent and the first-party cookies
    are written on the response. Tracking failures never change the response.
    """

    def __init__(
        self,
        app: ASGIApp,
        settings: Settings,
        dispatcher: Optional[Dispatcher] = None,
        excluded_paths: Iterable[str] = ("/healthz",),
    ) -> None:
        super().__init__(app)
        self.settings = settings
        self.dispatcher = dispatcher or Dispatcher(
            settings.api_url, timeout=settings.timeout, method=settings.method
        )
        self.excluded_paths = frozenset(excluded_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        try:
            tracker = Tracker.from_settings(context_from_request(request), self.settings, self.dispatcher)
        except TrackingError:
            logger.exception("unable to create tracker for %s", request.url.path)
            return await call_next(request)

        setattr(request.state, self.settings.attribute, tracker)
        response = await call_next(request)
        tracker.queue()

        for cookie in tracker.intended_cookies():
            response.set_cookie(
                cookie.name,
                cookie.value,
                max_age=cookie.max_age,
                path=cookie.path,
                domain=cookie.domain or None,
            )

        try:
            if self.settings.blocking:
                await run_in_threadpool(tracker.flush)
            else:
                tracker.flush_in_background()
        except DeliveryError:
            logger.exception("error sending tracking request")
        return response


def create_app(settings: Optional[Settings] = None, dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_file)

    app = FastAPI(title=APP_NAME)
    app.add_middleware(TrackingMiddleware, settings=settings, dispatcher=dispatcher)

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    return app
