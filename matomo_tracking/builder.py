"""Accumulates the parameters of tracking requests for one visit.

A ``ParameterBuilder`` is a mutable accumulator owned by a single inbound
request. Setters validate their input immediately and overwrite the keys they
own; ``finalize()`` turns the current state into an immutable snapshot ready
for serialization and starts a fresh page-level context while the visit
identity (site, visitor, ip, user id, token...) is kept.
"""

import copy
import json
import logging
import re
import time
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

from matomo_tracking import cookies
from matomo_tracking.errors import ValidationError
from matomo_tracking.models.context import TrackingContext
from matomo_tracking.models.ecommerce import EcommerceItem
from matomo_tracking.models.visitor import CookieSpec, VisitorState

logger = logging.getLogger(__name__)

API_VERSION = 1
PAGE_ID_LENGTH = 6

# Custom variable slots used by ecommerce product / category page views.
CVAR_INDEX_ECOMMERCE_ITEM_PRICE = 2
CVAR_INDEX_ECOMMERCE_ITEM_SKU = 3
CVAR_INDEX_ECOMMERCE_ITEM_NAME = 4
CVAR_INDEX_ECOMMERCE_ITEM_CATEGORY = 5

_CUSTOM_VARIABLE_KEYS = {"visit": "_cvar", "page": "cvar", "event": "e_cvar"}

_PLUGIN_KEYS = ("fla", "java", "dir", "qt", "realp", "pdf", "wma", "gears", "ag")

# Keys that survive finalize(); everything else belongs to a single request.
_VISIT_KEYS = frozenset(
    {
        "idsite",
        "rec",
        "apiv",
        "pv_id",
        "url",
        "urlref",
        "cip",
        "uid",
        "cid",
        "token_auth",
        "cdt",
        "cs",
        "_cvar",
        "_rcn",
        "_rck",
        "_refts",
        "_ref",
        "country",
        "region",
        "city",
        "lat",
        "long",
        "res",
        "h",
        "m",
        "s",
        "cookie",
        "send_image",
    }
    | set(_PLUGIN_KEYS)
)

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


def is_valid_auth_token(token: Optional[str], token_length: Optional[int] = None) -> bool:
    if not token or not _TOKEN_PATTERN.match(token):
        return False
    return not token_length or len(token) == token_length


class ParameterBuilder:
    def __init__(
        self,
        id_site: int,
        context: Optional[TrackingContext] = None,
        *,
        token_length: Optional[int] = None,
        visitor: Optional[VisitorState] = None,
        cookie_domain: str = "",
        cookie_path: str = "/",
    ) -> None:
        self.id_site = id_site
        self.context = context
        self.token_length = token_length
        self.visitor = visitor
        self.cookie_domain = cookie_domain
        self.cookie_path = cookie_path

        self._params: Dict[str, Any] = {
            "idsite": id_site,
            "rec": 1,
            "apiv": API_VERSION,
            "pv_id": cookies.random_hex(PAGE_ID_LENGTH),
        }
        self._ecommerce_items: List[EcommerceItem] = []
        self._attribution: Optional[List[Any]] = None
        self._random_visitor_id = cookies.random_hex(cookies.VISITOR_ID_LENGTH)
        self._page_view_pending = False
        self._page_id_forced = False
        self._page_id_used = False

        if context is not None:
            self._set(
                {
                    "url": context.target_url,
                    "urlref": context.referrer_url,
                    "cip": context.client_ip,
                }
            )
            if visitor is not None:
                # visit-scope custom variables carry over from the browser
                stored = cookies.load_custom_variables(
                    context.cookies, id_site, context.host, cookie_domain, cookie_path
                )
                if stored:
                    self._set({"_cvar": stored})

    @classmethod
    def from_context(cls, context: TrackingContext, id_site: int, **kwargs: Any) -> "ParameterBuilder":
        return cls(id_site, context, **kwargs)

    def _set(self, values: Mapping[str, Any]) -> "ParameterBuilder":
        for key, value in values.items():
            if value is None:
                self._params.pop(key, None)
            else:
                self._params[key] = value
        return self

    # -- context -----------------------------------------------------------

    def set_url(self, url: Optional[str]) -> "ParameterBuilder":
        return self._set({"url": url})

    def set_referrer(self, url: Optional[str]) -> "ParameterBuilder":
        return self._set({"urlref": url})

    def set_page_charset(self, charset: Optional[str]) -> "ParameterBuilder":
        return self._set({"cs": charset or None})

    # -- actions -----------------------------------------------------------

    def set_page_view(self, title: str) -> "ParameterBuilder":
        """Track a page view; ``title`` is reported under Actions > Page titles."""
        self._page_view_pending = True
        return self._set({"action_name": title})

    def set_rand(self, rand: Optional[Union[str, int]] = None) -> "ParameterBuilder":
        """Cache buster; defaults to the current unix time."""
        return self._set({"rand": rand or int(time.time())})

    def set_event(
        self,
        category: str,
        action: str,
        name: Optional[str] = None,
        value: Optional[Union[str, float]] = None,
    ) -> "ParameterBuilder":
        if not category:
            raise ValidationError("You must specify an Event Category name (Music, Videos, Games...).")
        if not action:
            raise ValidationError("You must specify an Event action (click, view, add...).")

        return self._set({"e_c": category, "e_a": action, "e_n": name, "e_v": value})

    def set_content_impression(
        self,
        name: str,
        piece: str = "Unknown",
        target: Optional[str] = None,
        interaction: Optional[str] = None,
    ) -> "ParameterBuilder":
        if not name:
            raise ValidationError("You must specify a content name")

        return self._set({"c_i": interaction, "c_n": name, "c_p": piece, "c_t": target})

    def set_content_interaction(
        self,
        interaction: str,
        name: str,
        piece: str = "Unknown",
        target: Optional[str] = None,
    ) -> "ParameterBuilder":
        """Track an interaction with content already reported as an impression
        with the same name and piece."""
        if not interaction:
            raise ValidationError("You must specify a name for the interaction")
        if not name:
            raise ValidationError("You must specify a content name")

        return self._set({"c_i": interaction, "c_n": name, "c_p": piece, "c_t": target})

    def set_site_search(
        self,
        keyword: str,
        category: Optional[str] = None,
        count_results: Optional[int] = None,
    ) -> "ParameterBuilder":
        return self._set({"search": keyword, "search_cat": category or None, "search_count": count_results})

    def set_goal(self, id_goal: int, revenue: float = 0.0) -> "ParameterBuilder":
        return self._set({"idgoal": id_goal, "revenue": revenue})

    def set_download(self, url: str) -> "ParameterBuilder":
        return self._set({"download": url})

    def set_outlink(self, url: str) -> "ParameterBuilder":
        return self._set({"link": url})

    def set_ping(self) -> "ParameterBuilder":
        """Extend the current visit without tracking a new action."""
        return self._set({"ping": 1})

    def set_generation_time(self, time_ms: int) -> "ParameterBuilder":
        return self._set({"gt_ms": time_ms})

    # -- ecommerce ---------------------------------------------------------

    def add_ecommerce_item(
        self,
        sku: str,
        name: Optional[str] = None,
        category: Optional[Union[str, List[str]]] = None,
        price: float = 0.0,
        quantity: int = 1,
    ) -> "ParameterBuilder":
        """Add a product to the pending order or cart.

        Items are consumed by the next ``set_ecommerce_order`` or
        ``set_ecommerce_cart_update`` call.
        """
        if not sku:
            raise ValidationError("You must specify a SKU for the Ecommerce item")

        self._ecommerce_items.append(EcommerceItem(sku, name, category, price, quantity))
        return self

    def _take_ecommerce_items(self) -> Optional[list]:
        items = [item.as_list() for item in self._ecommerce_items]
        self._ecommerce_items = []
        return items or None

    def set_ecommerce_cart_update(self, grand_total: float) -> "ParameterBuilder":
        return self._set(
            {
                "idgoal": 0,
                "revenue": grand_total or None,
                "ec_items": self._take_ecommerce_items(),
            }
        )

    def set_ecommerce_order(
        self,
        order_id: Union[str, int],
        grand_total: float,
        sub_total: Optional[float] = None,
        tax: Optional[float] = None,
        shipping: Optional[float] = None,
        discount: Optional[float] = None,
    ) -> "ParameterBuilder":
        """Track an order.

        ``order_id`` must be unique per transaction, the collector counts an
        order id only once. Zero amounts are not sent.
        """
        if not order_id:
            raise ValidationError("You must specify an orderId for the Ecommerce order")

        return self._set(
            {
                "idgoal": 0,
                "ec_id": order_id,
                "revenue": grand_total or None,
                "ec_st": sub_total or None,
                "ec_tx": tax or None,
                "ec_sh": shipping or None,
                "ec_dt": discount or None,
                "ec_items": self._take_ecommerce_items(),
            }
        )

    def set_ecommerce_view(
        self,
        sku: str = "",
        name: str = "",
        category: Union[str, List[str]] = "",
        price: float = 0.0,
    ) -> "ParameterBuilder":
        """Mark the next page view as a product (or category) page view."""
        if isinstance(category, (list, tuple)):
            category = json.dumps(list(category), separators=(",", ":"))
        self.set_custom_variable(CVAR_INDEX_ECOMMERCE_ITEM_CATEGORY, "_pkc", category or "", "page")

        if price:
            self.set_custom_variable(CVAR_INDEX_ECOMMERCE_ITEM_PRICE, "_pkp", str(price), "page")

        # category pages carry no product
        if not sku and not name:
            return self
        if sku:
            self.set_custom_variable(CVAR_INDEX_ECOMMERCE_ITEM_SKU, "_pks", sku, "page")
        return self.set_custom_variable(CVAR_INDEX_ECOMMERCE_ITEM_NAME, "_pkn", name or "", "page")

    # -- custom variables & parameters ------------------------------------

    def _custom_variable_key(self, scope: str) -> str:
        try:
            return _CUSTOM_VARIABLE_KEYS[scope]
        except KeyError:
            raise ValidationError(f"Invalid 'scope' parameter value: {scope}") from None

    def set_custom_variable(self, slot: int, name: str, value: str, scope: str = "visit") -> "ParameterBuilder":
        key = self._custom_variable_key(scope)
        variables = dict(self._params.get(key) or {})
        variables[str(slot)] = [name, value]
        return self._set({key: variables})

    def get_custom_variable(self, slot: int, scope: str = "visit") -> Optional[List[str]]:
        key = self._custom_variable_key(scope)
        variable = (self._params.get(key) or {}).get(str(slot))
        if variable is not None or scope != "visit" or self.context is None:
            return variable

        stored = cookies.load_custom_variables(
            self.context.cookies, self.id_site, self.context.host, self.cookie_domain, self.cookie_path
        ).get(str(slot))
        if isinstance(stored, list) and len(stored) == 2:
            return stored
        return None

    def clear_custom_variables(self) -> "ParameterBuilder":
        return self._set({key: None for key in _CUSTOM_VARIABLE_KEYS.values()})

    def set_custom_tracking_parameter(self, name: str, value: Any) -> "ParameterBuilder":
        """Send an arbitrary parameter (eg. ``dimension1``) with the next request only."""
        return self._set({name: value})

    # -- visit identity ----------------------------------------------------

    def set_ip(self, ip: Optional[str]) -> "ParameterBuilder":
        """Override the visitor IP. The collector requires a token for this."""
        if ip == "":
            raise ValidationError("IP cannot be empty.")
        return self._set({"cip": ip})

    def set_user_id(self, user_id: Optional[str]) -> "ParameterBuilder":
        if user_id == "":
            raise ValidationError("User ID cannot be empty.")
        return self._set({"uid": user_id})

    def set_page_id(self, page_id: str) -> "ParameterBuilder":
        """Six character id grouping the actions of one page view."""
        if not page_id:
            raise ValidationError("Page ID cannot be empty.")
        self._page_id_forced = True
        self._page_id_used = False
        return self._set({"pv_id": page_id})

    def set_auth_token(self, token: str) -> "ParameterBuilder":
        if not is_valid_auth_token(token, self.token_length):
            raise ValidationError("Invalid authorization key.")
        return self._set({"token_auth": token})

    def set_visitor_id(self, visitor_id: str) -> "ParameterBuilder":
        if not cookies.is_visitor_id(visitor_id):
            raise ValidationError("Visitor ID must be 16 lowercase hex characters.")
        return self._set({"cid": visitor_id})

    def set_new_visitor_id(self) -> "ParameterBuilder":
        self._random_visitor_id = cookies.random_hex(cookies.VISITOR_ID_LENGTH)
        if self.visitor is not None:
            self.visitor.visitor_id = self._random_visitor_id
            self.visitor.from_cookie = False
        return self._set({"uid": None, "cid": None})

    def get_visitor_id(self) -> str:
        user_id = self._params.get("uid")
        if user_id:
            return cookies.hash_user_id(user_id)
        if self._params.get("cid"):
            return self._params["cid"]
        if self.visitor is not None:
            return self.visitor.visitor_id
        return self._random_visitor_id

    def set_force_visit_datetime(self, date_time: Optional[Union[str, int]]) -> "ParameterBuilder":
        """Record requests in the past (UTC ``Y-m-d H:i:s`` or unix time)."""
        return self._set({"cdt": date_time})

    def set_force_new_visit(self) -> "ParameterBuilder":
        return self._set({"new_visit": 1})

    def set_attribution_info(self, attribution: Optional[List[Any]]) -> "ParameterBuilder":
        """Attribute later goal conversions to ``[campaign, keyword, timestamp, referrer]``."""
        attribution = list(attribution) if attribution else None
        self._attribution = attribution
        parts = (attribution or []) + [None] * 4
        return self._set({"_rcn": parts[0], "_rck": parts[1], "_refts": parts[2], "_ref": parts[3]})

    # -- location & device -------------------------------------------------

    def set_location(
        self,
        country: Optional[str] = None,
        region: Optional[str] = None,
        city: Optional[str] = None,
        lat: Optional[float] = None,
        long: Optional[float] = None,
    ) -> "ParameterBuilder":
        return self._set({"country": country, "region": region, "city": city, "lat": lat, "long": long})

    def set_resolution(self, width: int, height: int) -> "ParameterBuilder":
        return self._set({"res": f"{width}x{height}"})

    def set_local_time(self, local_time: str) -> "ParameterBuilder":
        """Visitor local time as ``HH:MM:SS``."""
        try:
            hour, minute, second = (int(part) for part in local_time.split(":"))
        except ValueError:
            raise ValidationError(f"Invalid local time: {local_time}") from None
        return self._set({"h": hour, "m": minute, "s": second})

    def set_browser_has_cookies(self, has_cookies: bool) -> "ParameterBuilder":
        return self._set({"cookie": bool(has_cookies)})

    def set_plugins(
        self,
        flash: bool = False,
        java: bool = False,
        director: bool = False,
        quick_time: bool = False,
        real_player: bool = False,
        pdf: bool = False,
        windows_media: bool = False,
        gears: bool = False,
        silverlight: bool = False,
    ) -> "ParameterBuilder":
        flags = (flash, java, director, quick_time, real_player, pdf, windows_media, gears, silverlight)
        return self._set({key: int(flag) for key, flag in zip(_PLUGIN_KEYS, flags)})

    def disable_send_image_response(self) -> "ParameterBuilder":
        """Ask the collector for a 204 instead of a tracking pixel."""
        return self._set({"send_image": 0})

    # -- output ------------------------------------------------------------

    def _visitor_params(self) -> Dict[str, Any]:
        if self.visitor is None:
            return {}
        params: Dict[str, Any] = {}
        if "cid" not in self._params:
            params["_id"] = self.get_visitor_id()
        params["_idts"] = self.visitor.create_ts
        params["_idvc"] = self.visitor.visit_count
        params["_viewts"] = self.visitor.last_visit_ts
        params["_ects"] = self.visitor.last_order_ts
        return {key: value for key, value in params.items() if value is not None}

    def peek(self) -> Mapping[str, Any]:
        """Current parameters, without closing the page-level context."""
        snapshot = copy.deepcopy(self._params)
        snapshot.update(self._visitor_params())
        return MappingProxyType(snapshot)

    def finalize(self) -> Mapping[str, Any]:
        """Close the current request and return its parameters.

        Page and event level values are cleared afterwards, so the next
        request on this builder starts a new page context for the same visit.
        """
        if self._page_view_pending and self._page_id_used and not self._page_id_forced:
            self._params["pv_id"] = cookies.random_hex(PAGE_ID_LENGTH)

        snapshot = self.peek()

        if self.visitor is not None and "ec_id" in self._params:
            self.visitor.last_order_ts = self.visitor.current_ts or int(time.time())

        self._params = {key: value for key, value in self._params.items() if key in _VISIT_KEYS}
        self._page_view_pending = False
        self._page_id_forced = False
        self._page_id_used = True

        logger.debug("finalized tracking request with %d parameters", len(snapshot))
        return snapshot

    def intended_cookies(self) -> List[CookieSpec]:
        """First-party cookies to write back to the browser for this visit."""
        if self.visitor is None or self.context is None:
            return []

        attribution = self._attribution
        if attribution is None:
            stored = cookies.find_cookie(
                self.context.cookies,
                cookies.cookie_name("ref", self.id_site, self.context.host, self.cookie_domain, self.cookie_path),
            )
            if stored:
                try:
                    attribution = json.loads(stored)
                except ValueError:
                    attribution = None

        return cookies.first_party_cookies(
            self.get_visitor_id(),
            self.visitor,
            self.id_site,
            self.context.host,
            self.cookie_domain,
            self.cookie_path,
            attribution=attribution if isinstance(attribution, list) else None,
            custom_variables=self._params.get("_cvar"),
        )
