import json
import os
import re
import sys
from urllib.parse import parse_qs, parse_qsl

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from matomo_tracking.builder import ParameterBuilder
from matomo_tracking.errors import ValidationError
from matomo_tracking.models.context import TrackingContext
from matomo_tracking.models.visitor import VisitorState
from matomo_tracking.serializer import build_url, encode_query

TRACKER_URL = "https://tracker.com/piwik.php"


def _builder(**overrides: object) -> ParameterBuilder:
    context = TrackingContext(target_url="https://example.com")
    return ParameterBuilder.from_context(context, 1, **overrides)


def test_minimal_request_from_context():
    builder = _builder().set_page_id("123456")

    assert encode_query(builder.finalize()) == (
        "idsite=1&rec=1&apiv=1&pv_id=123456&url=https%3A%2F%2Fexample.com"
    )


def test_full_chain_matches_collector_contract():
    builder = (
        _builder()
        .set_page_id("123456")
        .set_page_view("action_name")
        .set_rand("1550572778")
        .set_event("Videos", "Play", "object_name", "value")
        .set_content_impression("Ad Foo Bar", "Unknown", "https://example.com/landing_page", "click")
        .set_site_search("keyword", "Videos", 0)
        .set_goal(1234567890)
        .set_download("https://example.com/download")
        .set_ip("127.0.0.1")
        .set_user_id("this_is_user_id")
        .set_auth_token("auth_token")
    )

    expected = (
        "https://tracker.com/piwik.php?"
        "idsite=1&"
        "rec=1&"
        "apiv=1&"
        "pv_id=123456&"
        "url=https%3A%2F%2Fexample.com&"
        "action_name=action_name&"
        "rand=1550572778&"
        "e_c=Videos&"
        "e_a=Play&"
        "e_n=object_name&"
        "e_v=value&"
        "c_i=click&"
        "c_n=Ad+Foo+Bar&"
        "c_p=Unknown&"
        "c_t=https%3A%2F%2Fexample.com%2Flanding_page&"
        "search=keyword&"
        "search_cat=Videos&"
        "search_count=0&"
        "idgoal=1234567890&"
        "revenue=0&"
        "download=https%3A%2F%2Fexample.com%2Fdownload&"
        "cip=127.0.0.1&"
        "uid=this_is_user_id&"
        "token_auth=auth_token"
    )
    assert build_url(TRACKER_URL, builder.finalize()) == expected


def test_every_set_parameter_appears_once():
    builder = _builder().set_page_view("Home").set_event("Videos", "Play").set_outlink("https://other.org")
    pairs = parse_qsl(encode_query(builder.finalize()))
    keys = [key for key, _ in pairs]

    assert len(keys) == len(set(keys))
    assert {"action_name", "e_c", "e_a", "link"} <= set(keys)
    assert "e_n" not in keys and "e_v" not in keys


def test_generated_page_id_is_six_hex_chars():
    snapshot = _builder().finalize()

    assert re.fullmatch(r"[0-9a-f]{6}", snapshot["pv_id"])


def test_page_view_set_twice_keeps_last_title():
    query = encode_query(_builder().set_page_view("A").set_page_view("B").finalize())

    assert parse_qs(query)["action_name"] == ["B"]


def test_context_referrer_and_ip_are_sent():
    context = TrackingContext(
        target_url="https://example.com/page",
        referrer_url="https://search.example.org/?q=x",
        client_ip="10.1.2.3",
    )
    snapshot = ParameterBuilder(7, context).finalize()

    assert snapshot["urlref"] == "https://search.example.org/?q=x"
    assert snapshot["cip"] == "10.1.2.3"
    assert snapshot["idsite"] == 7


def test_ip_not_set_leaves_cip_absent():
    assert "cip" not in _builder().finalize()


@pytest.mark.parametrize(
    "call, message",
    [
        (lambda b: b.set_event("", "click"), "Event Category"),
        (lambda b: b.set_event("Videos", ""), "Event action"),
        (lambda b: b.set_content_impression(""), "content name"),
        (lambda b: b.set_content_interaction("", "Ad"), "name for the interaction"),
        (lambda b: b.set_content_interaction("click", ""), "content name"),
        (lambda b: b.set_ip(""), "IP cannot be empty."),
        (lambda b: b.set_user_id(""), "User ID cannot be empty."),
        (lambda b: b.set_page_id(""), "Page ID cannot be empty."),
        (lambda b: b.add_ecommerce_item(""), "SKU"),
        (lambda b: b.set_ecommerce_order("", 10.0), "orderId"),
        (lambda b: b.set_ecommerce_order(0, 10.0), "orderId"),
        (lambda b: b.set_custom_variable(1, "a", "b", "session"), "Invalid 'scope'"),
        (lambda b: b.set_visitor_id("not-hex"), "Visitor ID"),
    ],
)
def test_setters_validate_at_call_site(call, message):
    builder = _builder()

    with pytest.raises(ValidationError, match=re.escape(message)):
        call(builder)


def test_auth_token_check_is_not_inverted():
    token = "0" * 32

    assert _builder().set_auth_token(token).finalize()["token_auth"] == token
    assert _builder(token_length=32).set_auth_token(token).finalize()["token_auth"] == token


def test_auth_token_rejected_when_length_differs():
    with pytest.raises(ValidationError, match="Invalid authorization key."):
        _builder(token_length=32).set_auth_token("auth_token")


@pytest.mark.parametrize("token", ["", "has space", "semi;colon"])
def test_malformed_auth_token_rejected(token):
    with pytest.raises(ValidationError, match="Invalid authorization key."):
        _builder().set_auth_token(token)


def test_content_interaction_uses_declared_parameters():
    snapshot = _builder().set_content_interaction("click", "Ad Foo Bar", "banner.png", "https://x.org").finalize()

    assert (snapshot["c_i"], snapshot["c_n"], snapshot["c_p"], snapshot["c_t"]) == (
        "click",
        "Ad Foo Bar",
        "banner.png",
        "https://x.org",
    )


def test_ecommerce_order_round_trips_items_in_order():
    builder = (
        _builder()
        .add_ecommerce_item("SKU1", "Shirt", ["Men", "Summer"], 19.99, 2)
        .add_ecommerce_item("SKU2", "Socks", "Accessories", 4.5)
        .add_ecommerce_item("SKU3")
        .set_ecommerce_order("A1000", 44.48, 40.48, 4.0, shipping=0.0)
    )
    decoded = dict(parse_qsl(encode_query(builder.finalize())))

    assert json.loads(decoded["ec_items"]) == [
        ["SKU1", "Shirt", ["Men", "Summer"], 19.99, 2],
        ["SKU2", "Socks", "Accessories", 4.5, 1],
        ["SKU3", "", "", 0.0, 1],
    ]
    assert decoded["idgoal"] == "0"
    assert decoded["ec_id"] == "A1000"
    assert decoded["revenue"] == "44.48"
    assert decoded["ec_st"] == "40.48"
    assert decoded["ec_tx"] == "4"
    assert "ec_sh" not in decoded


def test_ecommerce_items_are_consumed_by_order():
    builder = _builder().add_ecommerce_item("SKU1").set_ecommerce_order("A1", 10.0)
    builder.finalize()

    snapshot = builder.set_ecommerce_cart_update(5.0).finalize()

    assert "ec_items" not in snapshot
    assert snapshot["revenue"] == 5.0


def test_finalize_clears_page_scope_and_keeps_visit_scope():
    builder = (
        _builder()
        .set_ip("127.0.0.1")
        .set_user_id("user-1")
        .set_custom_variable(1, "plan", "pro")
        .set_custom_variable(2, "section", "news", "page")
        .set_custom_tracking_parameter("dimension1", "blue")
        .set_page_view("Home")
        .set_event("Videos", "Play")
        .set_force_new_visit()
    )
    first = builder.finalize()
    second = builder.finalize()

    assert first["action_name"] == "Home"
    assert first["dimension1"] == "blue"
    assert first["new_visit"] == 1
    for key in ("action_name", "e_c", "e_a", "cvar", "dimension1", "new_visit"):
        assert key not in second
    assert second["cip"] == "127.0.0.1"
    assert second["uid"] == "user-1"
    assert second["_cvar"] == {"1": ["plan", "pro"]}
    assert second["url"] == "https://example.com"


def test_snapshot_is_immutable_and_detached():
    builder = _builder().set_custom_variable(1, "plan", "pro")
    snapshot = builder.finalize()

    with pytest.raises(TypeError):
        snapshot["idsite"] = 2  # type: ignore[index]

    builder.set_custom_variable(1, "plan", "free")
    assert snapshot["_cvar"] == {"1": ["plan", "pro"]}


def test_page_view_after_sent_page_gets_new_page_id():
    builder = _builder()
    first = builder.set_page_view("A").finalize()
    event = builder.set_event("Videos", "Play").finalize()
    second = builder.set_page_view("B").finalize()

    assert event["pv_id"] == first["pv_id"]
    assert second["pv_id"] != first["pv_id"]


def test_explicit_page_id_wins_over_regeneration():
    builder = _builder()
    builder.set_page_view("A").finalize()

    assert builder.set_page_id("abcdef").set_page_view("B").finalize()["pv_id"] == "abcdef"


def test_custom_variables_lookup():
    builder = _builder().set_custom_variable(3, "k", "v", "event")

    assert builder.get_custom_variable(3, "event") == ["k", "v"]
    assert builder.get_custom_variable(3, "page") is None

    builder.clear_custom_variables()
    assert builder.get_custom_variable(3, "event") is None


def test_ecommerce_view_sets_page_custom_variables():
    snapshot = _builder().set_ecommerce_view("SKU1", "Shirt", ["Men", "Summer"], 19.99).finalize()

    assert snapshot["cvar"] == {
        "5": ["_pkc", '["Men","Summer"]'],
        "2": ["_pkp", "19.99"],
        "3": ["_pks", "SKU1"],
        "4": ["_pkn", "Shirt"],
    }


def test_device_and_location_parameters():
    snapshot = (
        _builder()
        .set_resolution(1280, 1024)
        .set_local_time("09:05:30")
        .set_browser_has_cookies(True)
        .set_plugins(flash=True, pdf=True)
        .set_location(country="fr", city="Lyon", lat=45.76)
        .disable_send_image_response()
        .finalize()
    )

    assert snapshot["res"] == "1280x1024"
    assert (snapshot["h"], snapshot["m"], snapshot["s"]) == (9, 5, 30)
    assert snapshot["cookie"] is True
    assert snapshot["fla"] == 1 and snapshot["pdf"] == 1 and snapshot["java"] == 0
    assert (snapshot["country"], snapshot["city"], snapshot["lat"]) == ("fr", "Lyon", 45.76)
    assert "region" not in snapshot
    assert snapshot["send_image"] == 0


def test_local_time_must_be_well_formed():
    with pytest.raises(ValidationError):
        _builder().set_local_time("noon")


def test_attribution_info_parameters():
    snapshot = _builder().set_attribution_info(["spring", "shoes", 1550572778, "https://ads.example"]).finalize()

    assert snapshot["_rcn"] == "spring"
    assert snapshot["_rck"] == "shoes"
    assert snapshot["_refts"] == 1550572778
    assert snapshot["_ref"] == "https://ads.example"


def test_visitor_parameters_only_with_visitor_state():
    assert "_id" not in _builder().finalize()

    visitor = VisitorState(visitor_id="0123456789abcdef", create_ts=1500000000, visit_count=3, last_visit_ts=1550000000)
    snapshot = _builder(visitor=visitor).finalize()

    assert snapshot["_id"] == "0123456789abcdef"
    assert snapshot["_idts"] == 1500000000
    assert snapshot["_idvc"] == 3
    assert snapshot["_viewts"] == 1550000000
    assert "_ects" not in snapshot


def test_visitor_id_resolution_order():
    visitor = VisitorState(visitor_id="0123456789abcdef", create_ts=1)
    builder = _builder(visitor=visitor)
    assert builder.get_visitor_id() == "0123456789abcdef"

    builder.set_visitor_id("fedcba9876543210")
    snapshot = builder.peek()
    assert snapshot["cid"] == "fedcba9876543210"
    assert "_id" not in snapshot

    builder.set_user_id("user@example.org")
    assert re.fullmatch(r"[0-9a-f]{16}", builder.get_visitor_id())
    assert builder.get_visitor_id() != "fedcba9876543210"


def test_new_visitor_id_resets_identity():
    visitor = VisitorState(visitor_id="0123456789abcdef", create_ts=1, from_cookie=True)
    builder = _builder(visitor=visitor).set_user_id("u1")

    builder.set_new_visitor_id()

    assert "uid" not in builder.peek()
    assert builder.get_visitor_id() != "0123456789abcdef"
    assert re.fullmatch(r"[0-9a-f]{16}", builder.get_visitor_id())


def test_order_records_last_order_timestamp_on_visitor():
    visitor = VisitorState(visitor_id="0123456789abcdef", create_ts=1, current_ts=1600000000)
    builder = _builder(visitor=visitor)

    builder.set_ecommerce_order("A1", 10.0).finalize()

    assert visitor.last_order_ts == 1600000000
    assert builder.finalize()["_ects"] == 1600000000
