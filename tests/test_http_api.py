"""Tests for the httpx-based upstream client."""

import json

import httpx
import pytest

from conftest import BASE_TIME, GUID_A
from ordersync.schemas import OrdersDetailEnum, OrdersQuery
from ordersync.services.orders_api.base import OrdersApiError, OrdersPayloadError
from ordersync.services.orders_api.http import HttpOrdersApi


def build_api(handler) -> HttpOrdersApi:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://orders.test",
    )
    return HttpOrdersApi("https://orders.test", client=client)


def json_response(payload, status_code=200, headers=None) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload), headers=headers)


class TestFetchLatest:
    @pytest.mark.asyncio
    async def test_sends_query_parameters(self):
        seen = []

        def handler(request):
            seen.append(request)
            return json_response({"ok": True, "detail": "ids", "orders": [GUID_A]})

        api = build_api(handler)
        listing = await api.fetch_latest(OrdersQuery(limit=50, since=BASE_TIME))

        params = seen[0].url.params
        assert seen[0].url.path == "/api/orders"
        assert params["limit"] == "50"
        assert params["detail"] == "ids"
        assert params["since"] == "2024-05-01T10:00:00Z"
        assert "minutes" not in params
        assert listing.orders == [GUID_A]

    @pytest.mark.asyncio
    async def test_bare_list_is_wrapped(self):
        api = build_api(lambda request: json_response([{"guid": GUID_A}]))

        listing = await api.fetch_latest(OrdersQuery(limit=5, detail=OrdersDetailEnum.FULL, minutes=10))

        assert listing.detail == "full"
        assert listing.orders == [{"guid": GUID_A}]

    @pytest.mark.asyncio
    async def test_ok_false_is_an_error(self):
        api = build_api(lambda request: json_response({"ok": False, "orders": []}))

        with pytest.raises(OrdersApiError):
            await api.fetch_latest(OrdersQuery(limit=5, minutes=10))

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        api = build_api(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(OrdersPayloadError) as exc_info:
            await api.fetch_latest(OrdersQuery(limit=5, minutes=10))
        assert exc_info.value.is_transient is False

    @pytest.mark.asyncio
    async def test_unexpected_envelope(self):
        api = build_api(lambda request: json_response({"orders": "nope"}))

        with pytest.raises(OrdersPayloadError):
            await api.fetch_latest(OrdersQuery(limit=5, minutes=10))

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        api = build_api(lambda request: json_response({}, status_code=503))

        with pytest.raises(OrdersApiError) as exc_info:
            await api.fetch_latest(OrdersQuery(limit=5, minutes=10))
        assert exc_info.value.status_code == 503
        assert exc_info.value.is_transient is True

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(OrdersApiError) as exc_info:
            await build_api(handler).fetch_latest(OrdersQuery(limit=5, minutes=10))
        assert exc_info.value.status_code is None
        assert exc_info.value.is_transient is True


class TestFetchOrder:
    @pytest.mark.asyncio
    async def test_unwraps_order_envelope(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return json_response({"order": {"guid": GUID_A}})

        order = await build_api(handler).fetch_order(GUID_A)

        assert order == {"guid": GUID_A}
        assert seen == [f"/api/orders/{GUID_A}"]

    @pytest.mark.asyncio
    async def test_not_found_is_none(self):
        api = build_api(lambda request: json_response({"error": "missing"}, status_code=404))
        assert await api.fetch_order(GUID_A) is None

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        api = build_api(lambda request: json_response([1, 2]))
        with pytest.raises(OrdersPayloadError):
            await api.fetch_order(GUID_A)


@pytest.mark.asyncio
async def test_documents_carry_cache_control():
    def handler(request):
        if request.url.path == "/api/menus":
            return json_response({"menus": []}, headers={"Cache-Control": "max-age=120"})
        return json_response({"diningOptions": []})

    api = build_api(handler)
    menus = await api.fetch_menus()
    config = await api.fetch_config()

    assert menus.payload == {"menus": []}
    assert menus.cache_control == "max-age=120"
    assert config.cache_control is None


@pytest.mark.asyncio
async def test_health_check():
    assert await build_api(lambda request: json_response({"orders": []})).health_check() is True
    assert await build_api(lambda request: json_response({}, status_code=500)).health_check() is False


def test_base_url_required():
    with pytest.raises(ValueError):
        HttpOrdersApi("")


def test_transient_status_codes():
    assert OrdersApiError("x", status_code=429).is_transient is True
    assert OrdersApiError("x", status_code=404).is_transient is False
