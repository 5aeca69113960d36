"""
Tests for the KHQR gateway client using httpx.MockTransport.
"""
from decimal import Decimal

import httpx
import pytest

from errors import GatewayError
from khqr_client import CreatedPayment, KhqrClient, LinkedQr, PayloadQr, RenderedQr

API = "https://khqr.test/khqr"
CHECK = "https://khqr.test/check_by_md5"


def make_client(handler) -> KhqrClient:
    return KhqrClient(api_url=API, check_url=CHECK, timeout=5, transport=httpx.MockTransport(handler))


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_success(self, khqr_settings) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={"qr": "https://khqr.test/qr.png", "qrdata": "000201...", "md5": "abc123", "transactionid": 77},
            )

        client = make_client(handler)
        created = await client.create_payment(Decimal("5"), khqr_settings)
        await client.aclose()

        assert created == CreatedPayment(
            display_url="https://khqr.test/qr.png",
            raw_payload="000201...",
            payment_hash="abc123",
            gateway_transaction_id="77",
        )
        assert seen["url"].path == "/khqr/create"
        assert seen["url"].params["amount"] == "5.00"
        assert seen["url"].params["bakongid"] == "store@aclb"
        assert seen["url"].params["merchantname"] == "Test Store"
        assert seen["auth"] == "Bearer aaaa.bbbb.cccc"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{"qr": "https://khqr.test/qr.png"}, {"md5": "abc123"}, {"error": "bad merchant"}],
    )
    async def test_incomplete_response(self, khqr_settings, body) -> None:
        client = make_client(lambda request: httpx.Response(200, json=body))

        with pytest.raises(GatewayError):
            await client.create_payment(Decimal("5"), khqr_settings)

    @pytest.mark.asyncio
    async def test_http_error_status(self, khqr_settings) -> None:
        client = make_client(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(GatewayError) as exc:
            await client.create_payment(Decimal("5"), khqr_settings)
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_timeout(self, khqr_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(GatewayError):
            await client.create_payment(Decimal("5"), khqr_settings)

    @pytest.mark.asyncio
    async def test_non_json_body(self, khqr_settings) -> None:
        client = make_client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(GatewayError):
            await client.create_payment(Decimal("5"), khqr_settings)


class TestCheckStatus:
    @pytest.mark.asyncio
    async def test_paid_when_response_code_zero(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"responseCode": 0})

        status = await make_client(handler).check_status("abc123", "store@aclb")

        assert status.paid is True
        assert seen["params"] == {"md5": "abc123", "bakongid": "store@aclb"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"responseCode": 1}, {"responseCode": False}, {}])
    async def test_not_paid(self, body) -> None:
        status = await make_client(lambda request: httpx.Response(200, json=body)).check_status("abc123", "store@aclb")

        assert status.paid is False

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GatewayError):
            await make_client(handler).check_status("abc123", "store@aclb")


class TestResolveArtifact:
    def _created(self, url=None, payload=None) -> CreatedPayment:
        return CreatedPayment(display_url=url, raw_payload=payload, payment_hash="abc123", gateway_transaction_id=None)

    @pytest.mark.asyncio
    async def test_fetches_image(self) -> None:
        client = make_client(lambda request: httpx.Response(200, content=b"\x89PNGdata"))

        artifact = await client.resolve_artifact(self._created(url="https://khqr.test/qr.png", payload="000201"))

        assert artifact == RenderedQr(image=b"\x89PNGdata")

    @pytest.mark.asyncio
    async def test_falls_back_to_payload(self) -> None:
        client = make_client(lambda request: httpx.Response(404))

        artifact = await client.resolve_artifact(self._created(url="https://khqr.test/qr.png", payload="000201"))

        assert artifact == PayloadQr(payload="000201")

    @pytest.mark.asyncio
    async def test_falls_back_to_link(self) -> None:
        client = make_client(lambda request: httpx.Response(404))

        artifact = await client.resolve_artifact(self._created(url="https://khqr.test/qr.png"))

        assert artifact == LinkedQr(url="https://khqr.test/qr.png")

    @pytest.mark.asyncio
    async def test_payload_only(self) -> None:
        client = make_client(lambda request: httpx.Response(500))

        assert await client.resolve_artifact(self._created(payload="000201")) == PayloadQr(payload="000201")
