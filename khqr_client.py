from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

import httpx

from config import KHQR_API_URL, KHQR_CHECK_URL, KHQR_TIMEOUT
from errors import GatewayError

logger = logging.getLogger(__name__)

PAID_RESPONSE_CODE = 0


@dataclass(frozen=True)
class CreatedPayment:
    display_url: Optional[str]
    raw_payload: Optional[str]
    payment_hash: str
    gateway_transaction_id: Optional[str]


@dataclass(frozen=True)
class PaymentStatus:
    paid: bool
    response_code: Optional[int] = None


@dataclass(frozen=True)
class RenderedQr:
    image: bytes


@dataclass(frozen=True)
class PayloadQr:
    payload: str


@dataclass(frozen=True)
class LinkedQr:
    url: str


QrArtifact = Union[RenderedQr, PayloadQr, LinkedQr]


def _format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


class KhqrClient:
    """Async client for the KHQR gateway (create QR / check by md5)."""

    def __init__(
        self,
        *,
        api_url: str = KHQR_API_URL,
        check_url: str = KHQR_CHECK_URL,
        timeout: float = KHQR_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._check_url = check_url
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get_json(self, url: str, *, params: dict, headers: dict | None = None) -> dict:
        try:
            resp = await self._http.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"KHQR request to {url} failed: {e!r}") from e

        if resp.status_code not in (200, 201):
            raise GatewayError(
                f"KHQR {url} answered HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError(f"KHQR {url} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise GatewayError(f"KHQR {url} returned unexpected payload: {data!r}")
        return data

    async def create_payment(self, amount: Decimal, settings) -> CreatedPayment:
        headers = {}
        if settings.bearer_token:
            headers["Authorization"] = f"Bearer {settings.bearer_token}"

        data = await self._get_json(
            f"{self._api_url}/create",
            params={
                "amount": _format_amount(amount),
                "bakongid": settings.merchant_id,
                "merchantname": settings.merchant_name,
            },
            headers=headers,
        )

        display_url = data.get("qr") or None
        raw_payload = data.get("qrdata") or None
        payment_hash = data.get("md5") or None
        if not payment_hash or not (display_url or raw_payload):
            logger.error("Invalid response from KHQR API: %s", data)
            raise GatewayError("Invalid response from payment service: missing QR or md5")

        tran_id = data.get("transactionid")
        return CreatedPayment(
            display_url=display_url,
            raw_payload=raw_payload,
            payment_hash=str(payment_hash),
            gateway_transaction_id=str(tran_id) if tran_id else None,
        )

    async def check_status(self, payment_hash: str, merchant_id: str) -> PaymentStatus:
        data = await self._get_json(
            self._check_url,
            params={"md5": payment_hash, "bakongid": merchant_id},
        )
        code = data.get("responseCode")
        paid = code == PAID_RESPONSE_CODE and not isinstance(code, bool)
        return PaymentStatus(paid=paid, response_code=code)

    async def resolve_artifact(self, created: CreatedPayment) -> QrArtifact:
        """Turn the gateway's QR fields into something the notifier can display."""
        if created.display_url:
            try:
                resp = await self._http.get(created.display_url)
                resp.raise_for_status()
                return RenderedQr(image=resp.content)
            except httpx.HTTPError as e:
                logger.error("Fetching QR image %s failed: %r", created.display_url, e)
                if not created.raw_payload:
                    # Telegram can still fetch the hosted image itself
                    return LinkedQr(url=created.display_url)
        return PayloadQr(payload=created.raw_payload)
