"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from database import Repo
from errors import GatewayError
from khqr_client import CreatedPayment, PayloadQr, PaymentStatus
from payments import KhqrPaymentEngine
from settings import KhqrSettings


@pytest.fixture
def khqr_settings() -> KhqrSettings:
    return KhqrSettings(
        merchant_id="store@aclb",
        merchant_name="Test Store",
        bearer_token="aaaa.bbbb.cccc",
        min_topup=Decimal("0.01"),
        max_topup=Decimal("1000"),
    )


class StaticSettings:
    """Settings provider that never touches the database."""

    def __init__(self, settings: KhqrSettings):
        self.settings = settings

    async def current(self) -> KhqrSettings:
        return self.settings


class FakeGateway:
    """Scriptable KHQR gateway.

    Hashes are md5-1, md5-2, ... in creation order. `paid` holds the hashes the
    gateway reports as paid; `failing` makes every status check raise.
    """

    def __init__(self):
        self.created: list[str] = []
        self.checks: dict[str, int] = {}
        self.paid: set[str] = set()
        self.failing = False
        self.create_error: Exception | None = None

    async def create_payment(self, amount: Decimal, settings) -> CreatedPayment:
        if self.create_error is not None:
            raise self.create_error
        payment_hash = f"md5-{len(self.created) + 1}"
        self.created.append(payment_hash)
        return CreatedPayment(
            display_url=None,
            raw_payload=f"khqr-payload-{payment_hash}",
            payment_hash=payment_hash,
            gateway_transaction_id=f"tran-{payment_hash}",
        )

    async def check_status(self, payment_hash: str, merchant_id: str) -> PaymentStatus:
        self.checks[payment_hash] = self.checks.get(payment_hash, 0) + 1
        if self.failing:
            raise GatewayError("gateway unreachable")
        if payment_hash in self.paid:
            return PaymentStatus(paid=True, response_code=0)
        return PaymentStatus(paid=False, response_code=1)

    async def resolve_artifact(self, created: CreatedPayment):
        return PayloadQr(payload=created.raw_payload)


class FakeNotifier:
    """Records everything the engine shows to users."""

    def __init__(self):
        self.artifacts: list[tuple[int, Any, str]] = []
        self.deleted: list[Any] = []
        self.texts: list[tuple[int, str]] = []
        self.fail_delivery = False
        self.during_delivery = None

    async def deliver_artifact(self, owner_id, artifact, caption, reply_markup=None):
        if self.fail_delivery:
            raise RuntimeError("telegram down")
        if self.during_delivery is not None:
            await self.during_delivery()
        self.artifacts.append((owner_id, artifact, caption))
        return ("ref", owner_id, len(self.artifacts))

    async def delete_artifact(self, ref) -> None:
        self.deleted.append(ref)

    async def send_text(self, owner_id, text, reply_markup=None) -> None:
        self.texts.append((owner_id, text))

    def texts_for(self, owner_id: int) -> list[str]:
        return [t for o, t in self.texts if o == owner_id]


@pytest.fixture
def mongo_db():
    return AsyncMongoMockClient()["khqr_store_test"]


@pytest.fixture
def repo(mongo_db) -> Repo:
    return Repo(mongo_db)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def settings_provider(khqr_settings) -> StaticSettings:
    return StaticSettings(khqr_settings)


@pytest_asyncio.fixture
async def engine(repo, gateway, notifier, settings_provider, tmp_path) -> AsyncGenerator[KhqrPaymentEngine, Any]:
    """Engine with a fast clock: 10ms polls, 20 checks, 0.5s expiry."""
    eng = KhqrPaymentEngine(
        repo,
        gateway,
        notifier,
        settings_provider,
        poll_interval=0.01,
        max_checks=20,
        expiry_seconds=0.5,
        cleanup_interval=3600,
        settle_retries=2,
        retry_delay=0.01,
        error_log_path=str(tmp_path / "error.txt"),
    )
    yield eng
    await eng.stop()
