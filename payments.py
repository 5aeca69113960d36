from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, AsyncIterator, Optional

from config import (
    CLEANUP_INTERVAL_SECONDS,
    MAX_POLL_CHECKS,
    POLL_INTERVAL_SECONDS,
    QR_EXPIRY_SECONDS,
    SETTLE_RETRIES,
)
from database import from_cents
from errors import GatewayError, LedgerError, ValidationError

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ERROR_LOG = os.path.join(BASE_DIR, "error.txt")

CENT = Decimal("0.01")


class PaymentState(Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    SETTLED = "settled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATES = {PaymentState.SETTLED, PaymentState.EXPIRED, PaymentState.CANCELLED}


@dataclass(eq=False)
class PaymentRequest:
    owner_id: int
    amount: Decimal
    payment_hash: str
    gateway_transaction_id: str
    merchant_id: str
    created_at: datetime
    artifact_ref: Any = None
    state: PaymentState = PaymentState.INITIATED
    poll_task: Optional[asyncio.Task] = field(default=None, repr=False)
    expiry_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.state is PaymentState.SETTLED

    def finish(self, state: PaymentState) -> bool:
        """Move to a terminal state. Terminal states never change again."""
        if self.state in TERMINAL_STATES:
            return False
        self.state = state
        return True


def parse_amount(raw: Any, min_amount: Decimal, max_amount: Decimal) -> Decimal:
    """Parse user input into a cent-precise amount inside [min_amount, max_amount]."""
    invalid = "Invalid amount! Please enter a numeric value."
    if isinstance(raw, bool) or raw is None:
        raise ValidationError(invalid)
    try:
        amount = Decimal(str(raw).strip().lstrip("$"))
    except InvalidOperation:
        raise ValidationError(invalid) from None
    if not amount.is_finite():
        raise ValidationError(invalid)
    try:
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context holds
        if amount > max_amount:
            raise ValidationError(f"❌ Maximum topup amount is ${max_amount}. Please enter a lower amount.") from None
        raise ValidationError(invalid) from None
    if amount <= 0:
        raise ValidationError(invalid)
    if amount < min_amount:
        raise ValidationError(f"❌ Minimum topup amount is ${min_amount}. Please enter a higher amount.")
    if amount > max_amount:
        raise ValidationError(f"❌ Maximum topup amount is ${max_amount}. Please enter a lower amount.")
    return amount


class _OwnerLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


def _stop_tasks(*tasks: Optional[asyncio.Task]) -> list[asyncio.Task]:
    current = asyncio.current_task()
    stopped = []
    for t in tasks:
        if t is not None and t is not current and not t.done():
            t.cancel()
            stopped.append(t)
    return stopped


class KhqrPaymentEngine:
    """Tracks live KHQR topups and settles each payment hash at most once.

    One poll task and one expiry task run per pending payment. Settlement and
    expiry race through `claim()`: whoever adds the hash to the processed set
    first does the work, the other path becomes a no-op. At most one payment is
    live per owner; a new topup replaces the previous one.
    """

    def __init__(
        self,
        repo,
        gateway,
        notifier,
        settings,
        *,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_checks: int = MAX_POLL_CHECKS,
        expiry_seconds: float = QR_EXPIRY_SECONDS,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        settle_retries: int = SETTLE_RETRIES,
        retry_delay: float = 1.0,
        reply_markup=None,
        error_log_path: str = ERROR_LOG,
    ):
        self._repo = repo
        self._gateway = gateway
        self._notifier = notifier
        self._settings = settings
        self._poll_interval = poll_interval
        self._max_checks = max_checks
        self._expiry_seconds = expiry_seconds
        self._cleanup_interval = cleanup_interval
        self._settle_retries = max(1, settle_retries)
        self._retry_delay = retry_delay
        self._reply_markup = reply_markup
        self._error_log_path = error_log_path

        self._requests: dict[int, PaymentRequest] = {}
        self._processed: set[str] = set()
        # Hashes whose ledger write is in progress
        self._settling: set[str] = set()
        self._guard = threading.Lock()
        self._owner_locks: dict[int, _OwnerLock] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    # ----- processed-hash guard -----
    def claim(self, payment_hash: str) -> bool:
        """Atomically mark `payment_hash` processed. True only for the first caller."""
        with self._guard:
            if payment_hash in self._processed:
                return False
            self._processed.add(payment_hash)
            return True

    def is_processed(self, payment_hash: str) -> bool:
        with self._guard:
            return payment_hash in self._processed

    # ----- introspection -----
    def get(self, owner_id: int) -> Optional[PaymentRequest]:
        return self._requests.get(int(owner_id))

    def active_payments(self) -> list[PaymentRequest]:
        return list(self._requests.values())

    def _find(self, payment_hash: str) -> Optional[PaymentRequest]:
        for req in self._requests.values():
            if req.payment_hash == payment_hash:
                return req
        return None

    @asynccontextmanager
    async def _owner_lock(self, owner_id: int) -> AsyncIterator[None]:
        """Serialize topup changes per owner. The lock is dropped once nobody holds or waits for it."""
        entry = self._owner_locks.get(owner_id)
        if entry is None:
            entry = self._owner_locks[owner_id] = _OwnerLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._owner_locks.get(owner_id) is entry:
                del self._owner_locks[owner_id]

    # ----- lifecycle -----
    def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="khqr-cleanup")
        logger.info("KHQR payment engine started")

    async def stop(self) -> None:
        tasks = _stop_tasks(self._cleanup_task)
        self._cleanup_task = None
        for req in self._requests.values():
            req.finish(PaymentState.CANCELLED)
            tasks.extend(_stop_tasks(req.poll_task, req.expiry_task))
        self._requests.clear()
        with self._guard:
            self._processed.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("KHQR payment engine stopped")

    # ----- topup -----
    async def start_topup(self, owner_id: int, amount: Any) -> PaymentRequest:
        owner_id = int(owner_id)
        settings = await self._settings.current()
        value = parse_amount(amount, settings.min_topup, settings.max_topup)

        async with self._owner_lock(owner_id):
            await self._supersede(owner_id)

            created = await self._gateway.create_payment(value, settings)
            request = PaymentRequest(
                owner_id=owner_id,
                amount=value,
                payment_hash=created.payment_hash,
                gateway_transaction_id=created.gateway_transaction_id or f"topup_{int(time.time() * 1000)}_{owner_id}",
                merchant_id=settings.merchant_id,
                created_at=datetime.now(timezone.utc),
            )

            await self._repo.record_pending(
                user_id=owner_id,
                amount=value,
                payment_hash=request.payment_hash,
                transaction_id=request.gateway_transaction_id,
                merchant_id=request.merchant_id,
                qr_url=created.display_url,
            )
            request.state = PaymentState.PENDING
            self._requests[owner_id] = request

            request.artifact_ref = await self._deliver_qr(request, created)
            if self._requests.get(owner_id) is not request:
                # Engine stopped while the QR was being sent
                await self._delete_qr(request)
                return request
            request.poll_task = asyncio.create_task(
                self._poll(request), name=f"khqr-poll-{request.payment_hash}"
            )
            request.expiry_task = asyncio.create_task(
                self._expire_later(request), name=f"khqr-expiry-{request.payment_hash}"
            )

        logger.info("QR generated for user %s, amount: %s, md5: %s", owner_id, value, request.payment_hash)
        return request

    async def cancel(self, owner_id: int) -> bool:
        """Drop the owner's live payment. Its ledger entry stays pending for the cleanup sweep."""
        owner_id = int(owner_id)
        async with self._owner_lock(owner_id):
            return await self._supersede(owner_id)

    async def _supersede(self, owner_id: int) -> bool:
        old = self._requests.pop(owner_id, None)
        if old is None:
            return False
        old.finish(PaymentState.CANCELLED)
        stopped = _stop_tasks(old.poll_task, old.expiry_task)
        if stopped:
            await asyncio.gather(*stopped, return_exceptions=True)
        await self._delete_qr(old)
        logger.info("Cleared existing payment checker for user %s (md5: %s)", owner_id, old.payment_hash)
        return True

    def _discard(self, request: PaymentRequest) -> None:
        if self._requests.get(request.owner_id) is request:
            self._requests.pop(request.owner_id, None)
        _stop_tasks(request.poll_task, request.expiry_task)

    # ----- scheduled work -----
    async def _poll(self, request: PaymentRequest) -> None:
        payment_hash = request.payment_hash
        checks = 0
        logger.info("Starting payment checker for user %s, md5: %s", request.owner_id, payment_hash)

        while checks < self._max_checks:
            await asyncio.sleep(self._poll_interval)

            if self._requests.get(request.owner_id) is not request:
                logger.info("Payment checker stopped - request removed for user %s", request.owner_id)
                return
            if self.is_processed(payment_hash):
                return

            try:
                status = await self._gateway.check_status(payment_hash, request.merchant_id)
            except GatewayError as e:
                checks += 1
                logger.warning("KHQR status check for md5=%s failed (tick %s): %s", payment_hash, checks, e)
                continue
            except Exception:
                checks += 1
                logger.exception("Error checking transaction for md5=%s", payment_hash)
                continue

            if status.paid:
                # Cancelling the poll loop must not interrupt a settlement in progress
                await asyncio.shield(self.settle(payment_hash, request.owner_id, request.amount))
                return
            checks += 1

        logger.info("Payment check timeout for md5: %s", payment_hash)

    async def _expire_later(self, request: PaymentRequest) -> None:
        await asyncio.sleep(self._expiry_seconds)
        try:
            await self.expire(request.payment_hash)
        except Exception:
            logger.exception("Error expiring md5=%s", request.payment_hash)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                resolved = await self.sweep_stale()
                if resolved:
                    logger.info("Cleanup resolved %s stale topup(s)", resolved)
            except Exception:
                logger.exception("Error in cleanup service")

    # ----- terminal transitions -----
    async def settle(self, payment_hash: str, owner_id: int, amount: Decimal) -> bool:
        if not self.claim(payment_hash):
            logger.info("Settle skipped, md5=%s already processed", payment_hash)
            return False

        request = self._find(payment_hash)
        if request is not None:
            request.finish(PaymentState.SETTLED)
            _stop_tasks(request.expiry_task)

        self._settling.add(payment_hash)
        try:
            credited = await self._record_settlement(payment_hash, owner_id, amount)
        finally:
            self._settling.discard(payment_hash)
        if credited is None:
            await self._notify(
                owner_id,
                f"Payment of ${amount} received, but crediting your balance is delayed. "
                "Support has been notified and will add it shortly.",
            )
        elif credited:
            await self._notify_credited(owner_id, amount)
        else:
            logger.warning("md5=%s was already terminal in the ledger; nothing credited", payment_hash)

        if request is not None:
            await self._delete_qr(request)
            self._discard(request)

        logger.info("Payment confirmed for md5: %s", payment_hash)
        return True

    async def _record_settlement(self, payment_hash: str, owner_id: int, amount: Decimal) -> Optional[bool]:
        for attempt in range(1, self._settle_retries + 1):
            try:
                return await self._repo.settle_topup(payment_hash, owner_id, amount)
            except LedgerError as e:
                logger.error(
                    "Ledger write for confirmed payment md5=%s failed (attempt %s/%s): %s",
                    payment_hash,
                    attempt,
                    self._settle_retries,
                    e,
                )
                if attempt < self._settle_retries:
                    await asyncio.sleep(self._retry_delay * attempt)

        logger.critical("UNRECORDED PAYMENT md5=%s user=%s amount=%s", payment_hash, owner_id, amount)
        try:
            with open(self._error_log_path, "a", encoding="utf-8") as f:
                f.write(
                    f"\n[SETTLE LEDGER ERROR] {datetime.now(timezone.utc).isoformat()} "
                    f"md5={payment_hash} user={owner_id} amount={amount}\n"
                )
        except OSError:
            logger.exception("Could not write settle trace for md5=%s", payment_hash)
        return None

    async def expire(self, payment_hash: str, owner_id: int | None = None) -> bool:
        if not self.claim(payment_hash):
            return False

        request = self._find(payment_hash)
        if request is not None:
            request.finish(PaymentState.EXPIRED)
            owner_id = request.owner_id
            self._discard(request)

        try:
            await self._repo.mark_expired(payment_hash, owner_id)
        except LedgerError as e:
            logger.error("Failed to mark md5=%s expired: %s", payment_hash, e)

        if request is not None:
            await self._delete_qr(request)
            minutes = max(1, round(self._expiry_seconds / 60))
            await self._notify(
                request.owner_id,
                f"QR code expired after {minutes} minutes. Please generate a new one if needed.",
            )
        logger.info("QR code expired for user: %s (md5: %s)", owner_id, payment_hash)
        return True

    async def sweep_stale(self) -> int:
        """Resolve pending topups nobody is polling any more (replaced, cancelled, or from a previous run)."""
        settings = await self._settings.current()
        live = {req.payment_hash for req in self._requests.values()}
        entries = await self._repo.list_stale_pending(older_than=timedelta(seconds=self._expiry_seconds))

        resolved = 0
        for entry in entries:
            payment_hash = entry.get("payment_hash")
            if not payment_hash or payment_hash in live or self.is_processed(payment_hash):
                continue
            merchant_id = entry.get("merchant_id") or settings.merchant_id
            try:
                status = await self._gateway.check_status(payment_hash, merchant_id)
            except GatewayError as e:
                logger.warning("Cleanup check for md5=%s failed: %s", payment_hash, e)
                continue

            if status.paid:
                done = await self.settle(payment_hash, entry["user_id"], from_cents(entry["amount_cents"]))
            else:
                done = await self.expire(payment_hash, entry["user_id"])
            if done:
                resolved += 1

        resolved += await self._recover_uncredited()
        return resolved

    async def _recover_uncredited(self) -> int:
        """Finish settlements whose ledger entry completed but whose balance credit failed."""
        window = timedelta(seconds=self._retry_delay * self._settle_retries)
        entries = await self._repo.list_uncredited(older_than=window)

        recovered = 0
        for entry in entries:
            payment_hash = entry["payment_hash"]
            if payment_hash in self._settling:
                continue
            # Keep the poll and expiry paths away from this hash
            self.claim(payment_hash)
            amount = from_cents(entry["amount_cents"])
            try:
                credited = await self._repo.settle_topup(payment_hash, entry["user_id"], amount)
            except LedgerError as e:
                logger.error("Recovering credit for md5=%s failed: %s", payment_hash, e)
                continue
            if credited:
                logger.warning("Recovered delayed credit md5=%s user=%s amount=%s", payment_hash, entry["user_id"], amount)
                await self._notify_credited(entry["user_id"], amount)
                recovered += 1
        return recovered

    # ----- notification sink (never fatal) -----
    async def _deliver_qr(self, request: PaymentRequest, created) -> Any:
        minutes = max(1, round(self._expiry_seconds / 60))
        caption = f"QR Code for {request.amount} USD\n\nExpires in {minutes} minutes."
        try:
            artifact = await self._gateway.resolve_artifact(created)
            return await self._notifier.deliver_artifact(
                request.owner_id, artifact, caption, reply_markup=self._reply_markup
            )
        except Exception as e:
            logger.error("Failed to deliver QR to user %s (md5: %s): %s", request.owner_id, request.payment_hash, e)
            return None

    async def _delete_qr(self, request: PaymentRequest) -> None:
        if request.artifact_ref is None:
            return
        try:
            await self._notifier.delete_artifact(request.artifact_ref)
        except Exception as e:
            logger.error("Failed to delete QR message for user %s: %s", request.owner_id, e)

    async def _notify_credited(self, owner_id: int, amount: Decimal) -> None:
        await self._notify(
            owner_id,
            "Automated Deposit System ⚙️\n"
            "Currency: USD 💵\n"
            f"Balance Added: ${amount} ✅\n"
            "Payment: KHQR PAYMENT SCAN",
        )
        await self._notify(owner_id, f"Thank you for your payment of ${amount}. We appreciate your support!")

    async def _notify(self, owner_id: int, text: str) -> None:
        try:
            await self._notifier.send_text(owner_id, text, reply_markup=self._reply_markup)
        except Exception as e:
            logger.error("Failed to notify user %s: %s", owner_id, e)
