from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, AsyncIterator, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import DB_NAME, MONGO_TRANSACTIONS, MONGO_URI
from errors import InsufficientBalance, LedgerError

logger = logging.getLogger(__name__)

# Ledger entry kinds
KIND_TOPUP = "topup"
KIND_PURCHASE = "purchase"
KIND_ADMIN_CREDIT = "admin_credit"
KIND_ADMIN_DEBIT = "admin_debit"
KINDS = (KIND_TOPUP, KIND_PURCHASE, KIND_ADMIN_CREDIT, KIND_ADMIN_DEBIT)

# Ledger entry statuses
STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"

CENT = Decimal("0.01")

_client: AsyncIOMotorClient | None = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(MONGO_URI, serverSelectionTimeoutMS=10000)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    return get_client()[DB_NAME]


def get_repo() -> Repo:
    return Repo(get_db(), client=get_client() if MONGO_TRANSACTIONS else None)


def utcnow() -> datetime:
    """Naive UTC, matching what pymongo hands back from a non tz-aware client."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def format_currency(amount: Decimal) -> str:
    return f"${Decimal(amount):,.2f}"


async def init_indexes(db: AsyncIOMotorDatabase) -> None:
    await db.users.create_index([("user_id", ASCENDING)], unique=True)
    # Only topups carry a payment hash; sparse keeps admin/purchase rows out of the unique index.
    await db.transactions.create_index([("payment_hash", ASCENDING)], unique=True, sparse=True)
    await db.transactions.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.transactions.create_index([("status", ASCENDING), ("created_at", ASCENDING)])


class Repo:
    """Users, balances and the transaction ledger.

    Balance changes and the matching ledger transition run in one Mongo transaction
    when a client is given (replica set). Without a client the ledger transition
    happens first and a settled topup is flagged `credited` only once the balance
    moved, so a half-finished settle is picked up again by the next attempt.
    """

    def __init__(self, db: AsyncIOMotorDatabase, client: AsyncIOMotorClient | None = None):
        self.db = db
        self._client = client

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[Any]:
        if self._client is None:
            yield None
            return
        async with await self._client.start_session() as session:
            async with session.start_transaction():
                yield session

    # ----- users / balances -----
    async def ensure_user(self, user_id: int, *, username: str | None = None) -> dict[str, Any]:
        now = utcnow()
        try:
            user = await self.db.users.find_one_and_update(
                {"user_id": int(user_id)},
                {
                    "$setOnInsert": {"user_id": int(user_id), "balance_cents": 0, "created_at": now},
                    "$set": {"username": username or "", "last_active": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost an upsert race with a concurrent first message; the row exists now.
            user = await self.db.users.find_one({"user_id": int(user_id)})
        except PyMongoError as e:
            raise LedgerError(f"ensure_user failed for {user_id}: {e}") from e
        return user

    async def get_user(self, user_id: int) -> Optional[dict[str, Any]]:
        try:
            return await self.db.users.find_one({"user_id": int(user_id)})
        except PyMongoError as e:
            raise LedgerError(f"get_user failed for {user_id}: {e}") from e

    async def get_balance(self, user_id: int) -> Decimal:
        user = await self.get_user(user_id)
        return from_cents((user or {}).get("balance_cents", 0))

    async def credit_balance(self, user_id: int, amount: Decimal, *, session=None) -> None:
        await self.db.users.update_one(
            {"user_id": int(user_id)},
            {
                "$inc": {"balance_cents": to_cents(amount)},
                "$setOnInsert": {"created_at": utcnow(), "username": ""},
            },
            upsert=True,
            session=session,
        )

    async def debit_balance(self, user_id: int, amount: Decimal, *, session=None) -> bool:
        cents = to_cents(amount)
        res = await self.db.users.update_one(
            {"user_id": int(user_id), "balance_cents": {"$gte": cents}},
            {"$inc": {"balance_cents": -cents}},
            session=session,
        )
        return res.modified_count == 1

    # ----- ledger -----
    async def record_pending(
        self,
        *,
        user_id: int,
        amount: Decimal,
        payment_hash: str,
        transaction_id: str,
        merchant_id: str | None = None,
        qr_url: str | None = None,
    ) -> ObjectId:
        doc = {
            "user_id": int(user_id),
            "kind": KIND_TOPUP,
            "amount_cents": to_cents(amount),
            "status": STATUS_PENDING,
            "payment_hash": payment_hash,
            "transaction_id": transaction_id,
            "merchant_id": merchant_id,
            "qr_url": qr_url,
            "created_at": utcnow(),
            "completed_at": None,
        }
        try:
            res = await self.db.transactions.insert_one(doc)
        except DuplicateKeyError as e:
            raise LedgerError(f"payment hash {payment_hash} already recorded") from e
        except PyMongoError as e:
            raise LedgerError(f"record_pending failed for {payment_hash}: {e}") from e
        return res.inserted_id

    async def get_transaction(self, payment_hash: str) -> Optional[dict[str, Any]]:
        try:
            return await self.db.transactions.find_one({"payment_hash": payment_hash})
        except PyMongoError as e:
            raise LedgerError(f"get_transaction failed for {payment_hash}: {e}") from e

    async def settle_topup(self, payment_hash: str, user_id: int, amount: Decimal) -> bool:
        """Complete the topup for `payment_hash` and credit the owner.

        Returns False when the entry was already terminal (nothing credited).
        If no entry exists a completed one is inserted so the ledger still shows the payment.
        A completed entry keeps `credited: False` until its balance change went through,
        so calling this again after a failed credit finishes the job.
        """
        now = utcnow()
        try:
            async with self._transaction() as session:
                entry = await self.db.transactions.find_one_and_update(
                    {"payment_hash": payment_hash, "status": STATUS_PENDING},
                    {"$set": {"status": STATUS_COMPLETED, "completed_at": now, "credited": False}},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
                if entry is None:
                    entry = await self.db.transactions.find_one({"payment_hash": payment_hash}, session=session)
                    if entry is not None and not (
                        entry.get("status") == STATUS_COMPLETED and entry.get("credited") is False
                    ):
                        logger.info("settle_topup: %s already %s", payment_hash, entry.get("status"))
                        return False
                if entry is None:
                    entry = {
                        "user_id": int(user_id),
                        "kind": KIND_TOPUP,
                        "amount_cents": to_cents(amount),
                        "status": STATUS_COMPLETED,
                        "credited": False,
                        "payment_hash": payment_hash,
                        "transaction_id": f"topup_{int(time.time() * 1000)}_{user_id}",
                        "created_at": now,
                        "completed_at": now,
                    }
                    res = await self.db.transactions.insert_one(entry, session=session)
                    entry["_id"] = res.inserted_id

                await self.credit_balance(entry["user_id"], from_cents(entry["amount_cents"]), session=session)
                await self.db.transactions.update_one(
                    {"_id": entry["_id"]}, {"$set": {"credited": True}}, session=session
                )
        except PyMongoError as e:
            raise LedgerError(f"settle_topup failed for {payment_hash}: {e}") from e
        return True

    async def list_uncredited(self, *, older_than: timedelta, limit: int = 50) -> list[dict[str, Any]]:
        """Completed topups whose balance change never went through."""
        cutoff = utcnow() - older_than
        try:
            cursor = (
                self.db.transactions.find(
                    {
                        "kind": KIND_TOPUP,
                        "status": STATUS_COMPLETED,
                        "credited": False,
                        "completed_at": {"$lt": cutoff},
                    }
                )
                .sort("completed_at", ASCENDING)
                .limit(limit)
            )
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise LedgerError(f"list_uncredited failed: {e}") from e

    async def mark_expired(self, payment_hash: str, user_id: int | None = None) -> bool:
        query: dict[str, Any] = {"payment_hash": payment_hash, "status": STATUS_PENDING}
        if user_id is not None:
            query["user_id"] = int(user_id)
        try:
            res = await self.db.transactions.update_one(query, {"$set": {"status": STATUS_EXPIRED}})
        except PyMongoError as e:
            raise LedgerError(f"mark_expired failed for {payment_hash}: {e}") from e
        return res.modified_count == 1

    async def list_stale_pending(self, *, older_than: timedelta, limit: int = 50) -> list[dict[str, Any]]:
        cutoff = utcnow() - older_than
        try:
            cursor = (
                self.db.transactions.find(
                    {"kind": KIND_TOPUP, "status": STATUS_PENDING, "created_at": {"$lt": cutoff}}
                )
                .sort("created_at", ASCENDING)
                .limit(limit)
            )
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise LedgerError(f"list_stale_pending failed: {e}") from e

    async def list_transactions(self, user_id: int, *, limit: int = 10, offset: int = 0) -> list[dict[str, Any]]:
        try:
            cursor = (
                self.db.transactions.find({"user_id": int(user_id)})
                .sort("created_at", DESCENDING)
                .skip(offset)
                .limit(limit)
            )
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise LedgerError(f"list_transactions failed for {user_id}: {e}") from e

    async def admin_adjust_balance(self, user_id: int, amount: Decimal, *, kind: str, note: str = "") -> Decimal:
        """Apply an admin credit/debit and record it. Returns the new balance."""
        if kind not in (KIND_ADMIN_CREDIT, KIND_ADMIN_DEBIT):
            raise ValueError(f"not an admin kind: {kind}")
        now = utcnow()
        try:
            async with self._transaction() as session:
                if kind == KIND_ADMIN_DEBIT:
                    if not await self.debit_balance(user_id, amount, session=session):
                        raise InsufficientBalance(f"user {user_id} cannot cover {amount}")
                else:
                    await self.credit_balance(user_id, amount, session=session)
                await self.db.transactions.insert_one(
                    {
                        "user_id": int(user_id),
                        "kind": kind,
                        "amount_cents": to_cents(amount),
                        "status": STATUS_COMPLETED,
                        "transaction_id": f"{kind}_{int(time.time() * 1000)}_{user_id}",
                        "note": note,
                        "created_at": now,
                        "completed_at": now,
                    },
                    session=session,
                )
        except PyMongoError as e:
            raise LedgerError(f"admin_adjust_balance failed for {user_id}: {e}") from e
        return await self.get_balance(user_id)

    async def transaction_stats(self) -> dict[str, Any]:
        try:
            total = await self.db.transactions.count_documents({})
            completed = await self.db.transactions.count_documents({"status": STATUS_COMPLETED})
            pending = await self.db.transactions.count_documents({"status": STATUS_PENDING})
            revenue_cents = 0
            async for t in self.db.transactions.find(
                {"status": STATUS_COMPLETED, "kind": KIND_TOPUP}, {"amount_cents": 1}
            ):
                revenue_cents += int(t.get("amount_cents", 0))
        except PyMongoError as e:
            raise LedgerError(f"transaction_stats failed: {e}") from e
        return {
            "total": total,
            "completed": completed,
            "pending": pending,
            "revenue": from_cents(revenue_cents),
        }

    # ----- runtime settings -----
    async def get_settings(self, key: str) -> dict[str, Any]:
        try:
            doc = await self.db.settings.find_one({"_id": key})
        except PyMongoError as e:
            raise LedgerError(f"get_settings failed for {key}: {e}") from e
        if not doc:
            return {}
        doc.pop("_id", None)
        return doc

    async def save_settings(self, key: str, values: dict[str, Any]) -> None:
        try:
            await self.db.settings.update_one({"_id": key}, {"$set": values}, upsert=True)
        except PyMongoError as e:
            raise LedgerError(f"save_settings failed for {key}: {e}") from e
