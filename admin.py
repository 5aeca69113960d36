from __future__ import annotations

import html
import logging
from decimal import Decimal, InvalidOperation

from telegram import Update
from telegram.constants import ParseMode
from telegram.error import BadRequest
from telegram.ext import Application, CommandHandler, ContextTypes

from config import ADMIN_USER_IDS
from database import KIND_ADMIN_CREDIT, KIND_ADMIN_DEBIT, Repo, format_currency
from errors import StoreError, ValidationError
from payments import KhqrPaymentEngine
from settings import EDITABLE, SettingsManager

logger = logging.getLogger(__name__)

MAX_ADJUST_AMOUNT = Decimal("1000000")


def is_admin(user_id: int) -> bool:
    return int(user_id) in set(ADMIN_USER_IDS)


def _mask(secret: str) -> str:
    if not secret:
        return "(not set)"
    if len(secret) <= 8:
        return "•" * len(secret)
    return f"{secret[:4]}…{secret[-4:]}"


def _parse_admin_amount(raw: str) -> Decimal:
    try:
        amount = Decimal(raw.strip().lstrip("$"))
    except InvalidOperation:
        raise ValidationError("Amount must be a number") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be a positive number")
    if amount > MAX_ADJUST_AMOUNT:
        raise ValidationError(f"Amount cannot exceed {format_currency(MAX_ADJUST_AMOUNT)}")
    return amount.quantize(Decimal("0.01"))


async def ping_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_admin(update.effective_user.id):
        return
    await update.message.reply_text("pong")


async def _adjust(update: Update, context: ContextTypes.DEFAULT_TYPE, kind: str) -> None:
    if not is_admin(update.effective_user.id):
        return

    verb = "credit" if kind == KIND_ADMIN_CREDIT else "debit"
    args = context.args or []
    if len(args) < 2 or not args[0].lstrip("-").isdigit():
        await update.message.reply_text(f"Usage: /{verb} <user_id> <amount> [note]")
        return

    repo: Repo = context.application.bot_data["repo"]
    user_id = int(args[0])
    note = " ".join(args[2:]) or f"{verb} by admin {update.effective_user.id}"
    try:
        amount = _parse_admin_amount(args[1])
        balance = await repo.admin_adjust_balance(user_id, amount, kind=kind, note=note)
    except StoreError as e:
        await update.message.reply_text(f"❌ {e.user_message}")
        return

    logger.warning("Admin %s %s %s for user %s", update.effective_user.id, verb, amount, user_id)
    await update.message.reply_text(
        f"<b>✅ Balance {verb}ed</b>\n\n"
        f"├ User: <code>{user_id}</code>\n"
        f"├ Amount: <b>{format_currency(amount)}</b>\n"
        f"└ New balance: <b>{format_currency(balance)}</b>",
        parse_mode=ParseMode.HTML,
    )


async def credit_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _adjust(update, context, KIND_ADMIN_CREDIT)


async def debit_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _adjust(update, context, KIND_ADMIN_DEBIT)


async def settings_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_admin(update.effective_user.id):
        return
    settings: SettingsManager = context.application.bot_data["settings"]
    s = await settings.current()
    await update.message.reply_text(
        "<b>⚙️ KHQR Settings</b>\n\n"
        f"├ Bakong ID: <code>{html.escape(s.merchant_id or '(not set)')}</code>\n"
        f"├ Merchant: <code>{html.escape(s.merchant_name or '(not set)')}</code>\n"
        f"├ Bearer token: <code>{html.escape(_mask(s.bearer_token))}</code>\n"
        f"├ Min topup: <b>{format_currency(s.min_topup)}</b>\n"
        f"└ Max topup: <b>{format_currency(s.max_topup)}</b>\n\n"
        f"<i>Change with /set &lt;name&gt; &lt;value&gt; ({', '.join(sorted(EDITABLE))})</i>",
        parse_mode=ParseMode.HTML,
    )


async def set_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_admin(update.effective_user.id):
        return
    args = context.args or []
    if len(args) != 2:
        await update.message.reply_text("Usage: /set <name> <value>")
        return

    settings: SettingsManager = context.application.bot_data["settings"]
    try:
        await settings.update(args[0], args[1])
    except StoreError as e:
        await update.message.reply_text(f"❌ {e.user_message}")
        return

    # Bearer tokens are secrets; don't leave them in the chat
    if "token" in args[0].lower():
        try:
            await update.message.delete()
        except BadRequest as e:
            logger.info("Could not delete /set message: %s", e)
    await context.bot.send_message(chat_id=update.effective_chat.id, text=f"✅ {args[0]} updated. Applies to the next topup.")


async def payments_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_admin(update.effective_user.id):
        return
    repo: Repo = context.application.bot_data["repo"]
    engine: KhqrPaymentEngine = context.application.bot_data["engine"]

    try:
        stats = await repo.transaction_stats()
    except StoreError as e:
        await update.message.reply_text(f"❌ {e.user_message}")
        return

    lines = [
        "<b>💳 Payments</b>",
        "",
        f"├ Live QR payments: <b>{len(engine.active_payments())}</b>",
        f"├ Transactions: <b>{stats['total']}</b>",
        f"├ Completed: <b>{stats['completed']}</b>",
        f"├ Pending: <b>{stats['pending']}</b>",
        f"└ Topup revenue: <b>{format_currency(stats['revenue'])}</b>",
    ]
    for req in engine.active_payments()[:10]:
        lines.append(
            f"• <code>{req.owner_id}</code> {format_currency(req.amount)} <code>{html.escape(req.payment_hash[:12])}</code>"
        )
    await update.message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)


def register(app: Application) -> None:
    app.add_handler(CommandHandler("ping", ping_cmd))
    app.add_handler(CommandHandler("credit", credit_cmd))
    app.add_handler(CommandHandler("debit", debit_cmd))
    app.add_handler(CommandHandler("settings", settings_cmd))
    app.add_handler(CommandHandler("set", set_cmd))
    app.add_handler(CommandHandler("payments", payments_cmd))
