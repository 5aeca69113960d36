from __future__ import annotations


def to_smallcaps(text: str) -> str:
    """Convert text to small caps Unicode style."""
    normal = "abcdefghijklmnopqrstuvwxyz"
    small_caps = "ᴀʙᴄᴅᴇꜰɢʜɪᴊᴋʟᴍɴᴏᴘǫʀꜱᴛᴜᴠᴡxʏᴢ"
    trans = str.maketrans(normal + normal.upper(), small_caps + small_caps)
    return text.translate(trans)


def h(value: object) -> str:
    """HTML-escape dynamic values for safe insertion into ParseMode.HTML messages."""
    import html as _html

    return _html.escape(str(value), quote=False)


import asyncio
import logging
import os
import sys
import time
from typing import Any, Dict

# Ensure local folder is importable even if run from another working directory
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

try:
    from telegram import (
        InlineKeyboardButton,
        InlineKeyboardMarkup,
        KeyboardButton,
        ReplyKeyboardMarkup,
        Update,
    )
    from telegram.constants import ParseMode
    from telegram.error import BadRequest, NetworkError, TimedOut
    from telegram.ext import (
        Application,
        ApplicationBuilder,
        CallbackQueryHandler,
        CommandHandler,
        ContextTypes,
        MessageHandler,
        filters,
    )
except ImportError as e:  # pragma: no cover
    raise RuntimeError(
        "Wrong 'telegram' package installed. This project requires 'python-telegram-bot'.\n\n"
        "Fix (recommended):\n"
        "  pip uninstall -y telegram\n"
        "  pip install -U python-telegram-bot\n\n"
        "Then restart the bot. Original import error: "
        + str(e)
    )

import httpx

import admin as admin_module
from config import BOT_TOKEN, LOG_LEVEL, SUPPORT_USERNAME
from database import (
    KIND_ADMIN_CREDIT,
    KIND_ADMIN_DEBIT,
    KIND_PURCHASE,
    KIND_TOPUP,
    Repo,
    format_currency,
    from_cents,
    get_repo,
    init_indexes,
)
from errors import StoreError, ValidationError
from khqr_client import KhqrClient
from notifier import TelegramNotifier
from payments import KhqrPaymentEngine
from settings import SettingsManager

# ----------------------------
# Logging
# ----------------------------
# Keep console clean: show only startup + warnings/errors.
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.WARNING),
    format="%(levelname)s:%(name)s:%(message)s",
)

# Silence very noisy libraries
for _name in ("httpx", "telegram", "telegram.ext"):
    logging.getLogger(_name).setLevel(logging.ERROR)

logger = logging.getLogger(__name__)


# Shared in-memory state for guided text flows (topup amount input)
STATE: Dict[int, Dict[str, Any]] = {}

BTN_ADD_FUNDS = "💰 Add Funds"
BTN_ACCOUNT = "🏪 Account Info"
BTN_HISTORY = "💳 Transactions"
BTN_HELP = "❓ Help"

KIND_LABELS = {
    KIND_TOPUP: ("💰", "Topup"),
    KIND_PURCHASE: ("🛒", "Purchase"),
    KIND_ADMIN_CREDIT: ("➕", "Admin credit"),
    KIND_ADMIN_DEBIT: ("➖", "Admin debit"),
}


def require_token() -> None:
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is empty. Set the BOT_TOKEN environment variable.")


def kb(rows: list[list[InlineKeyboardButton]]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(rows)


async def safe_edit(
    message,
    text: str,
    *,
    reply_markup: InlineKeyboardMarkup | None = None,
    parse_mode=ParseMode.HTML,
):
    """Edit a message, ignoring "Message is not modified" when a button is tapped twice."""
    try:
        return await message.edit_text(text=text, parse_mode=parse_mode, reply_markup=reply_markup)
    except BadRequest as e:
        if "Message is not modified" in str(e):
            return None
        raise


async def safe_query_answer(query, *args, **kwargs) -> None:
    """Answer callback query without crashing on transient Telegram timeouts."""
    try:
        await query.answer(*args, **kwargs)
    except (TimedOut, NetworkError):
        # Telegram API sometimes times out; callback will still work without answering.
        return


async def safe_reply_text(message, text: str, **kwargs):
    """Reply with basic retry on transient Telegram timeouts."""
    last_exc: Exception | None = None
    for _ in range(3):
        try:
            return await message.reply_text(text, **kwargs)
        except (TimedOut, NetworkError) as e:
            last_exc = e
            await asyncio.sleep(1)
        except BadRequest:
            raise
    if last_exc:
        raise last_exc


def reply_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [
            [KeyboardButton(BTN_ADD_FUNDS), KeyboardButton(BTN_ACCOUNT)],
            [KeyboardButton(BTN_HISTORY), KeyboardButton(BTN_HELP)],
        ],
        resize_keyboard=True,
        is_persistent=True,
    )


def main_menu() -> InlineKeyboardMarkup:
    return kb(
        [
            [
                InlineKeyboardButton(f"💰 {to_smallcaps('Add Funds')}", callback_data="topup:start"),
                InlineKeyboardButton(f"🏪 {to_smallcaps('Balance')}", callback_data="menu:balance"),
            ],
            [
                InlineKeyboardButton(f"💳 {to_smallcaps('Transactions')}", callback_data="menu:history"),
                InlineKeyboardButton(f"❓ {to_smallcaps('Help')}", callback_data="menu:help"),
            ],
        ]
    )


def back_to_menu() -> InlineKeyboardMarkup:
    return kb([[InlineKeyboardButton(f"🏠 {to_smallcaps('Menu')}", callback_data="menu:home")]])


def topup_prompt_kb() -> InlineKeyboardMarkup:
    return kb(
        [
            [
                InlineKeyboardButton("$5", callback_data="topup:amt:5"),
                InlineKeyboardButton("$10", callback_data="topup:amt:10"),
                InlineKeyboardButton("$25", callback_data="topup:amt:25"),
            ],
            [InlineKeyboardButton(f"❌ {to_smallcaps('Cancel')}", callback_data="topup:cancel")],
        ]
    )


def _home_caption(*, uid: int, balance) -> str:
    return (
        f"<b>🎮 {to_smallcaps('Game Account Store')}</b>\n\n"
        f"<b>📊 {to_smallcaps('Account Information')}</b>\n"
        f"├ 🆔 {to_smallcaps('User ID')}: <code>{uid}</code>\n"
        f"└ 💰 {to_smallcaps('Balance')}: <b>{format_currency(balance)}</b>\n\n"
        f"<i>⚡ {to_smallcaps('Choose an option below to continue')}</i>"
    )


def _services(context: ContextTypes.DEFAULT_TYPE) -> tuple[Repo, KhqrPaymentEngine]:
    return context.application.bot_data["repo"], context.application.bot_data["engine"]


async def start_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    uid = update.effective_user.id
    repo, _ = _services(context)

    user = await repo.ensure_user(uid, username=update.effective_user.username)
    text = _home_caption(uid=uid, balance=from_cents(user.get("balance_cents", 0)))

    await update.message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=main_menu())
    # Apply bottom reply keyboard with a normal (non-empty) message
    await update.message.reply_text(f"✅ {to_smallcaps('Menu enabled')}", reply_markup=reply_menu())


async def show_balance(update: Update, context: ContextTypes.DEFAULT_TYPE, *, edit: bool = False) -> None:
    uid = update.effective_user.id
    repo, engine = _services(context)
    user = await repo.ensure_user(uid, username=update.effective_user.username)
    balance = from_cents(user.get("balance_cents", 0))

    text = (
        f"<b>🏪 {to_smallcaps('Account Information')}</b>\n\n"
        f"├ 🆔 {to_smallcaps('User ID')}: <code>{uid}</code>\n"
        f"├ 👤 {to_smallcaps('Username')}: {h('@' + update.effective_user.username) if update.effective_user.username else 'N/A'}\n"
        f"└ 💰 <b>{to_smallcaps('Current Balance')}:</b> <b>{format_currency(balance)}</b>"
    )
    pending = engine.get(uid)
    if pending is not None:
        text += f"\n\n<i>⏳ {to_smallcaps('Waiting for payment of')} {format_currency(pending.amount)}</i>"

    if edit and update.callback_query:
        await safe_edit(update.callback_query.message, text, reply_markup=back_to_menu())
    else:
        await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=back_to_menu())


async def show_history(update: Update, context: ContextTypes.DEFAULT_TYPE, *, edit: bool = False) -> None:
    uid = update.effective_user.id
    repo, _ = _services(context)
    items = await repo.list_transactions(uid, limit=10)

    if not items:
        text = f"<b>💳 {to_smallcaps('Transactions')}</b>\n\n<i>{to_smallcaps('No transactions yet')}</i>"
    else:
        lines = [f"<b>💳 {to_smallcaps('Recent Transactions')}</b>", ""]
        for t in items:
            icon, label = KIND_LABELS.get(t.get("kind"), ("•", str(t.get("kind"))))
            when = t.get("created_at")
            when_txt = when.strftime("%Y-%m-%d %H:%M") if when else "-"
            lines.append(
                f"{icon} {label} <b>{format_currency(from_cents(t.get('amount_cents', 0)))}</b>"
                f" · {h(t.get('status', ''))} · <i>{when_txt}</i>"
            )
        text = "\n".join(lines)

    if edit and update.callback_query:
        await safe_edit(update.callback_query.message, text, reply_markup=back_to_menu())
    else:
        await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=back_to_menu())


def _help_text() -> str:
    support = f"\n\n🆘 Support: @{h(SUPPORT_USERNAME)}" if SUPPORT_USERNAME else ""
    return (
        f"<b>❓ {to_smallcaps('Help')}</b>\n\n"
        "<b>💰 Add Funds</b> - Top up your account balance with KHQR\n"
        "<b>🏪 Account Info</b> - View your account details and balance\n"
        "<b>💳 Transactions</b> - Your recent topups and purchases\n\n"
        "/topup &lt;amount&gt; - Add funds (e.g. /topup 25.50)\n"
        "/cancel - Cancel the QR code you are paying\n"
        "/balance - Check your current balance"
        + support
    )


async def help_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.effective_message.reply_text(_help_text(), parse_mode=ParseMode.HTML, reply_markup=back_to_menu())


async def balance_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_balance(update, context)


async def history_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_history(update, context)


async def _ask_topup_amount(update: Update, context: ContextTypes.DEFAULT_TYPE, *, edit: bool = False) -> None:
    uid = update.effective_user.id
    repo, _ = _services(context)
    settings: SettingsManager = context.application.bot_data["settings"]
    s = await settings.current()
    balance = await repo.get_balance(uid)

    STATE[uid] = {"flow": "topup", "step": "amount"}
    text = (
        f"<b>💳 {to_smallcaps('Add Funds to Your Account')}</b>\n\n"
        f"Your current balance: <b>{format_currency(balance)}</b>\n\n"
        f"Send the amount in USD ({format_currency(s.min_topup)} - {format_currency(s.max_topup)}), "
        "or pick one below."
    )
    if edit and update.callback_query:
        await safe_edit(update.callback_query.message, text, reply_markup=topup_prompt_kb())
    else:
        await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=topup_prompt_kb())


async def _begin_topup(update: Update, context: ContextTypes.DEFAULT_TYPE, amount_text: str) -> None:
    uid = update.effective_user.id
    _, engine = _services(context)
    message = update.effective_message

    logger.info("Processing topup amount input for user %s: %r", uid, amount_text)
    try:
        await engine.start_topup(uid, amount_text)
    except ValidationError as e:
        # Keep the amount prompt open so the user can retry
        await safe_reply_text(message, e.user_message)
        return
    except StoreError as e:
        logger.error("Topup for user %s failed: %s", uid, e)
        await safe_reply_text(message, e.user_message)
    STATE.pop(uid, None)


async def topup_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await context.application.bot_data["repo"].ensure_user(
        update.effective_user.id, username=update.effective_user.username
    )
    if context.args:
        await _begin_topup(update, context, context.args[0])
        return
    await _ask_topup_amount(update, context)


async def cancel_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    uid = update.effective_user.id
    _, engine = _services(context)
    STATE.pop(uid, None)
    if await engine.cancel(uid):
        await update.effective_message.reply_text("❌ Payment cancelled. The QR code is no longer valid.", reply_markup=reply_menu())
    else:
        await update.effective_message.reply_text("Nothing to cancel.", reply_markup=reply_menu())


async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.text:
        return
    uid = update.effective_user.id
    text = update.message.text.strip()

    if text == BTN_ADD_FUNDS:
        await _ask_topup_amount(update, context)
        return
    if text == BTN_ACCOUNT:
        await show_balance(update, context)
        return
    if text == BTN_HISTORY:
        await show_history(update, context)
        return
    if text == BTN_HELP:
        await help_cmd(update, context)
        return

    st = STATE.get(uid)
    if st and st.get("flow") == "topup" and st.get("step") == "amount":
        await _begin_topup(update, context, text)


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if not query:
        return
    data = query.data or ""
    uid = update.effective_user.id
    repo, engine = _services(context)

    if data == "menu:home":
        await safe_query_answer(query, cache_time=0)
        STATE.pop(uid, None)
        user = await repo.ensure_user(uid, username=update.effective_user.username)
        await safe_edit(
            query.message,
            _home_caption(uid=uid, balance=from_cents(user.get("balance_cents", 0))),
            reply_markup=main_menu(),
        )
        return

    if data == "menu:balance":
        await safe_query_answer(query, cache_time=0)
        await show_balance(update, context, edit=True)
        return

    if data == "menu:history":
        await safe_query_answer(query, cache_time=0)
        await show_history(update, context, edit=True)
        return

    if data == "menu:help":
        await safe_query_answer(query, cache_time=0)
        await safe_edit(query.message, _help_text(), reply_markup=back_to_menu())
        return

    if data == "topup:start":
        await safe_query_answer(query, cache_time=0)
        await _ask_topup_amount(update, context, edit=True)
        return

    if data.startswith("topup:amt:"):
        await safe_query_answer(query, cache_time=0)
        await _begin_topup(update, context, data.rsplit(":", 1)[1])
        return

    if data == "topup:cancel":
        await safe_query_answer(query, cache_time=0)
        STATE.pop(uid, None)
        cancelled = await engine.cancel(uid)
        user = await repo.ensure_user(uid, username=update.effective_user.username)
        text = _home_caption(uid=uid, balance=from_cents(user.get("balance_cents", 0)))
        if cancelled:
            text = f"<i>❌ {to_smallcaps('Payment cancelled')}</i>\n\n" + text
        await safe_edit(query.message, text, reply_markup=main_menu())
        return

    await safe_query_answer(query, cache_time=0)


async def post_init(app: Application) -> None:
    # Don't crash the whole bot on transient MongoDB TLS/index issues.
    # The bot will still error on DB operations if Mongo is down, but won't restart-loop.
    repo: Repo = app.bot_data["repo"]
    try:
        await init_indexes(repo.db)
    except Exception as e:
        logger.error(f"Mongo init_indexes failed: {e}")

    engine: KhqrPaymentEngine = app.bot_data["engine"]
    engine.start()


async def post_shutdown(app: Application) -> None:
    engine: KhqrPaymentEngine = app.bot_data.get("engine")
    if engine:
        await engine.stop()
    gateway: KhqrClient = app.bot_data.get("gateway")
    if gateway:
        await gateway.aclose()


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    # Log exceptions to error.txt for easy debugging
    import traceback

    err = context.error

    # Ignore very common transient network errors (Telegram/httpx) to keep logs clean
    if isinstance(err, (httpx.ReadError, httpx.ConnectTimeout, httpx.ReadTimeout)):
        return
    if isinstance(err, (TimedOut, NetworkError)):
        return

    tb = "".join(traceback.format_exception(type(err), err, err.__traceback__))
    try:
        with open(os.path.join(BASE_DIR, "error.txt"), "a", encoding="utf-8") as f:
            f.write("\n\n--- ERROR ---\n")
            f.write(tb)
    except OSError:
        logger.error("Could not write error.txt")

    logger.exception("Unhandled exception: %s", err, exc_info=err)

    if isinstance(update, Update) and update.effective_message is not None:
        try:
            await update.effective_message.reply_text("Sorry, something went wrong. Please try again.")
        except (TimedOut, NetworkError, BadRequest):
            pass


def build_app() -> Application:
    require_token()

    app = (
        ApplicationBuilder()
        .token(BOT_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    repo = get_repo()
    settings = SettingsManager(repo)
    gateway = KhqrClient()
    engine = KhqrPaymentEngine(
        repo,
        gateway,
        TelegramNotifier(app.bot),
        settings,
        reply_markup=reply_menu(),
    )

    app.bot_data["repo"] = repo
    app.bot_data["settings"] = settings
    app.bot_data["gateway"] = gateway
    app.bot_data["engine"] = engine

    app.add_handler(CommandHandler("start", start_cmd))
    app.add_handler(CommandHandler("topup", topup_cmd))
    app.add_handler(CommandHandler("balance", balance_cmd))
    app.add_handler(CommandHandler("history", history_cmd))
    app.add_handler(CommandHandler("cancel", cancel_cmd))
    app.add_handler(CommandHandler("help", help_cmd))
    admin_module.register(app)
    app.add_handler(CallbackQueryHandler(on_callback))

    # Text for reply keyboard buttons + topup amount
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))

    app.add_error_handler(on_error)

    return app


def main() -> None:
    if not admin_module.ADMIN_USER_IDS:
        logger.warning("ADMIN_USER_IDS is empty. Admin commands will be blocked.")

    # Auto-restart loop: if the bot crashes/stops after some hours due to transient
    # network/db issues, it will restart automatically.
    while True:
        try:
            app = build_app()
            print("KHQR Store Bot started")
            # drop_pending_updates helps if Telegram backlog is huge and bot appears unresponsive
            app.run_polling(close_loop=False, drop_pending_updates=True)
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logger.exception("Bot crashed; restarting in 5 seconds: %s", e)
            time.sleep(5)

        # If run_polling returns for any reason, restart after a short delay
        time.sleep(2)


if __name__ == "__main__":
    main()
