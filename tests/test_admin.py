"""
Tests for admin commands.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

import admin
from settings import SettingsManager


@pytest.fixture
def make_update():
    def _make(user_id: int):
        update = MagicMock()
        update.effective_user.id = user_id
        update.effective_chat.id = user_id
        update.message.reply_text = AsyncMock()
        update.message.delete = AsyncMock()
        return update

    return _make


@pytest.fixture
def context(repo, khqr_settings):
    ctx = MagicMock()
    ctx.application.bot_data = {
        "repo": repo,
        "settings": SettingsManager(repo, defaults=khqr_settings),
        "engine": MagicMock(active_payments=MagicMock(return_value=[])),
    }
    ctx.bot.send_message = AsyncMock()
    return ctx


@pytest.fixture(autouse=True)
def admins(mocker):
    mocker.patch.object(admin, "ADMIN_USER_IDS", [100])


class TestAdminCommands:
    @pytest.mark.asyncio
    async def test_non_admin_is_ignored(self, make_update, context, repo) -> None:
        update = make_update(5)
        context.args = ["5", "10"]

        await admin.credit_cmd(update, context)

        update.message.reply_text.assert_not_awaited()
        assert await repo.get_balance(5) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_credit_then_overdraw(self, make_update, context, repo) -> None:
        update = make_update(100)
        context.args = ["5", "10", "refund"]
        await admin.credit_cmd(update, context)

        assert await repo.get_balance(5) == Decimal("10.00")
        assert "$10.00" in update.message.reply_text.await_args.args[0]

        context.args = ["5", "20"]
        await admin.debit_cmd(update, context)

        assert await repo.get_balance(5) == Decimal("10.00")
        assert update.message.reply_text.await_args.args[0] == "❌ Insufficient balance."

    @pytest.mark.asyncio
    async def test_credit_usage(self, make_update, context) -> None:
        update = make_update(100)
        context.args = ["abc"]

        await admin.credit_cmd(update, context)

        assert update.message.reply_text.await_args.args[0].startswith("Usage: /credit")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["1e30", "1" * 29])
    async def test_credit_rejects_huge_amount(self, make_update, context, repo, raw) -> None:
        update = make_update(100)
        context.args = ["5", raw]

        await admin.credit_cmd(update, context)

        assert update.message.reply_text.await_args.args[0] == "❌ Amount cannot exceed $1,000,000.00"
        assert await repo.get_balance(5) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_set_token_deletes_message(self, make_update, context) -> None:
        update = make_update(100)
        context.args = ["bearer_token", "aaaa.bbbb.cccc"]

        await admin.set_cmd(update, context)

        update.message.delete.assert_awaited_once()
        current = await context.application.bot_data["settings"].current()
        assert current.bearer_token == "aaaa.bbbb.cccc"

    @pytest.mark.asyncio
    async def test_set_invalid_value(self, make_update, context) -> None:
        update = make_update(100)
        context.args = ["max_topup", "20000"]

        await admin.set_cmd(update, context)

        assert "cannot exceed" in update.message.reply_text.await_args.args[0]

    def test_mask(self) -> None:
        assert admin._mask("") == "(not set)"
        assert admin._mask("abcdefghijkl") == "abcd…ijkl"
