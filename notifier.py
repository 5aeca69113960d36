from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

import qrcode
from telegram import InputFile
from telegram.error import BadRequest, NetworkError, TimedOut

from khqr_client import LinkedQr, PayloadQr, QrArtifact, RenderedQr

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactRef:
    chat_id: int
    message_id: int


def render_qr_png(payload: str) -> bytes:
    """Render a raw KHQR payload string as a PNG."""
    qr = qrcode.QRCode(box_size=10, border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


async def safe_bot_send(bot, method_name: str, **kwargs):
    """Call bot.send_* with retry on transient timeouts."""
    last_exc: Exception | None = None
    fn = getattr(bot, method_name)
    for _ in range(3):
        try:
            return await fn(**kwargs)
        except (TimedOut, NetworkError) as e:
            last_exc = e
            await asyncio.sleep(1)
        except BadRequest:
            raise
    if last_exc:
        raise last_exc


class TelegramNotifier:
    """Delivers payment messages to the payer's private chat."""

    def __init__(self, bot):
        self._bot = bot

    async def deliver_artifact(self, owner_id: int, artifact: QrArtifact, caption: str, reply_markup=None) -> ArtifactRef:
        if isinstance(artifact, RenderedQr):
            photo = InputFile(artifact.image, filename="khqr.png")
        elif isinstance(artifact, PayloadQr):
            photo = InputFile(render_qr_png(artifact.payload), filename="khqr.png")
        elif isinstance(artifact, LinkedQr):
            photo = artifact.url
        else:
            raise TypeError(f"unsupported QR artifact: {artifact!r}")

        msg = await safe_bot_send(
            self._bot,
            "send_photo",
            chat_id=owner_id,
            photo=photo,
            caption=caption,
            reply_markup=reply_markup,
        )
        return ArtifactRef(chat_id=msg.chat_id, message_id=msg.message_id)

    async def delete_artifact(self, ref: ArtifactRef) -> None:
        try:
            await self._bot.delete_message(chat_id=ref.chat_id, message_id=ref.message_id)
        except BadRequest as e:
            # Already deleted by the user, or older than 48h
            logger.info("QR message %s not deleted: %s", ref, e)

    async def send_text(self, owner_id: int, text: str, reply_markup=None) -> None:
        await safe_bot_send(
            self._bot,
            "send_message",
            chat_id=owner_id,
            text=text,
            reply_markup=reply_markup,
        )
