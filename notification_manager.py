# notification_manager.py
import logging
import os
from decimal import Decimal

from aiogram import Bot, html

from models import Order, Shift
from websocket_manager import manager

logger = logging.getLogger(__name__)


def create_admin_bot() -> Bot | None:
    """Bot for the staff chat, or None when ADMIN_BOT_TOKEN is not configured."""
    token = os.environ.get('ADMIN_BOT_TOKEN')
    if not token:
        logger.warning("ADMIN_BOT_TOKEN is not set. Telegram notifications are disabled.")
        return None
    from aiogram.client.default import DefaultBotProperties
    return Bot(token=token, default=DefaultBotProperties(parse_mode="HTML"))


class StaffNotifier:
    """
    Best-effort staff notifications: the admin Telegram chat plus the staff
    WebSocket broadcast. Failures are logged and never abort the business operation.
    """

    def __init__(self, admin_bot: Bot | None = None, chat_id: str | None = None, connections=manager):
        self.admin_bot = admin_bot
        self.chat_id = chat_id if chat_id is not None else os.environ.get('ADMIN_CHAT_ID')
        self.connections = connections

    async def _send(self, text: str):
        if not self.admin_bot or not self.chat_id:
            logger.debug("Staff chat not configured, message skipped")
            return
        try:
            await self.admin_bot.send_message(self.chat_id, text)
        except Exception as e:
            logger.error(f"Failed to send message to admin chat {self.chat_id}: {e}")

    async def new_web_order(self, order: Order, customer_name: str | None = None):
        text = (f"✅ <b>New web order #{order.id}</b> ({html.quote(order.external_number or '-')})\n\n"
                f"<b>Customer:</b> {html.quote(customer_name or '-')}\n"
                f"<b>Type:</b> {order.type.value}\n"
                f"<b>Total:</b> {order.total}")
        await self._send(text)
        await self.connections.broadcast_staff({
            "type": "new_order",
            "order_id": order.id,
            "external_number": order.external_number,
            "order_type": order.type.value,
            "total": str(order.total),
        })

    async def shift_deficit(self, shift: Shift):
        losses = Decimal(str(shift.losses_amount or 0))
        text = (f"⚠️ <b>Cash drawer short</b>, shift #{shift.id}\n\n"
                f"<b>Expected:</b> {shift.end_cash}\n"
                f"<b>Counted:</b> {shift.real_cash}\n"
                f"<b>Shortfall:</b> {losses}")
        await self._send(text)
