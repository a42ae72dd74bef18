"""
Tests for staff notifications, the staff WebSocket broadcast, the status
webhook client and the keyed locks.
"""

from types import SimpleNamespace

import anyio
import pytest

from exceptions import StatusNotificationError
from locks import KeyedLocks
from models import OrderType
from notification_manager import StaffNotifier
from web_order_service import StatusNotifier
from websocket_manager import ConnectionManager

pytestmark = pytest.mark.anyio


class FakeBot:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def send_message(self, chat_id, text):
        if self.fail:
            raise RuntimeError("telegram down")
        self.messages.append((chat_id, text))


class FakeSocket:
    def __init__(self, dead=False):
        self.dead = dead
        self.sent = []

    async def send_json(self, message):
        if self.dead:
            raise RuntimeError("closed")
        self.sent.append(message)


def web_order():
    return SimpleNamespace(id=7, external_number="W-7", type=OrderType.WEB_DELIVERY, total=25)


class TestStaffNotifier:

    async def test_new_web_order_reaches_chat_and_screens(self):
        bot, connections = FakeBot(), ConnectionManager()
        screen = FakeSocket()
        connections.staff_connections.append(screen)

        await StaffNotifier(bot, chat_id="42", connections=connections).new_web_order(web_order(), "Ann <VIP>")

        chat_id, text = bot.messages[0]
        assert chat_id == "42"
        assert "Ann &lt;VIP&gt;" in text
        assert screen.sent == [{"type": "new_order", "order_id": 7, "external_number": "W-7",
                                "order_type": "web_delivery", "total": "25"}]

    async def test_chat_failure_is_logged_not_raised(self, caplog):
        notifier = StaffNotifier(FakeBot(fail=True), chat_id="42", connections=ConnectionManager())
        shift = SimpleNamespace(id=3, end_cash=150, real_cash=140, losses_amount=10)
        await notifier.shift_deficit(shift)
        assert "telegram down" in caplog.text

    async def test_without_bot_nothing_is_sent(self):
        connections = ConnectionManager()
        await StaffNotifier(None, chat_id="42", connections=connections).new_web_order(web_order())


class TestConnectionManager:

    async def test_dead_connections_are_dropped(self):
        connections = ConnectionManager()
        alive, dead = FakeSocket(), FakeSocket(dead=True)
        connections.staff_connections.extend([alive, dead])

        await connections.broadcast_staff({"type": "ping"})

        assert connections.staff_connections == [alive]
        assert alive.sent == [{"type": "ping"}]


class TestStatusNotifier:

    async def test_unreachable_website_raises_after_retries(self, caplog):
        notifier = StatusNotifier(timeout=1, backoff=0)
        with pytest.raises(StatusNotificationError):
            await notifier.send("http://127.0.0.1:9", {"orderNumber": "W-1", "status": "processing"}, retries=2)
        assert "attempt 2/2" in caplog.text


class TestKeyedLocks:

    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        events = []

        async def worker(name):
            async with locks.hold("order:1"):
                events.append(f"{name} in")
                await anyio.sleep(0.01)
                events.append(f"{name} out")

        async with anyio.create_task_group() as tg:
            tg.start_soon(worker, "a")
            tg.start_soon(worker, "b")

        assert events[0].endswith("in") and events[1].endswith("out")
        assert events[2].endswith("in") and events[3].endswith("out")
        assert len(locks) == 0
